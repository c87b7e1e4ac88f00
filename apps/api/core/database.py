"""
Database connection management with connection pooling.

Provides the engine, the session factory, the FastAPI session dependency and
`run_transaction`, the single place where plan mutations commit (and where a
serialization failure gets its one retry).
"""
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build_database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql://{settings.POSTGRES_USER}:"
        f"{settings.POSTGRES_PASSWORD}@"
        f"{settings.POSTGRES_HOST}:"
        f"{settings.POSTGRES_PORT}/"
        f"{settings.POSTGRES_DB}"
    )


DATABASE_URL = _build_database_url()


def create_db_engine(url: str):
    """Create an engine; SQLite gets a single shared connection, Postgres a pool."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.DEBUG,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


engine = create_db_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Prevent lazy loading issues
)

Base = declarative_base()


@event.listens_for(engine, "checkout")
def receive_checkout(dbapi_conn, connection_record, connection_proxy):
    """Log when connection is checked out from pool."""
    logger.debug("Connection checked out from pool")


@event.listens_for(engine, "checkin")
def receive_checkin(dbapi_conn, connection_record):
    """Log when connection is returned to pool."""
    logger.debug("Connection returned to pool")


def get_db():
    """
    Dependency for FastAPI to get database session.

    Commits on success, rolls back on any error, always closes.
    Services that mutate plans commit through `run_transaction` themselves;
    the trailing commit here is then a no-op.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        # Only log actual database errors, not HTTP exceptions
        from fastapi import HTTPException
        if not isinstance(e, HTTPException):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        db.close()


def check_db_connection() -> bool:
    """Return True when a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_RETRYABLE_MESSAGES = (
    "could not serialize access",
    "deadlock detected",
    "database is locked",
)


def is_retryable_db_error(exc: BaseException) -> bool:
    """True for serialization failures and deadlocks (Postgres) or a busy SQLite file."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _RETRYABLE_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(m in message for m in _RETRYABLE_MESSAGES)


def run_transaction(db: Session, work: Callable[[int], T], *, label: str) -> T:
    """
    Run `work(attempt)` and commit, as one transaction.

    Any error rolls the transaction back. A retryable error (see
    `is_retryable_db_error`) is retried exactly once after
    TRANSACTION_RETRY_DELAY_MS; `attempt` is 0 on the first run and 1 on the
    retry so `work` can detect that an earlier attempt already landed.
    """
    attempt = 0
    while True:
        try:
            result = work(attempt)
            db.commit()
            return result
        except Exception as e:
            db.rollback()
            if attempt == 0 and is_retryable_db_error(e):
                logger.warning(
                    "transaction_retry",
                    extra={"extra_fields": {"event": "transaction_retry", "label": label, "error": str(e)}},
                )
                time.sleep(settings.TRANSACTION_RETRY_DELAY_MS / 1000.0)
                attempt += 1
                continue
            raise

"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema (create_all / drop_all), so
nothing created during a test is visible to the next one.
"""
import os
import sys
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-plan-adaptation-suite-0123456789"
os.environ.setdefault("ADAPTATION_AI_MODE", "deterministic")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import (  # noqa: E402
    AdaptationTrigger,
    Athlete,
    Coach,
    CompletedActivity,
    DraftPlan,
    DraftSession,
    DraftWeek,
    SessionFeedback,
)
from services.draft_plan import refresh_plan_json  # noqa: E402

# Monday; with week_start=monday week 0 runs 2026-03-02..2026-03-08.
PLAN_START = date(2026, 3, 2)


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test; dropped afterwards."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def coach(db_session):
    c = Coach(email=f"coach_{uuid4()}@example.com", display_name="Test Coach", role="coach")
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture
def athlete(db_session, coach):
    a = Athlete(coach_id=coach.id, display_name="Test Athlete")
    db_session.add(a)
    db_session.commit()
    return a


def build_draft(db, coach, athlete, *, weeks, setup=None):
    """
    Create a draft plan.

    `weeks` is a list of dicts: {"locked": bool, "sessions": [session kwargs]}
    where session kwargs are DraftSession columns (ordinal defaults to the
    position in the list).
    """
    draft = DraftPlan(
        coach_id=coach.id,
        athlete_id=athlete.id,
        setup_json=setup if setup is not None else {"start_date": PLAN_START.isoformat(), "week_start": "monday"},
    )
    db.add(draft)
    db.flush()
    for week_index, week in enumerate(weeks):
        sessions = week.get("sessions", [])
        db.add(
            DraftWeek(
                draft_id=draft.id,
                week_index=week_index,
                locked=week.get("locked", False),
                sessions_count=len(sessions),
                total_minutes=sum(s.get("duration_minutes", 0) for s in sessions),
            )
        )
        for ordinal, columns in enumerate(sessions):
            values = {
                "ordinal": ordinal,
                "day_of_week": 2,
                "discipline": "run",
                "type": "endurance",
                "duration_minutes": 45,
                "locked": False,
            }
            values.update(columns)
            db.add(DraftSession(draft_id=draft.id, week_index=week_index, **values))
    db.flush()
    refresh_plan_json(db, draft)
    db.commit()
    return draft


def add_trigger(db, draft, trigger_type, *, evidence=None, window_end=None, window_days=7):
    end = window_end or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    t = AdaptationTrigger(
        athlete_id=draft.athlete_id,
        coach_id=draft.coach_id,
        draft_id=draft.id,
        trigger_type=trigger_type,
        window_start=end - timedelta(days=window_days),
        window_end=end,
        evidence_json=evidence if evidence is not None else {"soreness_count": 2},
    )
    db.add(t)
    db.commit()
    return t


def add_feedback(db, draft, *, created_at, session=None, **values):
    fb = SessionFeedback(
        athlete_id=draft.athlete_id,
        coach_id=draft.coach_id,
        draft_id=draft.id,
        session_id=session.id if session is not None else None,
        created_at=created_at,
        completed_status=values.pop("completed_status", "DONE"),
        **values,
    )
    db.add(fb)
    db.commit()
    return fb


def add_activity(db, athlete, *, start_time, duration_minutes=60, rpe=None, pain_flag=False):
    a = CompletedActivity(
        athlete_id=athlete.id,
        start_time=start_time,
        duration_minutes=duration_minutes,
        rpe=rpe,
        pain_flag=pain_flag,
    )
    db.add(a)
    db.commit()
    return a


@pytest.fixture
def make_draft(db_session, coach, athlete):
    def _make(weeks, setup=None):
        return build_draft(db_session, coach, athlete, weeks=weeks, setup=setup)

    return _make

"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Getting the current authenticated coach
- The coach -> athlete ownership gate used by every plan-adaptation route
- Admin access for policy tuning
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from core.database import get_db
from core.exceptions import ForbiddenError, UnauthorizedError
from core.security import decode_access_token
from models import Athlete, Coach

# auto_error=False so missing credentials return 401 (not 403)
security = HTTPBearer(auto_error=False)


def get_current_coach(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Coach:
    """Resolve the coach named by the bearer token's `sub` claim."""
    if not credentials:
        raise UnauthorizedError()

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")

    coach_id = payload.get("sub")
    if not coach_id:
        raise UnauthorizedError("Invalid token payload")

    try:
        coach_uuid = UUID(coach_id)
    except ValueError:
        raise UnauthorizedError("Invalid coach ID format")

    coach = db.query(Coach).filter(Coach.id == coach_uuid).first()
    if not coach:
        raise UnauthorizedError("Coach not found")
    return coach


def require_admin(current_coach: Coach = Depends(get_current_coach)) -> Coach:
    """Require the admin role (policy tuning)."""
    if current_coach.role != "admin":
        raise ForbiddenError("Access denied. Required role: admin")
    return current_coach


def require_coach_owns_athlete(db: Session, coach_id: UUID, athlete_id: UUID) -> Athlete:
    """Raise 403 unless the athlete is coached by this coach."""
    athlete = (
        db.query(Athlete)
        .filter(Athlete.id == athlete_id, Athlete.coach_id == coach_id)
        .first()
    )
    if not athlete:
        raise ForbiddenError("Athlete is not coached by this coach")
    return athlete


def get_coached_athlete(
    athlete_id: UUID,
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
) -> Athlete:
    """Path dependency: the athlete in the URL, gated on coach ownership."""
    return require_coach_owns_athlete(db, current_coach.id, athlete_id)

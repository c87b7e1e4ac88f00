"""
Draft Plan Helpers

Calendar math, canonical snapshots and content hashes for draft plans.
Shared by the diff applier, the safety layer, the renderer and the
performance model so they all agree on what "the plan" looks like.
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import NotFoundError
from models import DraftPlan, DraftSession, DraftWeek

PLAN_JSON_VERSION = "v1"

# 0=Sunday .. 6=Saturday
DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_minutes(value: float) -> int:
    """Round half away from zero for non-negative minutes (22.5 -> 23)."""
    return int(math.floor(value + 0.5))


def js_weekday(day: date) -> int:
    """Day of week with 0=Sunday, matching DraftSession.day_of_week."""
    return (day.weekday() + 1) % 7


def parse_start_date(setup: dict | None) -> Optional[date]:
    raw = (setup or {}).get("start_date")
    if not isinstance(raw, str):
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def week_start_of(setup: dict | None) -> str:
    return "sunday" if (setup or {}).get("week_start") == "sunday" else "monday"


def start_of_week(day: date, week_start: str) -> date:
    start_js_day = 0 if week_start == "sunday" else 1
    diff = (js_weekday(day) - start_js_day + 7) % 7
    return day - timedelta(days=diff)


def infer_current_week_index(setup: dict | None, today: Optional[date] = None) -> int:
    """
    Index of the plan week containing `today`.

    0 when the setup has no parseable start date; never negative (a plan that
    has not started yet is still "in" week 0).
    """
    start = parse_start_date(setup)
    if start is None:
        return 0
    today = today or utcnow().date()
    ws = week_start_of(setup)
    diff_days = (start_of_week(today, ws) - start_of_week(start, ws)).days
    return max(0, diff_days // 7)


def session_calendar_day(setup: dict | None, week_index: int, day_of_week: int) -> Optional[date]:
    """Calendar date of a session, or None when the setup has no start date."""
    start = parse_start_date(setup)
    if start is None:
        return None
    ws = week_start_of(setup)
    start_js_day = 0 if ws == "sunday" else 1
    offset = (int(day_of_week) - start_js_day + 7) % 7
    return start_of_week(start, ws) + timedelta(days=week_index * 7 + offset)


def session_content(session: DraftSession) -> dict[str, Any]:
    return {
        "week_index": session.week_index,
        "ordinal": session.ordinal,
        "day_of_week": session.day_of_week,
        "discipline": session.discipline,
        "type": session.type,
        "duration_minutes": session.duration_minutes,
        "notes": session.notes,
    }


def _digest(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def session_content_hash(session: DraftSession) -> str:
    return _digest(session_content(session))


def session_baseline_hash(session: DraftSession) -> str:
    """Content hash plus lock state; a session locked at proposal time never matches its unlocked self."""
    return _digest({**session_content(session), "locked": bool(session.locked)})


def session_snapshot(session: DraftSession) -> dict[str, Any]:
    """Plan-JSON shape of one session."""
    out = session_content(session)
    out["id"] = str(session.id)
    out["locked"] = bool(session.locked)
    return out


def build_plan_json(setup: dict | None, weeks: Iterable[DraftWeek], sessions: Iterable[DraftSession]) -> dict:
    """Canonical snapshot: weeks by index, sessions by (week_index, ordinal)."""
    by_week: dict[int, list[DraftSession]] = {}
    for s in sessions:
        by_week.setdefault(s.week_index, []).append(s)

    out_weeks = []
    for w in sorted(weeks, key=lambda w: w.week_index):
        week_sessions = sorted(by_week.get(w.week_index, []), key=lambda s: s.ordinal)
        out_weeks.append(
            {
                "week_index": w.week_index,
                "locked": bool(w.locked),
                "sessions": [session_snapshot(s) for s in week_sessions],
            }
        )
    return {"version": PLAN_JSON_VERSION, "setup": dict(setup or {}), "weeks": out_weeks}


def plan_json_hash(plan_json: dict | None) -> str:
    payload = json.dumps(plan_json or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def load_draft_for_coach(db: Session, *, coach_id: UUID, athlete_id: UUID, draft_id: UUID) -> DraftPlan:
    draft = (
        db.query(DraftPlan)
        .filter(
            DraftPlan.id == draft_id,
            DraftPlan.coach_id == coach_id,
            DraftPlan.athlete_id == athlete_id,
        )
        .first()
    )
    if not draft:
        raise NotFoundError("Draft plan", draft_id)
    return draft


def load_weeks(db: Session, draft_id: UUID) -> list[DraftWeek]:
    return (
        db.query(DraftWeek)
        .filter(DraftWeek.draft_id == draft_id)
        .order_by(DraftWeek.week_index.asc())
        .all()
    )


def load_sessions(db: Session, draft_id: UUID) -> list[DraftSession]:
    return (
        db.query(DraftSession)
        .filter(DraftSession.draft_id == draft_id)
        .order_by(DraftSession.week_index.asc(), DraftSession.ordinal.asc())
        .all()
    )


def draft_snapshot_for_suggestion(weeks: list[DraftWeek], sessions: list[DraftSession]) -> dict:
    """Shape handed to suggestion providers (no ids beyond what ops need)."""
    return {
        "weeks": [{"week_index": w.week_index, "locked": bool(w.locked)} for w in weeks],
        "sessions": [
            {
                "id": str(s.id),
                "week_index": s.week_index,
                "ordinal": s.ordinal,
                "day_of_week": s.day_of_week,
                "discipline": s.discipline,
                "type": s.type,
                "duration_minutes": s.duration_minutes,
                "notes": s.notes,
                "locked": bool(s.locked),
            }
            for s in sessions
        ],
    }


def refresh_plan_json(db: Session, draft: DraftPlan) -> dict:
    """Rebuild and store the canonical snapshot from the current rows."""
    plan_json = build_plan_json(draft.setup_json, load_weeks(db, draft.id), load_sessions(db, draft.id))
    draft.plan_json = plan_json
    return plan_json


def publish_draft_snapshot(db: Session, draft: DraftPlan) -> dict:
    """
    Record the current snapshot as published.

    Calendar materialisation lives outside this service; this keeps the
    publish state (hash + timestamp) that downstream sync compares against.
    """
    plan_json = draft.plan_json or refresh_plan_json(db, draft)
    digest = plan_json_hash(plan_json)
    changed = digest != draft.published_hash
    draft.published_hash = digest
    draft.published_at = utcnow()
    db.flush()
    return {"published": True, "changed": changed, "published_hash": digest}

"""
Performance / Training-Load Model

Exponentially weighted fitness (CTL, 42-day) and fatigue (ATL, 7-day) from
completed activities, then projected forward through the planned sessions of
a draft. Form (TSB) is CTL - ATL.

Loads are unitless "minutes x intensity":
- completed activity: duration * clamp(rpe, 1, 10) / 5 (factor 1 without RPE)
- planned session: duration * type factor
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import CompletedActivity, DraftPlan
from services.draft_plan import (
    as_utc,
    load_draft_for_coach,
    load_sessions,
    session_calendar_day,
    utcnow,
)

CTL_DAYS = 42
ATL_DAYS = 7
HISTORY_DAYS = 120

PLANNED_TYPE_FACTORS = {
    "recovery": 0.7,
    "easy": 0.8,
    "endurance": 1.0,
    "main": 1.0,
    "strength": 0.9,
    "drill": 0.85,
    "tempo": 1.15,
    "threshold": 1.25,
    "vo2": 1.35,
    "interval": 1.3,
    "brick": 1.2,
    "race": 1.4,
}


@dataclass(frozen=True)
class LoadState:
    ctl: float = 0.0
    atl: float = 0.0


def _exp_factor(days: int) -> float:
    return 1 - math.exp(-1 / days)


K_CTL = _exp_factor(CTL_DAYS)
K_ATL = _exp_factor(ATL_DAYS)


def _round2(value: float) -> float:
    return round(value + 0.0, 2)


def evolve(state: LoadState, load: float) -> LoadState:
    return LoadState(
        ctl=state.ctl + (load - state.ctl) * K_CTL,
        atl=state.atl + (load - state.atl) * K_ATL,
    )


def completed_activity_load(duration_minutes: float, rpe: Optional[float]) -> float:
    if rpe is None or not math.isfinite(float(rpe)):
        intensity = 1.0
    else:
        intensity = max(1.0, min(10.0, float(rpe))) / 5
    return max(0.0, float(duration_minutes or 0)) * intensity


def planned_session_load(duration_minutes: float, session_type: Optional[str]) -> float:
    factor = PLANNED_TYPE_FACTORS.get(str(session_type or "").strip().lower(), 1.0)
    return max(0.0, float(duration_minutes or 0)) * factor


def _series(start: date, end: date, load_by_day: dict[date, float]) -> list[tuple[date, float]]:
    days = max(0, (end - start).days)
    return [(start + timedelta(days=i), load_by_day.get(start + timedelta(days=i), 0.0)) for i in range(days + 1)]


def _point(day: date, state: LoadState) -> dict:
    return {
        "day": day.isoformat(),
        "ctl": _round2(state.ctl),
        "atl": _round2(state.atl),
        "tsb": _round2(state.ctl - state.atl),
    }


def build_performance_model(
    history_loads: dict[date, float],
    planned_loads: Optional[dict[date, float]],
    today: date,
) -> dict:
    """
    Evolve history from today-120d through today, then evolve the planned
    series from today through the last planned day.

    `planned_loads` of None means "no draft": projected equals current.
    """
    state = LoadState()
    for _, load in _series(today - timedelta(days=HISTORY_DAYS), today, history_loads):
        state = evolve(state, load)
    current = _point(today, state)

    if planned_loads is None:
        return {
            "current": current,
            "projected": dict(current),
            "delta": {"ctl": 0.0, "atl": 0.0, "tsb": 0.0},
            "upcoming": {"days": 0, "planned_load": 0.0, "avg_daily_load": 0.0},
        }

    planned_days = sorted(d for d in planned_loads if d >= today)
    end = planned_days[-1] if planned_days else today
    projection = _series(today, end, planned_loads)

    projected_state = state
    for _, load in projection:
        projected_state = evolve(projected_state, load)
    projected = _point(end, projected_state)

    planned_total = _round2(sum(load for _, load in projection))
    forecast_days = max(0, (end - today).days + (1 if planned_days else 0))
    return {
        "current": current,
        "projected": projected,
        "delta": {
            "ctl": _round2(projected["ctl"] - current["ctl"]),
            "atl": _round2(projected["atl"] - current["atl"]),
            "tsb": _round2(projected["tsb"] - current["tsb"]),
        },
        "upcoming": {
            "days": forecast_days,
            "planned_load": planned_total,
            "avg_daily_load": _round2(planned_total / forecast_days) if forecast_days > 0 else 0.0,
        },
    }


def history_loads_from_activities(activities: Iterable[CompletedActivity]) -> dict[date, float]:
    loads: dict[date, float] = {}
    for a in activities:
        day = as_utc(a.start_time).date()
        loads[day] = loads.get(day, 0.0) + completed_activity_load(a.duration_minutes or 0, a.rpe)
    return loads


def planned_loads_from_sessions(setup: dict | None, sessions: Iterable, today: date) -> dict[date, float]:
    """Sessions before today are skipped; a setup without start date anchors at today."""
    setup = dict(setup or {})
    if not setup.get("start_date"):
        setup["start_date"] = today.isoformat()
    loads: dict[date, float] = {}
    for s in sessions:
        day = session_calendar_day(setup, int(s.week_index or 0), int(s.day_of_week or 0))
        if day is None or day < today:
            continue
        loads[day] = loads.get(day, 0.0) + planned_session_load(s.duration_minutes or 0, s.type or "endurance")
    return loads


def get_performance_model_preview(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    draft_id: Optional[UUID] = None,
    today: Optional[date] = None,
) -> dict:
    today = today or utcnow().date()
    history_start = datetime.combine(today - timedelta(days=HISTORY_DAYS), time.min, tzinfo=timezone.utc)

    activities = (
        db.query(CompletedActivity)
        .filter(
            CompletedActivity.athlete_id == athlete_id,
            CompletedActivity.start_time >= history_start,
        )
        .all()
    )
    history = history_loads_from_activities(activities)

    if draft_id is not None:
        draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft_id)
    else:
        draft = (
            db.query(DraftPlan)
            .filter(DraftPlan.coach_id == coach_id, DraftPlan.athlete_id == athlete_id)
            .order_by(DraftPlan.created_at.desc())
            .first()
        )

    if draft is None:
        return {"draft_id": None, "model": build_performance_model(history, None, today)}

    planned = planned_loads_from_sessions(draft.setup_json, load_sessions(db, draft.id), today)
    return {"draft_id": str(draft.id), "model": build_performance_model(history, planned, today)}

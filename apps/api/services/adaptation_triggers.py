"""
Adaptation Trigger Detection

Turns recent athlete signals (session feedback + completed activities) into
typed adaptation triggers:

    SORENESS         any soreness flag or pain flag in the last 7 days
    TOO_HARD         repeated TOO_HARD feel, or a cluster of RPE >= 8,
                     or one TOO_HARD backed by high RPE / poor sleep (10 days)
    MISSED_KEY       key sessions skipped in the last 7 days
    HIGH_COMPLIANCE  sustained completion at manageable effort, only when
                     nothing protective fired

`derive_adaptation_triggers` is pure; `evaluate_adaptation_triggers` loads the
signals, derives, and persists new triggers idempotently per
(draft, type, window).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import ValidationError
from core.logging import log_event
from models import AdaptationTrigger, CompletedActivity, SessionFeedback
from services.draft_plan import as_utc, load_draft_for_coach, utcnow

logger = logging.getLogger(__name__)


class TriggerType(str, Enum):
    SORENESS = "SORENESS"
    TOO_HARD = "TOO_HARD"
    MISSED_KEY = "MISSED_KEY"
    HIGH_COMPLIANCE = "HIGH_COMPLIANCE"


PROTECTIVE_TRIGGERS = {TriggerType.SORENESS.value, TriggerType.TOO_HARD.value, TriggerType.MISSED_KEY.value}

DEFAULT_WINDOW_DAYS = 10
MIN_QUERY_WINDOW_DAYS = 10
MAX_WINDOW_DAYS = 60

HIGH_RPE = 8
POOR_SLEEP = 2
HIGH_COMPLIANCE_MIN_ENTRIES = 4
HIGH_COMPLIANCE_MIN_RATIO = 0.85
HIGH_COMPLIANCE_MAX_MEAN_RPE = 6.5
KEY_SESSION_MIN_MINUTES = 90


@dataclass
class FeedbackSignal:
    id: str
    created_at: datetime
    completed_status: str  # DONE | PARTIAL | SKIPPED
    feel: Optional[str] = None
    rpe: Optional[float] = None
    soreness_flag: bool = False
    soreness_notes: Optional[str] = None
    sleep_quality: Optional[int] = None
    session_id: Optional[str] = None
    session_type: Optional[str] = None
    session_duration_minutes: Optional[int] = None
    session_notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: SessionFeedback) -> "FeedbackSignal":
        s = row.session
        return cls(
            id=str(row.id),
            created_at=as_utc(row.created_at),
            completed_status=row.completed_status,
            feel=row.feel,
            rpe=row.rpe,
            soreness_flag=bool(row.soreness_flag),
            soreness_notes=row.soreness_notes,
            sleep_quality=row.sleep_quality,
            session_id=str(row.session_id) if row.session_id else None,
            session_type=s.type if s is not None else None,
            session_duration_minutes=s.duration_minutes if s is not None else None,
            session_notes=s.notes if s is not None else None,
        )


@dataclass
class ActivitySignal:
    id: str
    start_time: datetime
    rpe: Optional[float] = None
    pain_flag: bool = False

    @classmethod
    def from_row(cls, row: CompletedActivity) -> "ActivitySignal":
        return cls(id=str(row.id), start_time=as_utc(row.start_time), rpe=row.rpe, pain_flag=bool(row.pain_flag))


@dataclass
class TriggerCandidate:
    trigger_type: str
    window_start: datetime
    window_end: datetime
    evidence: dict[str, Any] = field(default_factory=dict)


def floor_to_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def is_key_session(session_type: Optional[str], duration_minutes: Optional[int], notes: Optional[str]) -> bool:
    t = (session_type or "").lower()
    if t in ("tempo", "threshold"):
        return True
    if (duration_minutes or 0) >= KEY_SESSION_MIN_MINUTES:
        return True
    return "long" in (notes or "").lower()


def derive_adaptation_triggers(
    *,
    now: datetime,
    window_days: int,
    feedback: list[FeedbackSignal],
    completed_activities: list[ActivitySignal],
) -> list[TriggerCandidate]:
    """
    Derive trigger candidates from signals; pure.

    `now` is floored to the minute so repeated evaluation inside the same
    minute produces identical windows.
    """
    now = floor_to_minute(as_utc(now))
    last7_start = now - timedelta(days=7)
    last10_start = now - timedelta(days=10)
    window_start = now - timedelta(days=window_days)

    def fb_in(start: datetime) -> list[FeedbackSignal]:
        return [f for f in feedback if start <= f.created_at <= now]

    def acts_in(start: datetime) -> list[ActivitySignal]:
        return [a for a in completed_activities if start <= a.start_time <= now]

    fb7, fb10, fb_window = fb_in(last7_start), fb_in(last10_start), fb_in(window_start)
    acts7, acts10, acts_window = acts_in(last7_start), acts_in(last10_start), acts_in(window_start)

    triggers: list[TriggerCandidate] = []

    # SORENESS
    sore = [f for f in fb7 if f.soreness_flag]
    pain = [a for a in acts7 if a.pain_flag]
    has_soreness = bool(sore or pain)
    if has_soreness:
        triggers.append(
            TriggerCandidate(
                trigger_type=TriggerType.SORENESS.value,
                window_start=floor_to_minute(last7_start),
                window_end=now,
                evidence={
                    "rule": "SORENESS if any soreness flag or activity pain flag in last 7 days",
                    "soreness_count": len(sore),
                    "pain_count": len(pain),
                    "feedback_ids": [f.id for f in sore],
                    "activity_ids": [a.id for a in pain],
                    "soreness_notes": [f.soreness_notes for f in sore if f.soreness_notes],
                },
            )
        )

    # TOO_HARD
    too_hard = [f for f in fb10 if f.feel == "TOO_HARD"]
    high_rpe_fb = [f for f in fb10 if f.rpe is not None and f.rpe >= HIGH_RPE]
    high_rpe_acts = [a for a in acts10 if a.rpe is not None and a.rpe >= HIGH_RPE]
    high_rpe_count = len(high_rpe_fb) + len(high_rpe_acts)
    poor_sleep = [f for f in fb10 if f.sleep_quality is not None and f.sleep_quality <= POOR_SLEEP]
    has_too_hard = (
        len(too_hard) >= 2
        or high_rpe_count >= 3
        or (len(too_hard) >= 1 and (high_rpe_count >= 2 or len(poor_sleep) >= 2))
    )
    if has_too_hard:
        triggers.append(
            TriggerCandidate(
                trigger_type=TriggerType.TOO_HARD.value,
                window_start=floor_to_minute(last10_start),
                window_end=now,
                evidence={
                    "rule": "TOO_HARD if TOO_HARD feel >= 2, or RPE >= 8 on >= 3 entries, "
                            "or one TOO_HARD with high RPE or poor sleep, in last 10 days",
                    "too_hard_count": len(too_hard),
                    "high_rpe_count": high_rpe_count,
                    "poor_sleep_count": len(poor_sleep),
                    "feedback_ids": sorted({f.id for f in too_hard + high_rpe_fb + poor_sleep}),
                    "activity_ids": [a.id for a in high_rpe_acts],
                },
            )
        )

    # MISSED_KEY
    key_fb = [
        f for f in fb7
        if is_key_session(f.session_type, f.session_duration_minutes, f.session_notes)
    ]
    missed_key = [f for f in key_fb if f.completed_status == "SKIPPED"]
    opportunities = len(key_fb)
    missed_rate = (len(missed_key) / opportunities) if opportunities else 0.0
    if len(missed_key) >= 2 or (opportunities >= 3 and missed_rate >= 0.5):
        triggers.append(
            TriggerCandidate(
                trigger_type=TriggerType.MISSED_KEY.value,
                window_start=floor_to_minute(last7_start),
                window_end=now,
                evidence={
                    "rule": "MISSED_KEY if >= 2 key sessions skipped, or >= 50% of >= 3 key sessions skipped, in last 7 days",
                    "missed_key_count": len(missed_key),
                    "key_opportunities": opportunities,
                    "missed_rate": round(missed_rate, 3),
                    "feedback_ids": [f.id for f in missed_key],
                    "session_ids": [f.session_id for f in missed_key if f.session_id],
                },
            )
        )

    # HIGH_COMPLIANCE
    total = len(fb_window)
    completed = len([f for f in fb_window if f.completed_status in ("DONE", "PARTIAL")])
    compliance = (completed / total) if total else 0.0
    rpes = [f.rpe for f in fb_window if f.rpe is not None] + [a.rpe for a in acts_window if a.rpe is not None]
    mean_rpe = (sum(rpes) / len(rpes)) if rpes else None
    if (
        not has_soreness
        and not has_too_hard
        and total >= HIGH_COMPLIANCE_MIN_ENTRIES
        and compliance >= HIGH_COMPLIANCE_MIN_RATIO
        and (mean_rpe is None or mean_rpe <= HIGH_COMPLIANCE_MAX_MEAN_RPE)
    ):
        triggers.append(
            TriggerCandidate(
                trigger_type=TriggerType.HIGH_COMPLIANCE.value,
                window_start=floor_to_minute(window_start),
                window_end=now,
                evidence={
                    "rule": "HIGH_COMPLIANCE if >= 4 entries, >= 85% DONE/PARTIAL, mean RPE <= 6.5, "
                            "and no SORENESS or TOO_HARD",
                    "window_days": window_days,
                    "total_feedback_count": total,
                    "completed_count": completed,
                    "compliance": round(compliance, 3),
                    "mean_rpe": round(mean_rpe, 2) if mean_rpe is not None else None,
                    "feedback_ids": [f.id for f in fb_window],
                },
            )
        )

    return triggers


def _validate_window_days(window_days: Optional[int]) -> int:
    if window_days is None:
        return DEFAULT_WINDOW_DAYS
    if not isinstance(window_days, int) or window_days < 1 or window_days > MAX_WINDOW_DAYS:
        raise ValidationError(f"window_days must be between 1 and {MAX_WINDOW_DAYS}", field="window_days")
    return window_days


def _find_existing(db: Session, draft_id: UUID, candidate: TriggerCandidate) -> Optional[AdaptationTrigger]:
    return (
        db.query(AdaptationTrigger)
        .filter(
            AdaptationTrigger.draft_id == draft_id,
            AdaptationTrigger.trigger_type == candidate.trigger_type,
            AdaptationTrigger.window_start == candidate.window_start,
            AdaptationTrigger.window_end == candidate.window_end,
        )
        .first()
    )


def evaluate_adaptation_triggers(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    draft_id: UUID,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Detect and persist triggers for a draft.

    Returns {"now", "created", "triggers"} where `triggers` is every stored
    trigger for this window end (new and previously recorded).
    """
    window_days = _validate_window_days(window_days)
    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft_id)

    now = floor_to_minute(as_utc(now or utcnow()))
    query_start = now - timedelta(days=max(window_days, MIN_QUERY_WINDOW_DAYS))

    feedback_rows = (
        db.query(SessionFeedback)
        .filter(
            SessionFeedback.athlete_id == athlete_id,
            SessionFeedback.coach_id == coach_id,
            SessionFeedback.draft_id == draft.id,
            SessionFeedback.created_at >= query_start,
            SessionFeedback.created_at <= now,
        )
        .order_by(SessionFeedback.created_at.asc(), SessionFeedback.id.asc())
        .all()
    )
    activity_rows = (
        db.query(CompletedActivity)
        .filter(
            CompletedActivity.athlete_id == athlete_id,
            CompletedActivity.start_time >= query_start,
            CompletedActivity.start_time <= now,
        )
        .order_by(CompletedActivity.start_time.asc())
        .all()
    )

    candidates = derive_adaptation_triggers(
        now=now,
        window_days=window_days,
        feedback=[FeedbackSignal.from_row(r) for r in feedback_rows],
        completed_activities=[ActivitySignal.from_row(r) for r in activity_rows],
    )

    created: list[AdaptationTrigger] = []
    for candidate in candidates:
        if _find_existing(db, draft.id, candidate) is not None:
            continue
        row = AdaptationTrigger(
            athlete_id=athlete_id,
            coach_id=coach_id,
            draft_id=draft.id,
            trigger_type=candidate.trigger_type,
            window_start=candidate.window_start,
            window_end=candidate.window_end,
            evidence_json=candidate.evidence,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent evaluation inserted the same window first.
            db.rollback()
            continue
        created.append(row)
        log_event(
            logger,
            "adaptation_trigger_created",
            athlete_id=athlete_id,
            draft_id=draft.id,
            trigger_id=row.id,
            trigger_type=row.trigger_type,
        )

    triggers = list_adaptation_triggers(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft.id, window_end=now)
    return {"now": now, "created": created, "triggers": triggers}


def list_adaptation_triggers(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    draft_id: UUID,
    window_end: Optional[datetime] = None,
    limit: int = 100,
) -> list[AdaptationTrigger]:
    q = db.query(AdaptationTrigger).filter(
        AdaptationTrigger.coach_id == coach_id,
        AdaptationTrigger.athlete_id == athlete_id,
        AdaptationTrigger.draft_id == draft_id,
    )
    if window_end is not None:
        q = q.filter(AdaptationTrigger.window_end == window_end)
    return q.order_by(AdaptationTrigger.created_at.desc()).limit(limit).all()


def latest_trigger_set(db: Session, *, coach_id: UUID, athlete_id: UUID, draft_id: UUID) -> list[AdaptationTrigger]:
    """All triggers sharing the most recent window end for the draft."""
    latest = (
        db.query(AdaptationTrigger)
        .filter(
            AdaptationTrigger.coach_id == coach_id,
            AdaptationTrigger.athlete_id == athlete_id,
            AdaptationTrigger.draft_id == draft_id,
        )
        .order_by(AdaptationTrigger.window_end.desc(), AdaptationTrigger.created_at.desc())
        .first()
    )
    if latest is None:
        return []
    return list_adaptation_triggers(
        db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft_id, window_end=latest.window_end
    )


def trigger_to_dict(t: AdaptationTrigger) -> dict:
    return {
        "id": str(t.id),
        "draft_id": str(t.draft_id),
        "trigger_type": t.trigger_type,
        "window_start": as_utc(t.window_start).isoformat(),
        "window_end": as_utc(t.window_end).isoformat(),
        "evidence": t.evidence_json or {},
        "created_at": as_utc(t.created_at).isoformat() if t.created_at else None,
    }

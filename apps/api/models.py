from sqlalchemy import Column, Integer, Boolean, DateTime, Float, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from core.database import Base
import uuid
from datetime import datetime, timezone

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coach(Base):
    __tablename__ = "coach"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)
    role = Column(Text, default="coach", nullable=False)  # 'coach', 'admin'

    athletes = relationship("Athlete", back_populates="coach")


class Athlete(Base):
    __tablename__ = "athlete"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coach.id"), nullable=False, index=True)
    display_name = Column(Text, nullable=True)

    coach = relationship("Coach", back_populates="athletes")


class DraftPlan(Base):
    """
    A coach-editable multi-week training plan for one athlete.

    `setup_json` holds the plan inputs (start_date, week_start, policy profile,
    risk tolerance, caps). `plan_json` is the canonical snapshot rebuilt after
    every applied diff.
    """

    __tablename__ = "draft_plan"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coach.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    setup_json = Column(JSONType, nullable=False, default=dict)
    plan_json = Column(JSONType, nullable=True)

    # Publish state (last published snapshot)
    published_at = Column(DateTime(timezone=True), nullable=True)
    published_hash = Column(Text, nullable=True)

    weeks = relationship("DraftWeek", back_populates="draft", order_by="DraftWeek.week_index")
    sessions = relationship("DraftSession", back_populates="draft")


class DraftWeek(Base):
    __tablename__ = "draft_week"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=False, index=True)
    week_index = Column(Integer, nullable=False)
    locked = Column(Boolean, default=False, nullable=False)
    # Derived from sessions after every apply
    sessions_count = Column(Integer, default=0, nullable=False)
    total_minutes = Column(Integer, default=0, nullable=False)

    draft = relationship("DraftPlan", back_populates="weeks")

    __table_args__ = (
        UniqueConstraint("draft_id", "week_index", name="uq_draft_week_index"),
    )


class DraftSession(Base):
    __tablename__ = "draft_session"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=False, index=True)
    week_index = Column(Integer, nullable=False)
    ordinal = Column(Integer, nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday .. 6=Saturday
    discipline = Column(Text, nullable=False)  # run, bike, swim, strength, ...
    type = Column(Text, nullable=False)  # endurance, tempo, threshold, recovery, ...
    duration_minutes = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    locked = Column(Boolean, default=False, nullable=False)

    draft = relationship("DraftPlan", back_populates="sessions")

    __table_args__ = (
        Index("ix_draft_session_draft_week", "draft_id", "week_index", "ordinal"),
    )


class SessionFeedback(Base):
    """Athlete-reported feedback for a planned session."""

    __tablename__ = "session_feedback"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coach.id"), nullable=False)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=True)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("draft_session.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    completed_status = Column(Text, nullable=False)  # DONE | PARTIAL | SKIPPED
    feel = Column(Text, nullable=True)  # EASY | OK | HARD | TOO_HARD
    rpe = Column(Integer, nullable=True)  # 1-10
    soreness_flag = Column(Boolean, default=False, nullable=False)
    soreness_notes = Column(Text, nullable=True)
    sleep_quality = Column(Integer, nullable=True)  # 1-5

    session = relationship("DraftSession")


class CompletedActivity(Base):
    """An activity the athlete actually did (device or manual import)."""

    __tablename__ = "completed_activity"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    rpe = Column(Float, nullable=True)
    pain_flag = Column(Boolean, default=False, nullable=False)


class AdaptationTrigger(Base):
    """
    A detected reason to adapt a draft plan.

    Unique per (draft, type, window) so re-running detection over the same
    window is idempotent.
    """

    __tablename__ = "adaptation_trigger"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coach.id"), nullable=False)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=False, index=True)
    # SORENESS | TOO_HARD | MISSED_KEY | HIGH_COMPLIANCE
    trigger_type = Column(Text, nullable=False)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    evidence_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "draft_id", "trigger_type", "window_start", "window_end",
            name="uq_adaptation_trigger_window",
        ),
    )


class PlanChangeProposal(Base):
    """
    A candidate diff against a draft plan.

    Lifecycle: DRAFT -> PROPOSED -> APPROVED -> APPLIED, or -> REJECTED.
    APPLIED and REJECTED are terminal; reopen and undo create new rows.
    """

    __tablename__ = "plan_change_proposal"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coach.id"), nullable=False)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=False, index=True)

    # DRAFT | PROPOSED | APPROVED | APPLIED | REJECTED
    status = Column(Text, nullable=False, index=True)
    diff_json = Column(JSONType, nullable=False)
    rationale_text = Column(Text, nullable=True)
    respects_locks = Column(Boolean, default=True, nullable=False)
    trigger_ids = Column(JSONType, nullable=False, default=list)
    # {session_id: content hash} at creation time, for conflict detection
    baseline_sessions = Column(JSONType, nullable=False, default=dict)
    # rewrite log, hard-safety review, lineage, undo restore targets
    metadata_json = Column(JSONType, nullable=False, default=dict)
    source_proposal_id = Column(Uuid(as_uuid=True), ForeignKey("plan_change_proposal.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)


class PlanChangeBeforeState(Base):
    """Pre-apply checkpoint of every session a proposal touched (used by undo)."""

    __tablename__ = "plan_change_before_state"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=False)
    # {session_id: {week_index, ordinal, day_of_week, discipline, type, duration_minutes, notes}}
    sessions_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PlanChangeAudit(Base):
    """Append-only audit trail of proposal lifecycle events."""

    __tablename__ = "plan_change_audit"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    proposal_id = Column(Uuid(as_uuid=True), ForeignKey("plan_change_proposal.id"), nullable=False, index=True)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("draft_plan.id"), nullable=False, index=True)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    # APPLY_PROPOSAL | REJECT_PROPOSAL | REOPEN_PROPOSAL | UNDO_PROPOSAL_CREATED | REVISE_PROPOSAL
    event_type = Column(Text, nullable=False)
    actor_type = Column(Text, nullable=False, default="coach")
    actor_id = Column(Uuid(as_uuid=True), nullable=True)
    change_summary_text = Column(Text, nullable=True)
    diff_json = Column(JSONType, nullable=True)
    before_state_id = Column(Uuid(as_uuid=True), ForeignKey("plan_change_before_state.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    before_state = relationship("PlanChangeBeforeState")


class PolicyTuning(Base):
    """Persisted override for a built-in adaptation policy profile."""

    __tablename__ = "policy_tuning"

    profile_id = Column(Text, primary_key=True)
    profile_version = Column(Text, nullable=False, default="v1")
    override_json = Column(JSONType, nullable=False, default=dict)
    updated_by = Column(Uuid(as_uuid=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

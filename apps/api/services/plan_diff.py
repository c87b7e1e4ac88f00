"""
Plan Diff Schema & Applier

A plan diff is an ordered list of operations against a draft plan. This
module owns the closed set of operations (a pydantic discriminated union),
parsing of untrusted diff JSON, lock-safety inspection, and the transactional
applier.

The applier never commits. Callers run it inside `run_transaction` so a
failure anywhere leaves the draft untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Iterable, Literal, Optional, Union, assert_never
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from core.exceptions import (
    InvalidDiffError,
    NotFoundError,
    SessionLockedError,
    WeekLockedError,
)
from models import DraftPlan, DraftSession, DraftWeek
from services.draft_plan import build_plan_json, load_sessions, load_weeks, round_minutes

logger = logging.getLogger(__name__)


# =============================================================================
# Operation schema
# =============================================================================

NoteText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=10_000)]
SessionType = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
WeekIndex = Annotated[int, Field(ge=0, le=52)]


class _Op(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SessionPatch(_Op):
    """Fields left unset are untouched; `notes=None` explicitly clears notes."""

    type: Optional[SessionType] = None
    discipline: Optional[SessionType] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0, le=10_000)
    notes: Optional[str] = Field(default=None, max_length=10_000)

    def changes(self) -> dict[str, Any]:
        # Only notes is nullable on a session
        out = {}
        for key in self.model_fields_set:
            value = getattr(self, key)
            if value is None and key != "notes":
                continue
            out[key] = value
        return out


class UpdateSessionOp(_Op):
    op: Literal["UPDATE_SESSION"]
    session_id: UUID
    patch: SessionPatch


class SwapSessionTypeOp(_Op):
    op: Literal["SWAP_SESSION_TYPE"]
    session_id: UUID
    new_type: SessionType


class RemoveSessionOp(_Op):
    op: Literal["REMOVE_SESSION"]
    session_id: UUID


class AdjustWeekVolumeOp(_Op):
    op: Literal["ADJUST_WEEK_VOLUME"]
    week_index: WeekIndex
    pct_delta: float = Field(ge=-0.9, le=1.0)


class AddSessionNoteOp(_Op):
    op: Literal["ADD_NOTE"]
    target: Literal["session"]
    session_id: UUID
    text: NoteText


class AddWeekNoteOp(_Op):
    op: Literal["ADD_NOTE"]
    target: Literal["week"]
    week_index: WeekIndex
    text: NoteText


AddNoteOp = Annotated[Union[AddSessionNoteOp, AddWeekNoteOp], Field(discriminator="target")]

PlanDiffOp = Annotated[
    Union[UpdateSessionOp, SwapSessionTypeOp, RemoveSessionOp, AdjustWeekVolumeOp, AddNoteOp],
    Field(discriminator="op"),
]

SessionOp = Union[UpdateSessionOp, SwapSessionTypeOp, RemoveSessionOp, AddSessionNoteOp]
WeekOp = Union[AdjustWeekVolumeOp, AddWeekNoteOp]

_diff_adapter = TypeAdapter(list[PlanDiffOp])

MAX_DIFF_OPS = 200


def parse_diff(raw: Any) -> list[PlanDiffOp]:
    """Validate untrusted diff JSON. Raises InvalidDiffError."""
    if not isinstance(raw, list):
        raise InvalidDiffError("Diff must be a list of operations")
    if len(raw) > MAX_DIFF_OPS:
        raise InvalidDiffError(f"Diff has too many operations (max {MAX_DIFF_OPS})")
    try:
        return _diff_adapter.validate_python(raw)
    except PydanticValidationError as e:
        errors = [
            {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg")}
            for err in e.errors()[:10]
        ]
        raise InvalidDiffError("Diff failed validation", errors=errors)


def dump_diff(diff: Iterable[PlanDiffOp]) -> list[dict]:
    """JSON-ready diff; unset patch fields are omitted so they stay 'untouched'."""
    return [op.model_dump(mode="json", exclude_unset=True) for op in diff]


def is_session_op(op: PlanDiffOp) -> bool:
    return isinstance(op, (UpdateSessionOp, SwapSessionTypeOp, RemoveSessionOp, AddSessionNoteOp))


def changes_content(op: PlanDiffOp) -> bool:
    """An UPDATE with an empty patch changes nothing; every other op does."""
    if isinstance(op, UpdateSessionOp):
        return bool(op.patch.changes())
    return True


def collect_touched(diff: Iterable[PlanDiffOp]) -> tuple[set[int], set[UUID]]:
    """Week indices addressed by week ops, and session ids addressed by session ops."""
    week_indices: set[int] = set()
    session_ids: set[UUID] = set()
    for op in diff:
        if isinstance(op, (AdjustWeekVolumeOp, AddWeekNoteOp)):
            week_indices.add(op.week_index)
        else:
            session_ids.add(op.session_id)
    return week_indices, session_ids


def append_note(existing: Optional[str], text: str) -> Optional[str]:
    trimmed = (text or "").strip()
    if not trimmed:
        return existing
    if not existing:
        return trimmed
    return f"{existing}\n\n{trimmed}"


# =============================================================================
# Lock safety
# =============================================================================


@dataclass
class LockIssue:
    code: str  # NOT_FOUND | WEEK_LOCKED | SESSION_LOCKED
    message: str
    week_index: Optional[int] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.week_index is not None:
            out["week_index"] = self.week_index
        if self.session_id is not None:
            out["session_id"] = self.session_id
        return out


@dataclass
class LockSafety:
    ok: bool
    issues: list[LockIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "would_fail_due_to_locks": not self.ok,
            "reasons": [i.to_dict() for i in self.issues],
        }


def find_lock_issues(
    weeks: Iterable[DraftWeek],
    sessions: Iterable[DraftSession],
    diff: list[PlanDiffOp],
) -> list[LockIssue]:
    """
    Everything that would stop `apply_plan_diff`, in the order it checks:
    missing references, then locked weeks, then locked sessions.
    """
    weeks_by_index = {w.week_index: w for w in weeks}
    sessions_by_id = {s.id: s for s in sessions}
    week_indices, session_ids = collect_touched(diff)

    issues: list[LockIssue] = []
    for wi in sorted(week_indices):
        if wi not in weeks_by_index:
            issues.append(LockIssue("NOT_FOUND", f"Week {wi} not found.", week_index=wi))
    for sid in sorted(session_ids, key=str):
        if sid not in sessions_by_id:
            issues.append(LockIssue("NOT_FOUND", f"Session {sid} not found.", session_id=str(sid)))
    if issues:
        return issues

    locked_weeks: set[int] = set()
    for wi in week_indices:
        if weeks_by_index[wi].locked:
            locked_weeks.add(wi)
    for op in diff:
        if is_session_op(op) and changes_content(op):
            s = sessions_by_id[op.session_id]
            w = weeks_by_index.get(s.week_index)
            if w is not None and w.locked:
                locked_weeks.add(s.week_index)
    for wi in sorted(locked_weeks):
        issues.append(
            LockIssue("WEEK_LOCKED", f"Week {wi} is locked and sessions cannot be modified.", week_index=wi)
        )

    seen: set[UUID] = set()
    for op in diff:
        if not is_session_op(op) or not changes_content(op):
            continue
        s = sessions_by_id[op.session_id]
        if s.locked and s.id not in seen:
            seen.add(s.id)
            issues.append(
                LockIssue(
                    "SESSION_LOCKED",
                    f"Session {s.id} (week {s.week_index}) is locked and cannot be edited.",
                    week_index=s.week_index,
                    session_id=str(s.id),
                )
            )
    return issues


def check_diff_lock_safety(
    weeks: Iterable[DraftWeek], sessions: Iterable[DraftSession], diff: list[PlanDiffOp]
) -> LockSafety:
    issues = find_lock_issues(weeks, sessions, diff)
    return LockSafety(ok=not issues, issues=issues)


def raise_for_lock_issue(issue: LockIssue) -> None:
    if issue.code == "WEEK_LOCKED":
        raise WeekLockedError(issue.week_index)
    if issue.code == "SESSION_LOCKED":
        raise SessionLockedError(issue.session_id)
    if issue.session_id is not None:
        raise NotFoundError("Draft session", issue.session_id)
    raise NotFoundError("Draft week", issue.week_index)


# =============================================================================
# Applier
# =============================================================================


@dataclass
class ApplyResult:
    changed_session_ids: list[str]
    removed_session_ids: list[str]
    week_totals: dict[int, int]
    plan_json: dict


def _week_sessions(sessions: list[DraftSession], week_index: int) -> list[DraftSession]:
    return sorted((s for s in sessions if s.week_index == week_index), key=lambda s: s.ordinal)


def apply_plan_diff(db: Session, draft: DraftPlan, diff: list[PlanDiffOp]) -> ApplyResult:
    """
    Apply `diff` to the draft's rows in order, then recompute week totals and
    the canonical plan snapshot.

    Raises NotFoundError / WeekLockedError / SessionLockedError before any
    mutation. Does not commit.
    """
    weeks = load_weeks(db, draft.id)
    sessions = load_sessions(db, draft.id)

    issues = find_lock_issues(weeks, sessions, diff)
    if issues:
        raise_for_lock_issue(issues[0])

    sessions_by_id = {s.id: s for s in sessions}
    changed: dict[UUID, None] = {}
    removed: list[str] = []

    for op in diff:
        if isinstance(op, UpdateSessionOp):
            s = sessions_by_id[op.session_id]
            patch = op.patch.changes()
            for key, value in patch.items():
                setattr(s, key, value)
            if patch:
                changed[s.id] = None

        elif isinstance(op, SwapSessionTypeOp):
            s = sessions_by_id[op.session_id]
            s.type = op.new_type
            changed[s.id] = None

        elif isinstance(op, RemoveSessionOp):
            s = sessions_by_id.pop(op.session_id)
            sessions.remove(s)
            db.delete(s)
            changed.pop(s.id, None)
            removed.append(str(s.id))

        elif isinstance(op, AdjustWeekVolumeOp):
            factor = 1 + op.pct_delta
            for s in _week_sessions(sessions, op.week_index):
                if s.locked:
                    continue
                s.duration_minutes = max(0, round_minutes(s.duration_minutes * factor))
                changed[s.id] = None

        elif isinstance(op, AddSessionNoteOp):
            s = sessions_by_id[op.session_id]
            s.notes = append_note(s.notes, op.text)
            changed[s.id] = None

        elif isinstance(op, AddWeekNoteOp):
            for s in _week_sessions(sessions, op.week_index):
                if s.locked:
                    continue
                s.notes = append_note(s.notes, op.text)
                changed[s.id] = None

        else:
            assert_never(op)

    db.flush()

    week_totals: dict[int, int] = {}
    for w in weeks:
        in_week = [s for s in sessions if s.week_index == w.week_index]
        w.sessions_count = len(in_week)
        w.total_minutes = sum(int(s.duration_minutes or 0) for s in in_week)
        week_totals[w.week_index] = w.total_minutes

    plan_json = build_plan_json(draft.setup_json, weeks, sessions)
    draft.plan_json = plan_json
    db.flush()

    logger.debug(
        "Applied %d ops to draft %s (%d sessions changed, %d removed)",
        len(diff), draft.id, len(changed), len(removed),
    )
    return ApplyResult(
        changed_session_ids=[str(sid) for sid in changed],
        removed_session_ids=removed,
        week_totals=week_totals,
        plan_json=plan_json,
    )

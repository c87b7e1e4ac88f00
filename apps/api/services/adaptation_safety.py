"""
Adaptation Safety: Rewriter + Hard Validator

Two passes over the same context (current week index, protective mode,
policy caps, current session values):

1. `rewrite_diff_for_safe_apply` auto-fixes what it can: drops removals and
   past-week ops, clamps volume and duration changes to the policy caps,
   and downgrades protective-mode intensity escalations to "endurance".
2. `evaluate_hard_safety` re-checks a diff without changing it and
   accumulates every reason it cannot be auto-applied.

Generation runs both; approval runs the validator again on live state.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Iterable, Optional, Sequence, assert_never

from services.adaptation_triggers import PROTECTIVE_TRIGGERS
from services.draft_plan import infer_current_week_index, round_minutes
from services.plan_diff import (
    AddSessionNoteOp,
    AddWeekNoteOp,
    AdjustWeekVolumeOp,
    PlanDiffOp,
    RemoveSessionOp,
    SessionPatch,
    SwapSessionTypeOp,
    UpdateSessionOp,
)
from services.policy_registry import AdaptationCaps

INTENSITY_TYPES = {"tempo", "threshold"}
PROTECTIVE_DOWNGRADE_TYPE = "endurance"


def is_intensity_type(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in INTENSITY_TYPES


@dataclass(frozen=True)
class SessionState:
    id: str
    week_index: int
    type: str
    duration_minutes: int
    locked: bool = False

    @classmethod
    def from_row(cls, row: Any) -> "SessionState":
        return cls(
            id=str(row.id),
            week_index=int(row.week_index),
            type=row.type,
            duration_minutes=int(row.duration_minutes or 0),
            locked=bool(getattr(row, "locked", False)),
        )


@dataclass
class SafetyContext:
    current_week_index: int
    protective_mode: bool
    caps: AdaptationCaps
    sessions: dict[str, SessionState] = field(default_factory=dict)

    def session(self, session_id: Any) -> Optional[SessionState]:
        return self.sessions.get(str(session_id))


def build_safety_context(
    *,
    setup: dict | None,
    sessions: Iterable[Any],
    trigger_types: Iterable[str],
    caps: AdaptationCaps,
    today: Optional[date] = None,
) -> SafetyContext:
    states = [s if isinstance(s, SessionState) else SessionState.from_row(s) for s in sessions]
    return SafetyContext(
        current_week_index=infer_current_week_index(setup, today),
        protective_mode=any(t in PROTECTIVE_TRIGGERS for t in trigger_types),
        caps=caps,
        sessions={s.id: s for s in states},
    )


def _pct(value: float) -> str:
    return f"{round(value * 100)}%"


def _signed_pct(value: float) -> str:
    return f"{'+' if value >= 0 else '-'}{_pct(abs(value))}"


def duration_bounds(base: int, caps: AdaptationCaps) -> tuple[int, int]:
    """Allowed [lo, hi] for a session currently at `base` minutes."""
    lo = math.ceil(base * (1 - caps.max_session_duration_change))
    hi = math.floor(base * (1 + caps.max_session_duration_change))
    return lo, hi


def clamp_duration(value: int, base: int, caps: AdaptationCaps) -> int:
    lo, hi = duration_bounds(base, caps)
    clamped = min(max(int(value), lo), hi)
    return min(max(clamped, caps.min_session_minutes), caps.max_session_minutes)


# =============================================================================
# Rewriter
# =============================================================================


@dataclass
class RewriteResult:
    diff: list[PlanDiffOp]
    dropped_ops: int
    log: list[str]


def rewrite_diff_for_safe_apply(diff: Sequence[PlanDiffOp], ctx: SafetyContext) -> RewriteResult:
    out: list[PlanDiffOp] = []
    log: list[str] = []
    dropped = 0
    current = ctx.current_week_index
    caps = ctx.caps

    for op in diff:
        if isinstance(op, RemoveSessionOp):
            dropped += 1
            log.append(f"Dropped removal of session {op.session_id}; removals are never auto-applied.")
            continue

        if isinstance(op, AdjustWeekVolumeOp):
            if op.week_index < current:
                dropped += 1
                log.append(f"Dropped volume change for past week {op.week_index + 1}.")
                continue
            pct = min(max(op.pct_delta, -caps.max_week_volume_decrease), caps.max_week_volume_increase)
            if pct != op.pct_delta:
                log.append(
                    f"Clamped week {op.week_index + 1} volume change from {_signed_pct(op.pct_delta)} to {_signed_pct(pct)}."
                )
                op = op.model_copy(update={"pct_delta": pct})
            out.append(op)
            continue

        if isinstance(op, AddWeekNoteOp):
            if op.week_index < current:
                dropped += 1
                log.append(f"Dropped note for past week {op.week_index + 1}.")
                continue
            out.append(op)
            continue

        session = ctx.session(op.session_id)
        if session is not None and session.week_index < current:
            dropped += 1
            log.append(f"Dropped {op.op} for session {op.session_id} in past week {session.week_index + 1}.")
            continue

        if isinstance(op, AddSessionNoteOp):
            out.append(op)

        elif isinstance(op, SwapSessionTypeOp):
            if (
                session is not None
                and ctx.protective_mode
                and not is_intensity_type(session.type)
                and is_intensity_type(op.new_type)
            ):
                log.append(
                    f"Downgraded swap of session {op.session_id} from {op.new_type} to {PROTECTIVE_DOWNGRADE_TYPE} (protective triggers)."
                )
                op = op.model_copy(update={"new_type": PROTECTIVE_DOWNGRADE_TYPE})
            out.append(op)

        elif isinstance(op, UpdateSessionOp):
            if session is None:
                out.append(op)
                continue
            patch_updates: dict[str, Any] = {}
            patch = op.patch
            if (
                "type" in patch.model_fields_set
                and patch.type is not None
                and ctx.protective_mode
                and not is_intensity_type(session.type)
                and is_intensity_type(patch.type)
            ):
                log.append(
                    f"Downgraded update of session {op.session_id} from {patch.type} to {PROTECTIVE_DOWNGRADE_TYPE} (protective triggers)."
                )
                patch_updates["type"] = PROTECTIVE_DOWNGRADE_TYPE
            if "duration_minutes" in patch.model_fields_set and patch.duration_minutes is not None:
                clamped = clamp_duration(patch.duration_minutes, session.duration_minutes, caps)
                if clamped != patch.duration_minutes:
                    log.append(
                        f"Clamped session {op.session_id} duration from {patch.duration_minutes} to {clamped} min "
                        f"(was {session.duration_minutes} min)."
                    )
                    patch_updates["duration_minutes"] = clamped
            if patch_updates:
                # model_copy keeps model_fields_set, so unset fields stay unset
                op = op.model_copy(update={"patch": patch.model_copy(update=patch_updates)})
            out.append(op)

        else:
            assert_never(op)

    return RewriteResult(diff=out, dropped_ops=dropped, log=log)


# =============================================================================
# Hard validator
# =============================================================================


@dataclass
class SafetyMetrics:
    total_duration_delta_minutes: int = 0
    update_count: int = 0
    swap_count: int = 0
    remove_count: int = 0
    note_count: int = 0
    week_volume_count: int = 0
    week_volume_adjustments: list[dict] = field(default_factory=list)
    week_minutes_delta: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = asdict(self)
        out["week_minutes_delta"] = {str(k): v for k, v in self.week_minutes_delta.items()}
        return out


@dataclass
class HardSafetyResult:
    ok: bool
    reasons: list[str]
    current_week_index: int
    metrics: SafetyMetrics

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reasons": list(self.reasons),
            "current_week_index": self.current_week_index,
            "metrics": self.metrics.to_dict(),
        }


def _is_restore(op: UpdateSessionOp, restore_targets: Optional[dict[str, dict]]) -> bool:
    if not restore_targets:
        return False
    target = restore_targets.get(str(op.session_id))
    if target is None:
        return False
    changes = op.patch.changes()
    return bool(changes) and all(target.get(k) == v for k, v in changes.items())


def evaluate_hard_safety(
    diff: Sequence[PlanDiffOp],
    ctx: SafetyContext,
    *,
    restore_targets: Optional[dict[str, dict]] = None,
) -> HardSafetyResult:
    """
    Accumulate every hard-safety violation in `diff`.

    `restore_targets` ({session_id: checkpoint fields}) marks UPDATE ops that
    put a session back to a recorded pre-apply state; those skip the duration
    and escalation caps but still obey the past-week rule.
    """
    reasons: list[str] = []
    m = SafetyMetrics()
    current = ctx.current_week_index
    caps = ctx.caps

    for op in diff:
        if isinstance(op, RemoveSessionOp):
            m.remove_count += 1
            reasons.append("Removing sessions is blocked in auto-apply mode.")

        elif isinstance(op, AdjustWeekVolumeOp):
            m.week_volume_count += 1
            m.week_volume_adjustments.append({"week_index": op.week_index, "pct_delta": op.pct_delta})
            if op.week_index < current:
                reasons.append(f"Week {op.week_index + 1} is in the past and cannot be auto-adjusted.")
            if op.pct_delta > caps.max_week_volume_increase + 1e-9:
                reasons.append(f"Week {op.week_index + 1} exceeds +{_pct(caps.max_week_volume_increase)} volume cap.")
            if op.pct_delta < -caps.max_week_volume_decrease - 1e-9:
                reasons.append(f"Week {op.week_index + 1} exceeds -{_pct(caps.max_week_volume_decrease)} volume cap.")
            week_delta = sum(
                round_minutes(s.duration_minutes * (1 + op.pct_delta)) - s.duration_minutes
                for s in ctx.sessions.values()
                if s.week_index == op.week_index and not s.locked
            )
            m.week_minutes_delta[op.week_index] = m.week_minutes_delta.get(op.week_index, 0) + week_delta
            m.total_duration_delta_minutes += week_delta

        elif isinstance(op, AddWeekNoteOp):
            m.note_count += 1
            if op.week_index < current:
                reasons.append(f"Week {op.week_index + 1} is in the past and cannot be modified.")

        elif isinstance(op, AddSessionNoteOp):
            m.note_count += 1
            session = ctx.session(op.session_id)
            if session is None:
                reasons.append("A note targets a missing session.")
            elif session.week_index < current:
                reasons.append(f"Session {session.id} is in a past week and cannot be modified.")

        elif isinstance(op, SwapSessionTypeOp):
            m.swap_count += 1
            session = ctx.session(op.session_id)
            if session is None:
                reasons.append("A swap targets a missing session.")
                continue
            if session.week_index < current:
                reasons.append(f"Session {session.id} is in a past week and cannot be auto-adjusted.")
            if ctx.protective_mode and not is_intensity_type(session.type) and is_intensity_type(op.new_type):
                reasons.append("Protective triggers cannot escalate a session into intensity.")

        elif isinstance(op, UpdateSessionOp):
            m.update_count += 1
            session = ctx.session(op.session_id)
            if session is None:
                reasons.append("An update targets a missing session.")
                continue
            if session.week_index < current:
                reasons.append(f"Session {session.id} is in a past week and cannot be auto-adjusted.")
            restoring = _is_restore(op, restore_targets)
            patch: SessionPatch = op.patch
            if (
                not restoring
                and patch.type is not None
                and ctx.protective_mode
                and not is_intensity_type(session.type)
                and is_intensity_type(patch.type)
            ):
                reasons.append("Protective triggers cannot escalate a session into intensity.")
            if patch.duration_minutes is not None:
                nxt = int(patch.duration_minutes)
                base = session.duration_minutes
                delta = nxt - base
                m.total_duration_delta_minutes += delta
                if not restoring:
                    lo, hi = duration_bounds(base, caps)
                    if nxt < lo or nxt > hi:
                        reasons.append(
                            f"Session {session.id} exceeds per-session {_pct(caps.max_session_duration_change)} duration cap."
                        )
                    if nxt < caps.min_session_minutes or nxt > caps.max_session_minutes:
                        reasons.append(
                            f"Session {session.id} duration must stay between "
                            f"{caps.min_session_minutes} and {caps.max_session_minutes} minutes."
                        )

        else:
            assert_never(op)

    return HardSafetyResult(ok=not reasons, reasons=reasons, current_week_index=current, metrics=m)


def summarize_proposal_action(trigger_types: Sequence[str], metrics: SafetyMetrics) -> str:
    """One line for coaches: why the proposal exists and what it changes."""
    parts: list[str] = []
    triggers = ", ".join(trigger_types) if trigger_types else "coach review"
    if metrics.week_volume_adjustments:
        bits = ", ".join(
            f"W{w['week_index'] + 1} {_signed_pct(w['pct_delta'])}" for w in metrics.week_volume_adjustments
        )
        parts.append(f"week volume ({bits})")
    if metrics.swap_count:
        parts.append(f"{metrics.swap_count} type swap{'' if metrics.swap_count == 1 else 's'}")
    if metrics.update_count:
        parts.append(f"{metrics.update_count} session update{'' if metrics.update_count == 1 else 's'}")
    if metrics.note_count:
        parts.append(f"{metrics.note_count} coaching note{'' if metrics.note_count == 1 else 's'}")
    if metrics.remove_count:
        parts.append(f"{metrics.remove_count} removal{'' if metrics.remove_count == 1 else 's'}")
    if metrics.total_duration_delta_minutes:
        delta = metrics.total_duration_delta_minutes
        parts.append(f"{'+' if delta > 0 else ''}{delta} min total duration")
    return f"Why: {triggers}. Changed: {', '.join(parts) if parts else 'no material edits'}."

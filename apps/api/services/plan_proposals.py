"""
Plan Change Proposals

Lifecycle of proposed edits to a draft plan:

    DRAFT -> PROPOSED -> APPROVED -> APPLIED
    DRAFT | PROPOSED | APPROVED -> REJECTED

Generation asks a suggestion provider for a raw diff, rewrites it for safe
apply, validates it, and stores it with a baseline content hash of every
session it touches. Approval re-validates against live state, refuses to
overwrite sessions that drifted since generation, and applies the diff plus
its audit row (with an undo checkpoint) in one transaction.

APPLIED and REJECTED rows are never modified again; reopen and undo create
new proposals that point back at their source.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.database import run_transaction
from core.exceptions import (
    APIException,
    HardSafetyBlockedError,
    InvalidStatusError,
    NotFoundError,
    ProposalConflictError,
    UndoNotAvailableError,
    ValidationError,
)
from core.logging import log_event
from models import (
    AdaptationTrigger,
    DraftPlan,
    DraftSession,
    DraftWeek,
    PlanChangeAudit,
    PlanChangeBeforeState,
    PlanChangeProposal,
)
from services.adaptation_explainability import assess_trigger_quality, build_reason_chain
from services.adaptation_safety import (
    HardSafetyResult,
    build_safety_context,
    evaluate_hard_safety,
    rewrite_diff_for_safe_apply,
    summarize_proposal_action,
)
from services.adaptation_triggers import TriggerType, latest_trigger_set
from services.draft_plan import (
    as_utc,
    build_plan_json,
    draft_snapshot_for_suggestion,
    infer_current_week_index,
    load_draft_for_coach,
    load_sessions,
    load_weeks,
    publish_draft_snapshot,
    session_baseline_hash,
    session_content,
    utcnow,
)
from services.plan_diff import (
    AdjustWeekVolumeOp,
    AddWeekNoteOp,
    LockSafety,
    PlanDiffOp,
    SessionPatch,
    UpdateSessionOp,
    apply_plan_diff,
    check_diff_lock_safety,
    dump_diff,
    parse_diff,
    raise_for_lock_issue,
)
from services.policy_registry import PolicyRegistry, load_policy_registry
from services.proposal_diff_renderer import render_proposal_diff
from services.suggestion_providers import (
    DraftView,
    SuggestionInput,
    SuggestionProvider,
    get_suggestion_provider,
)

logger = logging.getLogger(__name__)


class ProposalStatus:
    DRAFT = "DRAFT"
    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"


class AuditEvent:
    APPLY_PROPOSAL = "APPLY_PROPOSAL"
    REJECT_PROPOSAL = "REJECT_PROPOSAL"
    REVISE_PROPOSAL = "REVISE_PROPOSAL"
    REOPEN_PROPOSAL = "REOPEN_PROPOSAL"
    UNDO_PROPOSAL_CREATED = "UNDO_PROPOSAL_CREATED"


RESTORE_FIELDS = ("discipline", "type", "duration_minutes", "notes")
TRIGGER_ORDER = [t.value for t in TriggerType]

Publisher = Callable[[Session, DraftPlan], dict]


# =============================================================================
# Helpers
# =============================================================================


def _require_status(proposal: PlanChangeProposal, allowed: Iterable[str], action: str) -> None:
    allowed = tuple(allowed)
    if proposal.status not in allowed:
        raise InvalidStatusError(
            f"Cannot {action} a {proposal.status} proposal (allowed: {', '.join(allowed)}).",
            current_status=proposal.status,
        )


def _load_proposal(db: Session, *, coach_id: UUID, athlete_id: UUID, proposal_id: UUID) -> PlanChangeProposal:
    proposal = (
        db.query(PlanChangeProposal)
        .filter(
            PlanChangeProposal.id == proposal_id,
            PlanChangeProposal.coach_id == coach_id,
            PlanChangeProposal.athlete_id == athlete_id,
        )
        .first()
    )
    if not proposal:
        raise NotFoundError("Plan change proposal", proposal_id)
    return proposal


def _ordered_trigger_types(triggers: Iterable[AdaptationTrigger]) -> list[str]:
    types = {t.trigger_type for t in triggers}
    return sorted(types, key=lambda t: (TRIGGER_ORDER.index(t) if t in TRIGGER_ORDER else len(TRIGGER_ORDER), t))


def _load_triggers(
    db: Session, *, coach_id: UUID, athlete_id: UUID, draft_id: UUID, trigger_ids: Sequence[Any]
) -> list[AdaptationTrigger]:
    if not trigger_ids:
        return []
    wanted = [UUID(str(t)) for t in trigger_ids]
    rows = (
        db.query(AdaptationTrigger)
        .filter(
            AdaptationTrigger.id.in_(wanted),
            AdaptationTrigger.coach_id == coach_id,
            AdaptationTrigger.athlete_id == athlete_id,
            AdaptationTrigger.draft_id == draft_id,
        )
        .all()
    )
    found = {r.id for r in rows}
    for tid in wanted:
        if tid not in found:
            raise NotFoundError("Adaptation trigger", tid)
    return rows


def _proposal_trigger_types(db: Session, proposal: PlanChangeProposal) -> list[str]:
    ids = [UUID(str(t)) for t in (proposal.trigger_ids or [])]
    if not ids:
        return []
    rows = (
        db.query(AdaptationTrigger)
        .filter(AdaptationTrigger.id.in_(ids), AdaptationTrigger.draft_id == proposal.draft_id)
        .all()
    )
    return _ordered_trigger_types(rows)


def _touched_sessions(
    weeks: list[DraftWeek],
    sessions: list[DraftSession],
    diff: list[PlanDiffOp],
    *,
    include_locked: bool = False,
) -> tuple[list[DraftSession], list[str]]:
    """
    Sessions a diff can change: every referenced session plus the unlocked
    sessions of weeks addressed by week ops (all of them with
    `include_locked`). Also returns referenced ids that no longer exist.
    """
    by_id = {s.id: s for s in sessions}
    week_ops = {op.week_index for op in diff if isinstance(op, (AdjustWeekVolumeOp, AddWeekNoteOp))}
    out: dict[UUID, DraftSession] = {}
    missing: list[str] = []
    for op in diff:
        if isinstance(op, (AdjustWeekVolumeOp, AddWeekNoteOp)):
            continue
        s = by_id.get(op.session_id)
        if s is None:
            missing.append(str(op.session_id))
        else:
            out[s.id] = s
    for s in sessions:
        if s.week_index in week_ops and (include_locked or not s.locked):
            out.setdefault(s.id, s)
    return list(out.values()), missing


def _baseline_hashes(weeks: list[DraftWeek], sessions: list[DraftSession], diff: list[PlanDiffOp]) -> dict[str, str]:
    """
    Hash of every session the diff may reach, including locked members of
    week-op weeks so a later unlock shows up as drift.
    """
    touched, _ = _touched_sessions(weeks, sessions, diff, include_locked=True)
    return {str(s.id): session_baseline_hash(s) for s in touched}


def _resolve_caps(draft: DraftPlan, registry: PolicyRegistry):
    profile = registry.resolve(draft.setup_json)
    return profile, profile.caps


def _evaluate(
    weeks: list[DraftWeek],
    sessions: list[DraftSession],
    draft: DraftPlan,
    diff: list[PlanDiffOp],
    trigger_types: Sequence[str],
    registry: PolicyRegistry,
    today: Optional[date],
    restore_targets: Optional[dict[str, dict]] = None,
) -> tuple[LockSafety, HardSafetyResult]:
    _, caps = _resolve_caps(draft, registry)
    ctx = build_safety_context(
        setup=draft.setup_json, sessions=sessions, trigger_types=trigger_types, caps=caps, today=today
    )
    lock = check_diff_lock_safety(weeks, sessions, diff)
    hard = evaluate_hard_safety(diff, ctx, restore_targets=restore_targets)
    return lock, hard


def _status_for(diff: list[PlanDiffOp], lock: LockSafety, hard: HardSafetyResult) -> str:
    return ProposalStatus.PROPOSED if diff and lock.ok and hard.ok else ProposalStatus.DRAFT


def _audit(
    db: Session,
    proposal: PlanChangeProposal,
    event_type: str,
    *,
    actor_id: Optional[UUID],
    summary: Optional[str] = None,
    diff_json: Optional[list] = None,
    before_state_id: Optional[UUID] = None,
) -> PlanChangeAudit:
    row = PlanChangeAudit(
        proposal_id=proposal.id,
        draft_id=proposal.draft_id,
        athlete_id=proposal.athlete_id,
        event_type=event_type,
        actor_type="coach",
        actor_id=actor_id,
        change_summary_text=summary,
        diff_json=diff_json,
        before_state_id=before_state_id,
    )
    db.add(row)
    return row


def proposal_to_dict(p: PlanChangeProposal) -> dict:
    def ts(value):
        return as_utc(value).isoformat() if value else None

    return {
        "id": str(p.id),
        "athlete_id": str(p.athlete_id),
        "draft_id": str(p.draft_id),
        "status": p.status,
        "diff": p.diff_json or [],
        "rationale_text": p.rationale_text,
        "respects_locks": bool(p.respects_locks),
        "trigger_ids": [str(t) for t in (p.trigger_ids or [])],
        "source_proposal_id": str(p.source_proposal_id) if p.source_proposal_id else None,
        "metadata": p.metadata_json or {},
        "created_at": ts(p.created_at),
        "approved_at": ts(p.approved_at),
        "applied_at": ts(p.applied_at),
        "rejected_at": ts(p.rejected_at),
    }


# =============================================================================
# Generate / revise
# =============================================================================


def generate_plan_change_proposal(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    draft_id: UUID,
    trigger_ids: Optional[Sequence[Any]] = None,
    provider: Optional[SuggestionProvider] = None,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> PlanChangeProposal:
    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft_id)
    registry = policy_registry or load_policy_registry(db)
    profile, _ = _resolve_caps(draft, registry)

    if trigger_ids:
        triggers = _load_triggers(
            db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft.id, trigger_ids=trigger_ids
        )
    else:
        triggers = latest_trigger_set(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft.id)
    if not triggers:
        raise ValidationError("No adaptation triggers for this draft; evaluate triggers first.", field="trigger_ids")

    trigger_types = _ordered_trigger_types(triggers)
    assessment = assess_trigger_quality(triggers)

    weeks = load_weeks(db, draft.id)
    sessions = load_sessions(db, draft.id)
    current_week_index = infer_current_week_index(draft.setup_json, today)

    provider = provider or get_suggestion_provider()
    suggestion = provider.suggest(
        SuggestionInput(
            trigger_types=trigger_types,
            draft=DraftView.model_validate(draft_snapshot_for_suggestion(weeks, sessions)),
            current_week_index=current_week_index,
        )
    )
    raw_diff = parse_diff(suggestion.diff)

    _, caps = _resolve_caps(draft, registry)
    ctx = build_safety_context(
        setup=draft.setup_json, sessions=sessions, trigger_types=trigger_types, caps=caps, today=today
    )
    rewrite = rewrite_diff_for_safe_apply(raw_diff, ctx)
    lock = check_diff_lock_safety(weeks, sessions, rewrite.diff)
    hard = evaluate_hard_safety(rewrite.diff, ctx)

    action_summary = summarize_proposal_action(trigger_types, hard.metrics)
    reason_chain = build_reason_chain(assessment.ranked, action_summary)
    rationale = "\n\n".join(part for part in (suggestion.rationale_text.strip(), "\n".join(reason_chain)) if part)

    proposal = PlanChangeProposal(
        athlete_id=athlete_id,
        coach_id=coach_id,
        draft_id=draft.id,
        status=_status_for(rewrite.diff, lock, hard),
        diff_json=dump_diff(rewrite.diff),
        rationale_text=rationale,
        respects_locks=lock.ok,
        trigger_ids=[str(t.id) for t in triggers],
        baseline_sessions=_baseline_hashes(weeks, sessions, rewrite.diff),
        metadata_json={
            "provider": suggestion.provider,
            "provider_respects_locks": suggestion.respects_locks,
            "policy_profile": {"id": profile.id, "version": profile.version},
            "current_week_index": current_week_index,
            "rewrite": {"dropped_ops": rewrite.dropped_ops, "log": rewrite.log},
            "lock_safety": lock.to_dict(),
            "hard_safety": hard.to_dict(),
            "trigger_assessment": assessment.to_dict(),
            "action_summary": action_summary,
            "reason_chain": reason_chain,
        },
    )
    db.add(proposal)
    db.commit()

    log_event(
        logger,
        "plan_change_proposal_generated",
        proposal_id=proposal.id,
        draft_id=draft.id,
        status=proposal.status,
        trigger_types=trigger_types,
        provider=suggestion.provider,
        dropped_ops=rewrite.dropped_ops,
        hard_safety_ok=hard.ok,
        respects_locks=lock.ok,
    )
    return proposal


def revise_proposal_diff(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    proposal_id: UUID,
    diff: Any,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> PlanChangeProposal:
    """Replace a pending proposal's diff with a coach-authored one (not rewritten)."""
    proposal = _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)
    _require_status(proposal, (ProposalStatus.DRAFT, ProposalStatus.PROPOSED), "revise")
    ops = parse_diff(diff)

    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=proposal.draft_id)
    weeks = load_weeks(db, draft.id)
    sessions = load_sessions(db, draft.id)
    registry = policy_registry or load_policy_registry(db)
    lock, hard = _evaluate(weeks, sessions, draft, ops, _proposal_trigger_types(db, proposal), registry, today)

    proposal.diff_json = dump_diff(ops)
    proposal.status = _status_for(ops, lock, hard)
    proposal.respects_locks = lock.ok
    proposal.baseline_sessions = _baseline_hashes(weeks, sessions, ops)
    proposal.metadata_json = {
        **(proposal.metadata_json or {}),
        "lock_safety": lock.to_dict(),
        "hard_safety": hard.to_dict(),
        "revised_by": str(coach_id),
        "revised_at": utcnow().isoformat(),
    }
    _audit(
        db,
        proposal,
        AuditEvent.REVISE_PROPOSAL,
        actor_id=coach_id,
        summary=f"Coach revised diff ({len(ops)} ops).",
        diff_json=proposal.diff_json,
    )
    db.commit()
    log_event(logger, "plan_change_proposal_revised", proposal_id=proposal.id, status=proposal.status)
    return proposal


# =============================================================================
# Approve / publish / reject
# =============================================================================


def _approval_result(proposal: PlanChangeProposal, audit: Optional[PlanChangeAudit], applied: Optional[dict]) -> dict:
    return {
        "proposal": proposal_to_dict(proposal),
        "audit_id": str(audit.id) if audit else None,
        "before_state_id": str(audit.before_state_id) if audit and audit.before_state_id else None,
        "applied": applied,
    }


def _apply_audit(db: Session, proposal_id: UUID) -> Optional[PlanChangeAudit]:
    return (
        db.query(PlanChangeAudit)
        .filter(
            PlanChangeAudit.proposal_id == proposal_id,
            PlanChangeAudit.event_type == AuditEvent.APPLY_PROPOSAL,
        )
        .order_by(PlanChangeAudit.created_at.desc())
        .first()
    )


def approve_plan_change_proposal(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    proposal_id: UUID,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> dict:
    """
    Validate against live state and apply in one transaction.

    Raises WeekLockedError / SessionLockedError / NotFoundError,
    HardSafetyBlockedError, ProposalConflictError or InvalidStatusError.
    """
    registry = policy_registry or load_policy_registry(db)

    def work(attempt: int) -> dict:
        proposal = _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)
        if attempt > 0 and proposal.status == ProposalStatus.APPLIED:
            logger.info("Proposal %s already applied by an earlier attempt", proposal.id)
            return {**_approval_result(proposal, _apply_audit(db, proposal.id), None), "already_applied": True}
        _require_status(proposal, (ProposalStatus.PROPOSED, ProposalStatus.APPROVED), "approve")

        draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=proposal.draft_id)
        diff = parse_diff(proposal.diff_json)
        weeks = load_weeks(db, draft.id)
        sessions = load_sessions(db, draft.id)
        restore_targets = (proposal.metadata_json or {}).get("restore_targets")

        lock, hard = _evaluate(
            weeks, sessions, draft, diff, _proposal_trigger_types(db, proposal), registry, today, restore_targets
        )
        if not lock.ok:
            raise_for_lock_issue(lock.issues[0])
        if not hard.ok:
            raise HardSafetyBlockedError(hard.reasons)

        # Every session the apply will write must match its baseline; one that
        # was added, edited or unlocked since generation has no match.
        touched, missing = _touched_sessions(weeks, sessions, diff)
        baseline = proposal.baseline_sessions or {}
        live = {str(s.id): s for s in sessions}
        conflicts = list(missing)
        conflicts.extend(sid for sid in baseline if sid not in live)
        for s in touched:
            if baseline.get(str(s.id)) != session_baseline_hash(s):
                conflicts.append(str(s.id))
        if conflicts:
            raise ProposalConflictError(sorted(set(conflicts)))

        before = PlanChangeBeforeState(
            draft_id=draft.id,
            sessions_json={str(s.id): session_content(s) for s in touched},
        )
        db.add(before)
        db.flush()

        applied = apply_plan_diff(db, draft, diff)

        now = utcnow()
        proposal.status = ProposalStatus.APPLIED
        proposal.approved_at = proposal.approved_at or now
        proposal.applied_at = now
        audit = _audit(
            db,
            proposal,
            AuditEvent.APPLY_PROPOSAL,
            actor_id=coach_id,
            summary=summarize_proposal_action(_proposal_trigger_types(db, proposal), hard.metrics),
            diff_json=proposal.diff_json,
            before_state_id=before.id,
        )
        db.flush()
        return _approval_result(
            proposal,
            audit,
            {
                "changed_session_ids": applied.changed_session_ids,
                "removed_session_ids": applied.removed_session_ids,
                "week_totals": {str(k): v for k, v in applied.week_totals.items()},
            },
        )

    result = run_transaction(db, work, label="approve_plan_change_proposal")
    log_event(
        logger,
        "plan_change_proposal_applied",
        proposal_id=proposal_id,
        athlete_id=athlete_id,
        already_applied=bool(result.get("already_applied")),
    )
    return result


def approve_and_publish_plan_change_proposal(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    proposal_id: UUID,
    publisher: Publisher = publish_draft_snapshot,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> dict:
    """Approve, then publish. A publish failure is reported, never rolled into the approval."""
    approval = approve_plan_change_proposal(
        db,
        coach_id=coach_id,
        athlete_id=athlete_id,
        proposal_id=proposal_id,
        policy_registry=policy_registry,
        today=today,
    )
    draft_id = UUID(approval["proposal"]["draft_id"])
    try:
        draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft_id)
        publish = publisher(db, draft)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Publish after approval failed for proposal %s: %s", proposal_id, e, exc_info=True)
        publish = {"published": False, "error": str(e)}
    return {"approval": approval, "publish": publish}


def reject_plan_change_proposal(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    proposal_id: UUID,
    reason: Optional[str] = None,
) -> PlanChangeProposal:
    proposal = _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)
    _require_status(
        proposal, (ProposalStatus.DRAFT, ProposalStatus.PROPOSED, ProposalStatus.APPROVED), "reject"
    )
    proposal.status = ProposalStatus.REJECTED
    proposal.rejected_at = utcnow()
    _audit(db, proposal, AuditEvent.REJECT_PROPOSAL, actor_id=coach_id, summary=reason or "Rejected by coach.")
    db.commit()
    log_event(logger, "plan_change_proposal_rejected", proposal_id=proposal.id)
    return proposal


def batch_approve_safe_proposals(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    draft_id: UUID,
    max_hours: Optional[float] = None,
    proposal_ids: Optional[Sequence[Any]] = None,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> dict:
    """
    Approve every PROPOSED, lock-respecting proposal for a draft, oldest
    first, each in its own transaction. Failures are collected, not raised.
    """
    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=draft_id)
    registry = policy_registry or load_policy_registry(db)

    q = db.query(PlanChangeProposal).filter(
        PlanChangeProposal.coach_id == coach_id,
        PlanChangeProposal.athlete_id == athlete_id,
        PlanChangeProposal.draft_id == draft.id,
        PlanChangeProposal.status == ProposalStatus.PROPOSED,
        PlanChangeProposal.respects_locks.is_(True),
    )
    if max_hours is not None:
        if max_hours <= 0:
            raise ValidationError("max_hours must be positive", field="max_hours")
        q = q.filter(PlanChangeProposal.created_at >= utcnow() - timedelta(hours=max_hours))
    if proposal_ids:
        q = q.filter(PlanChangeProposal.id.in_([UUID(str(p)) for p in proposal_ids]))
    candidate_ids = [p.id for p in q.order_by(PlanChangeProposal.created_at.asc(), PlanChangeProposal.id.asc()).all()]

    results: list[dict] = []
    for pid in candidate_ids:
        try:
            approve_plan_change_proposal(
                db,
                coach_id=coach_id,
                athlete_id=athlete_id,
                proposal_id=pid,
                policy_registry=registry,
                today=today,
            )
            results.append({"proposal_id": str(pid), "ok": True, "status": ProposalStatus.APPLIED})
        except APIException as e:
            logger.warning("Batch approve skipped proposal %s: %s (%s)", pid, e.detail, e.error_code)
            results.append({"proposal_id": str(pid), "ok": False, "code": e.error_code, "message": e.detail})
        except SQLAlchemyError as e:
            db.rollback()
            log_event(logger, "plan_change_batch_item_failed", proposal_id=pid, error=str(e))
            results.append({"proposal_id": str(pid), "ok": False, "code": "INTERNAL", "message": str(e)})

    approved = len([r for r in results if r["ok"]])
    log_event(
        logger,
        "plan_change_batch_approved",
        draft_id=draft.id,
        considered=len(results),
        approved=approved,
    )
    return {
        "results": results,
        "considered_count": len(results),
        "approved_count": approved,
        "failed_count": len(results) - approved,
    }


# =============================================================================
# Reopen / undo
# =============================================================================


def reopen_plan_change_proposal(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    proposal_id: UUID,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> PlanChangeProposal:
    """Clone a proposal's diff into a new proposal checked against the current plan."""
    source = _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)
    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=source.draft_id)
    diff = parse_diff(source.diff_json)
    weeks = load_weeks(db, draft.id)
    sessions = load_sessions(db, draft.id)
    registry = policy_registry or load_policy_registry(db)
    restore_targets = (source.metadata_json or {}).get("restore_targets")
    lock, hard = _evaluate(
        weeks, sessions, draft, diff, _proposal_trigger_types(db, source), registry, today, restore_targets
    )

    metadata: dict[str, Any] = {
        "reopened_from": {"proposal_id": str(source.id), "status": source.status},
        "lock_safety": lock.to_dict(),
        "hard_safety": hard.to_dict(),
    }
    if restore_targets:
        metadata["restore_targets"] = restore_targets

    proposal = PlanChangeProposal(
        athlete_id=athlete_id,
        coach_id=coach_id,
        draft_id=draft.id,
        status=_status_for(diff, lock, hard),
        diff_json=dump_diff(diff),
        rationale_text=source.rationale_text,
        respects_locks=lock.ok,
        trigger_ids=list(source.trigger_ids or []),
        baseline_sessions=_baseline_hashes(weeks, sessions, diff),
        metadata_json=metadata,
        source_proposal_id=source.id,
    )
    db.add(proposal)
    db.flush()
    _audit(
        db,
        proposal,
        AuditEvent.REOPEN_PROPOSAL,
        actor_id=coach_id,
        summary=f"Reopened from proposal {source.id} ({source.status}).",
        diff_json=proposal.diff_json,
    )
    db.commit()
    log_event(logger, "plan_change_proposal_reopened", proposal_id=proposal.id, source_proposal_id=source.id)
    return proposal


def create_undo_proposal(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    proposal_id: UUID,
    policy_registry: Optional[PolicyRegistry] = None,
    today: Optional[date] = None,
) -> PlanChangeProposal:
    """
    New proposal that restores every session an APPLIED proposal touched to
    its pre-apply discipline, type, duration and notes.
    """
    source = _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)
    _require_status(source, (ProposalStatus.APPLIED,), "undo")

    audit = _apply_audit(db, source.id)
    if audit is None or audit.before_state is None:
        raise UndoNotAvailableError(source.id)
    checkpoint: dict[str, dict] = audit.before_state.sessions_json or {}

    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=source.draft_id)
    weeks = load_weeks(db, draft.id)
    sessions = load_sessions(db, draft.id)
    live = {str(s.id): s for s in sessions}

    ops: list[PlanDiffOp] = []
    restore_targets: dict[str, dict] = {}
    skipped: list[str] = []
    for sid in sorted(checkpoint, key=lambda k: (checkpoint[k].get("week_index", 0), checkpoint[k].get("ordinal", 0))):
        if sid not in live:
            skipped.append(sid)
            continue
        target = {field: checkpoint[sid].get(field) for field in RESTORE_FIELDS}
        restore_targets[sid] = target
        ops.append(
            UpdateSessionOp(op="UPDATE_SESSION", session_id=UUID(sid), patch=SessionPatch(**target))
        )
    if not ops:
        raise UndoNotAvailableError(source.id)

    registry = policy_registry or load_policy_registry(db)
    lock, hard = _evaluate(weeks, sessions, draft, ops, [], registry, today, restore_targets)

    proposal = PlanChangeProposal(
        athlete_id=athlete_id,
        coach_id=coach_id,
        draft_id=draft.id,
        status=_status_for(ops, lock, hard),
        diff_json=dump_diff(ops),
        rationale_text=f"Undo of proposal {source.id}: restore {len(ops)} session(s) to their pre-apply state.",
        respects_locks=lock.ok,
        trigger_ids=[],
        baseline_sessions=_baseline_hashes(weeks, sessions, ops),
        metadata_json={
            "undo_of": {"proposal_id": str(source.id), "status": source.status, "audit_id": str(audit.id)},
            "restore_targets": restore_targets,
            "skipped_session_ids": skipped,
            "lock_safety": lock.to_dict(),
            "hard_safety": hard.to_dict(),
        },
        source_proposal_id=source.id,
    )
    db.add(proposal)
    db.flush()
    _audit(
        db,
        proposal,
        AuditEvent.UNDO_PROPOSAL_CREATED,
        actor_id=coach_id,
        summary=f"Undo proposal for {source.id}.",
        diff_json=proposal.diff_json,
        before_state_id=audit.before_state_id,
    )
    db.commit()
    log_event(logger, "plan_change_undo_created", proposal_id=proposal.id, source_proposal_id=source.id)
    return proposal


# =============================================================================
# Read
# =============================================================================


def list_plan_change_proposals(
    db: Session,
    *,
    coach_id: UUID,
    athlete_id: UUID,
    draft_id: Optional[UUID] = None,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[PlanChangeProposal]:
    q = db.query(PlanChangeProposal).filter(
        PlanChangeProposal.coach_id == coach_id,
        PlanChangeProposal.athlete_id == athlete_id,
    )
    if draft_id is not None:
        q = q.filter(PlanChangeProposal.draft_id == draft_id)
    if status:
        q = q.filter(PlanChangeProposal.status == status)
    return q.order_by(PlanChangeProposal.created_at.desc()).limit(limit).all()


def get_plan_change_proposal(db: Session, *, coach_id: UUID, athlete_id: UUID, proposal_id: UUID) -> PlanChangeProposal:
    return _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)


def get_proposal_preview(db: Session, *, coach_id: UUID, athlete_id: UUID, proposal_id: UUID) -> dict:
    proposal = _load_proposal(db, coach_id=coach_id, athlete_id=athlete_id, proposal_id=proposal_id)
    draft = load_draft_for_coach(db, coach_id=coach_id, athlete_id=athlete_id, draft_id=proposal.draft_id)
    weeks = load_weeks(db, draft.id)
    sessions = load_sessions(db, draft.id)
    diff = parse_diff(proposal.diff_json)

    plan_json = build_plan_json(draft.setup_json, weeks, sessions)
    lock = check_diff_lock_safety(weeks, sessions, diff)
    return {
        "proposal": proposal_to_dict(proposal),
        "view": render_proposal_diff(diff, plan_json, sessions),
        "apply_safety": {"respects_locks": lock.ok, **lock.to_dict()},
    }

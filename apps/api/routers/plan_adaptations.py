"""
Plan Adaptations Router

Coach-facing surface of the adaptation engine:
- evaluate and list adaptation triggers for a draft plan
- generate, preview, revise, approve, reject, reopen and undo proposals
- batch-approve safe proposals
- training-load projection for a draft

Every route is gated on coach -> athlete ownership via `get_coached_athlete`.
"""

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_coached_athlete, get_current_coach
from core.database import get_db
from models import Athlete, Coach
from services.adaptation_triggers import (
    MAX_WINDOW_DAYS,
    evaluate_adaptation_triggers,
    list_adaptation_triggers,
    trigger_to_dict,
)
from services.draft_plan import load_draft_for_coach
from services.performance_model import get_performance_model_preview
from services.plan_proposals import (
    approve_and_publish_plan_change_proposal,
    approve_plan_change_proposal,
    batch_approve_safe_proposals,
    create_undo_proposal,
    generate_plan_change_proposal,
    get_plan_change_proposal,
    get_proposal_preview,
    list_plan_change_proposals,
    proposal_to_dict,
    reject_plan_change_proposal,
    reopen_plan_change_proposal,
    revise_proposal_diff,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/coach/athletes/{athlete_id}/plan-adaptations",
    tags=["Plan Adaptations"],
)


# =============================================================================
# Request models
# =============================================================================


class EvaluateTriggersRequest(BaseModel):
    draft_id: UUID
    window_days: Optional[int] = Field(default=None, ge=1, le=MAX_WINDOW_DAYS)


class GenerateProposalRequest(BaseModel):
    draft_id: UUID
    trigger_ids: Optional[list[UUID]] = None


class ReviseDiffRequest(BaseModel):
    diff: list[dict[str, Any]]


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BatchApproveRequest(BaseModel):
    draft_id: UUID
    max_hours: Optional[float] = Field(default=None, gt=0)
    proposal_ids: Optional[list[UUID]] = None


# =============================================================================
# Triggers
# =============================================================================


@router.post("/triggers/evaluate")
def evaluate_triggers(
    body: EvaluateTriggersRequest,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """Run trigger detection over the recent window; re-running is idempotent."""
    result = evaluate_adaptation_triggers(
        db,
        coach_id=current_coach.id,
        athlete_id=athlete.id,
        draft_id=body.draft_id,
        window_days=body.window_days,
    )
    return {
        "now": result["now"].isoformat(),
        "created": [trigger_to_dict(t) for t in result["created"]],
        "triggers": [trigger_to_dict(t) for t in result["triggers"]],
    }


@router.get("/triggers")
def list_triggers(
    draft_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    load_draft_for_coach(db, coach_id=current_coach.id, athlete_id=athlete.id, draft_id=draft_id)
    rows = list_adaptation_triggers(
        db, coach_id=current_coach.id, athlete_id=athlete.id, draft_id=draft_id, limit=limit
    )
    return {"triggers": [trigger_to_dict(t) for t in rows]}


# =============================================================================
# Proposals
# =============================================================================


@router.post("/proposals/generate", status_code=201)
def generate_proposal(
    body: GenerateProposalRequest,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """
    Ask the suggestion provider for a diff, rewrite it for safe apply, and
    store it as a proposal. Status is PROPOSED when the diff is lock-safe and
    passes hard safety, DRAFT otherwise.
    """
    proposal = generate_plan_change_proposal(
        db,
        coach_id=current_coach.id,
        athlete_id=athlete.id,
        draft_id=body.draft_id,
        trigger_ids=body.trigger_ids,
    )
    return proposal_to_dict(proposal)


@router.get("/proposals")
def list_proposals(
    draft_id: Optional[UUID] = None,
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    rows = list_plan_change_proposals(
        db,
        coach_id=current_coach.id,
        athlete_id=athlete.id,
        draft_id=draft_id,
        status=status,
        limit=limit,
    )
    return {"proposals": [proposal_to_dict(p) for p in rows]}


@router.post("/proposals/batch-approve")
def batch_approve(
    body: BatchApproveRequest,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """Apply every safe PROPOSED proposal, oldest first; failures are reported per proposal."""
    return batch_approve_safe_proposals(
        db,
        coach_id=current_coach.id,
        athlete_id=athlete.id,
        draft_id=body.draft_id,
        max_hours=body.max_hours,
        proposal_ids=body.proposal_ids,
    )


@router.get("/proposals/{proposal_id}")
def get_proposal(
    proposal_id: UUID,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    proposal = get_plan_change_proposal(
        db, coach_id=current_coach.id, athlete_id=athlete.id, proposal_id=proposal_id
    )
    return proposal_to_dict(proposal)


@router.get("/proposals/{proposal_id}/preview")
def preview_proposal(
    proposal_id: UUID,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """Before/after view of the diff against the current plan, plus live lock safety."""
    return get_proposal_preview(db, coach_id=current_coach.id, athlete_id=athlete.id, proposal_id=proposal_id)


@router.put("/proposals/{proposal_id}/diff")
def revise_proposal(
    proposal_id: UUID,
    body: ReviseDiffRequest,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    proposal = revise_proposal_diff(
        db,
        coach_id=current_coach.id,
        athlete_id=athlete.id,
        proposal_id=proposal_id,
        diff=body.diff,
    )
    return proposal_to_dict(proposal)


@router.post("/proposals/{proposal_id}/approve")
def approve_proposal(
    proposal_id: UUID,
    publish: bool = False,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """
    Apply the proposal. With `publish=true` the draft is published afterwards;
    a publish failure is reported in `publish` and does not undo the approval.
    """
    if publish:
        return approve_and_publish_plan_change_proposal(
            db, coach_id=current_coach.id, athlete_id=athlete.id, proposal_id=proposal_id
        )
    return approve_plan_change_proposal(
        db, coach_id=current_coach.id, athlete_id=athlete.id, proposal_id=proposal_id
    )


@router.post("/proposals/{proposal_id}/reject")
def reject_proposal(
    proposal_id: UUID,
    body: Optional[RejectRequest] = None,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    proposal = reject_plan_change_proposal(
        db,
        coach_id=current_coach.id,
        athlete_id=athlete.id,
        proposal_id=proposal_id,
        reason=body.reason if body else None,
    )
    return proposal_to_dict(proposal)


@router.post("/proposals/{proposal_id}/reopen", status_code=201)
def reopen_proposal(
    proposal_id: UUID,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    proposal = reopen_plan_change_proposal(
        db, coach_id=current_coach.id, athlete_id=athlete.id, proposal_id=proposal_id
    )
    return proposal_to_dict(proposal)


@router.post("/proposals/{proposal_id}/undo", status_code=201)
def undo_proposal(
    proposal_id: UUID,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """Create a proposal that restores the sessions an APPLIED proposal changed."""
    proposal = create_undo_proposal(
        db, coach_id=current_coach.id, athlete_id=athlete.id, proposal_id=proposal_id
    )
    return proposal_to_dict(proposal)


# =============================================================================
# Performance model
# =============================================================================


@router.get("/performance-model")
def performance_model(
    draft_id: Optional[UUID] = None,
    athlete: Athlete = Depends(get_coached_athlete),
    current_coach: Coach = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """CTL/ATL/TSB now and projected through the draft's remaining sessions."""
    return get_performance_model_preview(
        db, coach_id=current_coach.id, athlete_id=athlete.id, draft_id=draft_id
    )

"""
Adaptation Policy Admin Router

Admin-only tuning of the built-in adaptation policy profiles. Overrides are
persisted and layered over the environment overrides; every write returns
the refreshed effective profile.
"""

from typing import Any
from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.database import get_db
from models import Coach
from services.policy_registry import list_policy_profiles_for_admin, upsert_policy_override

router = APIRouter(prefix="/v1/admin/adaptation-policies", tags=["Admin"])


@router.get("")
def list_policies(
    admin: Coach = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return {"profiles": list_policy_profiles_for_admin(db)}


@router.put("/{profile_id}")
def put_policy_override(
    profile_id: str,
    override: dict[str, Any] = Body(...),
    admin: Coach = Depends(require_admin),
    db: Session = Depends(get_db),
):
    registry = upsert_policy_override(db, profile_id=profile_id, override=override, actor_id=admin.id)
    return {"profile": registry.get(profile_id).to_dict()}

"""
Adaptation Policy Registry

Named, versioned numeric policy profiles (safety caps, recovery cadence)
consumed by the safety rewriter and the hard validator.

A registry is an explicit value: build it from settings (and optionally the
persisted `policy_tuning` rows), hand it to the code that needs it, and call
`refresh()` with new overrides when tuning changes. There is no module-level
cache that refreshes itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import NotFoundError, ValidationError
from core.logging import log_event
from models import PolicyTuning

logger = logging.getLogger(__name__)

PolicyProfileId = Literal["conservative-v1", "safe-v1", "performance-v1"]

DEFAULT_PROFILE_ID = "safe-v1"


@dataclass(frozen=True)
class AdaptationCaps:
    max_week_volume_increase: float = 0.12
    max_week_volume_decrease: float = 0.20
    max_session_duration_change: float = 0.25
    min_session_minutes: int = 20
    max_session_minutes: int = 240


@dataclass(frozen=True)
class PolicyProfile:
    id: str
    version: str
    label: str
    description: str
    max_intensity_days_hard_cap: int
    max_doubles_hard_cap: int
    default_recovery_every_n_weeks: int
    default_recovery_week_multiplier: float
    caps: AdaptationCaps = field(default_factory=AdaptationCaps)

    def to_dict(self) -> dict:
        return asdict(self)


BUILTIN_PROFILES: dict[str, PolicyProfile] = {
    "conservative-v1": PolicyProfile(
        id="conservative-v1",
        version="v1",
        label="Conservative",
        description="Strong safety bias. Slower progression and tighter load control.",
        max_intensity_days_hard_cap=1,
        max_doubles_hard_cap=0,
        default_recovery_every_n_weeks=3,
        default_recovery_week_multiplier=0.8,
    ),
    "safe-v1": PolicyProfile(
        id="safe-v1",
        version="v1",
        label="Safe Balanced",
        description="Balanced default for broad athlete cohorts with strict guardrails.",
        max_intensity_days_hard_cap=2,
        max_doubles_hard_cap=1,
        default_recovery_every_n_weeks=4,
        default_recovery_week_multiplier=0.84,
    ),
    "performance-v1": PolicyProfile(
        id="performance-v1",
        version="v1",
        label="Performance",
        description="Higher performance bias with safety limits still enforced.",
        max_intensity_days_hard_cap=3,
        max_doubles_hard_cap=2,
        default_recovery_every_n_weeks=4,
        default_recovery_week_multiplier=0.86,
    ),
}


class CapsOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_week_volume_increase: Optional[float] = Field(default=None, ge=0.0, le=0.3)
    max_week_volume_decrease: Optional[float] = Field(default=None, ge=0.0, le=0.5)
    max_session_duration_change: Optional[float] = Field(default=None, ge=0.05, le=0.5)
    min_session_minutes: Optional[int] = Field(default=None, ge=5, le=60)
    max_session_minutes: Optional[int] = Field(default=None, ge=60, le=600)


class PolicyOverride(BaseModel):
    """Partial override for one profile. Bounds keep tuning inside sane ranges."""

    model_config = ConfigDict(extra="forbid")

    label: Optional[str] = Field(default=None, min_length=1, max_length=80)
    description: Optional[str] = Field(default=None, min_length=1, max_length=240)
    max_intensity_days_hard_cap: Optional[int] = Field(default=None, ge=1, le=3)
    max_doubles_hard_cap: Optional[int] = Field(default=None, ge=0, le=3)
    default_recovery_every_n_weeks: Optional[int] = Field(default=None, ge=2, le=8)
    default_recovery_week_multiplier: Optional[float] = Field(default=None, ge=0.55, le=0.98)
    caps: Optional[CapsOverride] = None


PolicyOverrideMap = dict[str, PolicyOverride]


def _merge(profile: PolicyProfile, override: PolicyOverride) -> PolicyProfile:
    top = override.model_dump(exclude_none=True, exclude={"caps"})
    caps = profile.caps
    if override.caps is not None:
        caps = replace(caps, **override.caps.model_dump(exclude_none=True))
    return replace(profile, caps=caps, **top)


def parse_override_map(raw: Any, *, source: str) -> PolicyOverrideMap:
    """
    Validate a {profile_id: override} mapping.

    Unknown profile ids and invalid entries are skipped with a warning so a bad
    tuning row never takes the registry down.
    """
    out: PolicyOverrideMap = {}
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Ignoring non-object policy overrides from %s", source)
        return out
    for profile_id, value in raw.items():
        if profile_id not in BUILTIN_PROFILES:
            logger.warning("Ignoring override for unknown policy profile %s (%s)", profile_id, source)
            continue
        try:
            out[profile_id] = value if isinstance(value, PolicyOverride) else PolicyOverride.model_validate(value or {})
        except PydanticValidationError as e:
            logger.warning("Ignoring invalid override for %s (%s): %s", profile_id, source, e)
    return out


def overrides_from_settings() -> PolicyOverrideMap:
    raw = settings.ADAPTATION_POLICY_OVERRIDES_JSON
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed ADAPTATION_POLICY_OVERRIDES_JSON")
        return {}
    return parse_override_map(parsed, source="env")


class PolicyRegistry:
    """Effective policy profiles = built-ins, then each override layer in order."""

    def __init__(self, *override_layers: Optional[PolicyOverrideMap]):
        self._layers: list[PolicyOverrideMap] = [layer for layer in override_layers if layer]
        self._profiles = self._build()

    @classmethod
    def from_settings(cls) -> "PolicyRegistry":
        return cls(overrides_from_settings())

    def _build(self) -> dict[str, PolicyProfile]:
        profiles = dict(BUILTIN_PROFILES)
        for layer in self._layers:
            for profile_id, override in layer.items():
                profiles[profile_id] = _merge(profiles[profile_id], override)
        return profiles

    def refresh(self, *override_layers: Optional[PolicyOverrideMap]) -> "PolicyRegistry":
        """Replace the override layers and rebuild the effective profiles."""
        self._layers = [layer for layer in override_layers if layer]
        self._profiles = self._build()
        return self

    def profiles(self) -> list[PolicyProfile]:
        return list(self._profiles.values())

    def get(self, profile_id: str) -> PolicyProfile:
        try:
            return self._profiles[profile_id]
        except KeyError:
            raise NotFoundError("Policy profile", profile_id)

    def resolve(self, setup: dict | None) -> PolicyProfile:
        setup = setup or {}
        explicit = str(setup.get("policy_profile_id") or "").strip()
        if explicit in self._profiles:
            return self._profiles[explicit]
        risk = setup.get("risk_tolerance")
        if risk == "low":
            return self._profiles["conservative-v1"]
        if risk == "high":
            return self._profiles["performance-v1"]
        return self._profiles[DEFAULT_PROFILE_ID]


# =============================================================================
# Persisted tuning
# =============================================================================


def get_policy_tuning_overrides(db: Session) -> PolicyOverrideMap:
    rows = db.query(PolicyTuning).all()
    return parse_override_map({r.profile_id: r.override_json for r in rows}, source="policy_tuning")


def load_policy_registry(db: Session) -> PolicyRegistry:
    """Registry with env overrides first, persisted tuning on top."""
    return PolicyRegistry(overrides_from_settings(), get_policy_tuning_overrides(db))


def upsert_policy_override(
    db: Session,
    *,
    profile_id: str,
    override: dict | PolicyOverride,
    actor_id: Optional[UUID] = None,
    registry: Optional[PolicyRegistry] = None,
) -> PolicyRegistry:
    """Persist an override, commit, and return the refreshed registry."""
    if profile_id not in BUILTIN_PROFILES:
        raise NotFoundError("Policy profile", profile_id)
    if not isinstance(override, PolicyOverride):
        try:
            override = PolicyOverride.model_validate(override)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid policy override: {e.errors()[0]['msg']}", field="override")

    row = db.query(PolicyTuning).filter(PolicyTuning.profile_id == profile_id).first()
    payload = override.model_dump(exclude_none=True)
    if row is None:
        row = PolicyTuning(profile_id=profile_id, profile_version="v1")
        db.add(row)
    row.override_json = payload
    row.updated_by = actor_id
    db.commit()

    log_event(logger, "policy_override_upserted", profile_id=profile_id, actor_id=actor_id)

    layers = (overrides_from_settings(), get_policy_tuning_overrides(db))
    if registry is not None:
        return registry.refresh(*layers)
    return PolicyRegistry(*layers)


def list_policy_profiles_for_admin(db: Session) -> list[dict]:
    overrides = get_policy_tuning_overrides(db)
    registry = PolicyRegistry(overrides_from_settings(), overrides)
    out = []
    for profile in registry.profiles():
        override = overrides.get(profile.id)
        out.append(
            {
                "profile_id": profile.id,
                "profile_version": profile.version,
                "label": profile.label,
                "description": profile.description,
                "effective": profile.to_dict(),
                "override": override.model_dump(exclude_none=True) if override else None,
            }
        )
    return out

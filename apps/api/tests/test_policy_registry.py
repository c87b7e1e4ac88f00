"""
Tests for the adaptation policy registry.
"""
import pytest

from core.config import settings
from core.exceptions import NotFoundError, ValidationError
from models import PolicyTuning
from services.policy_registry import (
    BUILTIN_PROFILES,
    PolicyOverride,
    PolicyRegistry,
    list_policy_profiles_for_admin,
    load_policy_registry,
    overrides_from_settings,
    parse_override_map,
    upsert_policy_override,
)


class TestResolve:
    def test_default_is_safe(self):
        assert PolicyRegistry().resolve({}).id == "safe-v1"
        assert PolicyRegistry().resolve(None).id == "safe-v1"

    def test_explicit_profile_wins(self):
        profile = PolicyRegistry().resolve({"policy_profile_id": "performance-v1", "risk_tolerance": "low"})
        assert profile.id == "performance-v1"

    @pytest.mark.parametrize(
        "risk,expected",
        [("low", "conservative-v1"), ("high", "performance-v1"), ("medium", "safe-v1")],
    )
    def test_risk_tolerance(self, risk, expected):
        assert PolicyRegistry().resolve({"risk_tolerance": risk}).id == expected

    def test_unknown_explicit_falls_back(self):
        assert PolicyRegistry().resolve({"policy_profile_id": "nope"}).id == "safe-v1"

    def test_get_unknown_raises(self):
        with pytest.raises(NotFoundError):
            PolicyRegistry().get("nope")


class TestOverrides:
    def test_layers_merge_in_order(self):
        env = {"safe-v1": PolicyOverride(max_intensity_days_hard_cap=3, caps={"max_week_volume_increase": 0.1})}
        tuning = {"safe-v1": PolicyOverride(label="Tuned", caps={"min_session_minutes": 30})}
        profile = PolicyRegistry(env, tuning).get("safe-v1")

        assert profile.label == "Tuned"
        assert profile.max_intensity_days_hard_cap == 3
        assert profile.caps.max_week_volume_increase == 0.1
        assert profile.caps.min_session_minutes == 30
        # untouched caps keep built-in values
        assert profile.caps.max_week_volume_decrease == 0.20
        # built-ins are never mutated
        assert BUILTIN_PROFILES["safe-v1"].label == "Safe Balanced"

    def test_invalid_and_unknown_entries_skipped(self):
        parsed = parse_override_map(
            {
                "safe-v1": {"max_intensity_days_hard_cap": 9},
                "bogus-v1": {"label": "x"},
                "conservative-v1": {"default_recovery_every_n_weeks": 5},
            },
            source="test",
        )
        assert list(parsed) == ["conservative-v1"]

    def test_non_object_ignored(self):
        assert parse_override_map(["safe-v1"], source="test") == {}
        assert parse_override_map(None, source="test") == {}

    def test_overrides_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "ADAPTATION_POLICY_OVERRIDES_JSON", '{"safe-v1": {"caps": {"max_week_volume_increase": 0.1}}}')
        overrides = overrides_from_settings()
        assert overrides["safe-v1"].caps.max_week_volume_increase == 0.1

    def test_malformed_settings_json(self, monkeypatch):
        monkeypatch.setattr(settings, "ADAPTATION_POLICY_OVERRIDES_JSON", "{not json")
        assert overrides_from_settings() == {}

    def test_refresh_replaces_layers(self):
        registry = PolicyRegistry({"safe-v1": PolicyOverride(label="A")})
        assert registry.get("safe-v1").label == "A"
        registry.refresh({"safe-v1": PolicyOverride(label="B")})
        assert registry.get("safe-v1").label == "B"
        registry.refresh()
        assert registry.get("safe-v1").label == "Safe Balanced"


class TestPersistedTuning:
    def test_upsert_then_load(self, db_session, coach):
        registry = PolicyRegistry()
        returned = upsert_policy_override(
            db_session,
            profile_id="performance-v1",
            override={"caps": {"max_week_volume_increase": 0.15}},
            actor_id=coach.id,
            registry=registry,
        )
        assert returned is registry
        assert registry.get("performance-v1").caps.max_week_volume_increase == 0.15

        row = db_session.query(PolicyTuning).filter(PolicyTuning.profile_id == "performance-v1").one()
        assert row.updated_by == coach.id

        loaded = load_policy_registry(db_session)
        assert loaded.get("performance-v1").caps.max_week_volume_increase == 0.15

        upsert_policy_override(db_session, profile_id="performance-v1", override={"label": "Race block"})
        assert db_session.query(PolicyTuning).count() == 1
        assert load_policy_registry(db_session).get("performance-v1").caps.max_week_volume_increase == 0.12

    def test_upsert_unknown_profile(self, db_session):
        with pytest.raises(NotFoundError):
            upsert_policy_override(db_session, profile_id="bogus-v1", override={})

    def test_upsert_invalid_override(self, db_session):
        with pytest.raises(ValidationError):
            upsert_policy_override(db_session, profile_id="safe-v1", override={"max_doubles_hard_cap": 10})

    def test_admin_listing(self, db_session):
        upsert_policy_override(db_session, profile_id="safe-v1", override={"label": "House default"})
        listing = {p["profile_id"]: p for p in list_policy_profiles_for_admin(db_session)}

        assert set(listing) == {"conservative-v1", "safe-v1", "performance-v1"}
        assert listing["safe-v1"]["label"] == "House default"
        assert listing["safe-v1"]["override"] == {"label": "House default"}
        assert listing["conservative-v1"]["override"] is None
        assert listing["safe-v1"]["effective"]["caps"]["max_week_volume_increase"] == 0.12

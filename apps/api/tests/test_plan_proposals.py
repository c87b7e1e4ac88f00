"""
Tests for the plan change proposal lifecycle.

Scenario used throughout (week_start=monday, plan starts 2026-03-02):

    week 0 (locked)   Tue Run tempo 40
    week 1            Tue Run tempo 40 "Hills", Sat Run endurance 60

with a SORENESS trigger and `today` inside week 0.
"""
from datetime import timedelta
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from conftest import PLAN_START, add_trigger
from core.config import settings
from core.exceptions import (
    HardSafetyBlockedError,
    InvalidStatusError,
    NotFoundError,
    ProposalConflictError,
    SessionLockedError,
    UndoNotAvailableError,
    ValidationError,
)
from models import DraftSession, DraftWeek, PlanChangeAudit, PlanChangeBeforeState
from services.draft_plan import load_sessions
from services.plan_proposals import (
    ProposalStatus,
    approve_and_publish_plan_change_proposal,
    approve_plan_change_proposal,
    batch_approve_safe_proposals,
    create_undo_proposal,
    generate_plan_change_proposal,
    get_proposal_preview,
    list_plan_change_proposals,
    proposal_to_dict,
    reject_plan_change_proposal,
    reopen_plan_change_proposal,
    revise_proposal_diff,
)
from services.policy_registry import PolicyRegistry
from services.suggestion_providers import SuggestionResult


class FixedProvider:
    """Suggestion provider returning a canned diff."""

    name = "fixed"

    def __init__(self, diff, rationale="Canned suggestion.", respects_locks=True):
        self.diff = diff
        self.rationale = rationale
        self.respects_locks = respects_locks
        self.calls = []

    def suggest(self, data):
        self.calls.append(data)
        return SuggestionResult(
            diff=self.diff, rationale_text=self.rationale, respects_locks=self.respects_locks, provider=self.name
        )


@pytest.fixture
def scenario(db_session, coach, athlete, make_draft):
    draft = make_draft(
        [
            {"locked": True, "sessions": [{"type": "tempo", "duration_minutes": 40}]},
            {
                "sessions": [
                    {"type": "tempo", "duration_minutes": 40, "notes": "Hills"},
                    {"type": "endurance", "duration_minutes": 60, "day_of_week": 6},
                ]
            },
        ]
    )
    w0, tue, sat = load_sessions(db_session, draft.id)
    trigger = add_trigger(db_session, draft, "SORENESS")
    return SimpleNamespace(db=db_session, coach=coach, athlete=athlete, draft=draft, w0=w0, tue=tue, sat=sat, trigger=trigger)


def _unsafe_provider(sc):
    return FixedProvider(
        [
            {"op": "REMOVE_SESSION", "session_id": str(sc.w0.id)},
            {"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.30},
            {"op": "SWAP_SESSION_TYPE", "session_id": str(sc.tue.id), "new_type": "endurance"},
            {"op": "ADD_NOTE", "target": "session", "session_id": str(sc.tue.id), "text": "Easy week"},
        ]
    )


def _ids(sc):
    return {"coach_id": sc.coach.id, "athlete_id": sc.athlete.id}


def _generate(sc, provider=None, **kwargs):
    return generate_plan_change_proposal(
        sc.db,
        draft_id=sc.draft.id,
        provider=provider or _unsafe_provider(sc),
        policy_registry=PolicyRegistry(),
        today=PLAN_START,
        **_ids(sc),
        **kwargs,
    )


def _approve(sc, proposal, today=PLAN_START):
    return approve_plan_change_proposal(
        sc.db, proposal_id=proposal.id, policy_registry=PolicyRegistry(), today=today, **_ids(sc)
    )


class TestGenerate:
    def test_rewrites_provider_diff_into_safe_proposal(self, scenario):
        sc = scenario
        provider = _unsafe_provider(sc)
        proposal = _generate(sc, provider)

        assert proposal.status == ProposalStatus.PROPOSED
        assert proposal.respects_locks is True
        assert proposal.trigger_ids == [str(sc.trigger.id)]
        assert proposal.diff_json == [
            {"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.2},
            {"op": "SWAP_SESSION_TYPE", "session_id": str(sc.tue.id), "new_type": "endurance"},
            {"op": "ADD_NOTE", "target": "session", "session_id": str(sc.tue.id), "text": "Easy week"},
        ]
        meta = proposal.metadata_json
        assert meta["provider"] == "fixed"
        assert meta["rewrite"]["dropped_ops"] == 1
        assert meta["policy_profile"] == {"id": "safe-v1", "version": "v1"}
        assert meta["current_week_index"] == 0
        assert meta["hard_safety"]["ok"] is True
        assert meta["lock_safety"]["would_fail_due_to_locks"] is False
        assert meta["reason_chain"][1] == "Trigger: SORENESS"
        assert set(proposal.baseline_sessions) == {str(sc.tue.id), str(sc.sat.id)}
        assert proposal.rationale_text.startswith("Canned suggestion.")

        data = provider.calls[0]
        assert data.trigger_types == ["SORENESS"]
        assert data.current_week_index == 0
        assert len(data.draft.sessions) == 3

    def test_default_deterministic_provider(self, scenario):
        sc = scenario
        proposal = generate_plan_change_proposal(
            sc.db, draft_id=sc.draft.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert proposal.metadata_json["provider"] == "deterministic"
        assert proposal.status == ProposalStatus.PROPOSED
        ops = [op["op"] for op in proposal.diff_json]
        assert ops == ["SWAP_SESSION_TYPE", "ADD_NOTE", "ADJUST_WEEK_VOLUME", "ADD_NOTE"]
        assert proposal.diff_json[0]["session_id"] == str(sc.tue.id)

    def test_empty_diff_stays_draft(self, scenario):
        proposal = _generate(scenario, FixedProvider([]))
        assert proposal.status == ProposalStatus.DRAFT

    def test_lock_violation_stays_draft(self, scenario):
        sc = scenario
        provider = FixedProvider([{"op": "ADD_NOTE", "target": "week", "week_index": 0, "text": "x"}])
        proposal = _generate(sc, provider)
        assert proposal.status == ProposalStatus.DRAFT
        assert proposal.respects_locks is False
        assert proposal.metadata_json["lock_safety"]["reasons"][0]["code"] == "WEEK_LOCKED"

    def test_requires_triggers(self, db_session, coach, athlete, make_draft):
        draft = make_draft([{"sessions": [{}]}])
        with pytest.raises(ValidationError):
            generate_plan_change_proposal(
                db_session, coach_id=coach.id, athlete_id=athlete.id, draft_id=draft.id, provider=FixedProvider([])
            )

    def test_unknown_trigger_id(self, scenario):
        with pytest.raises(NotFoundError):
            _generate(scenario, FixedProvider([]), trigger_ids=[str(uuid4())])

    def test_invalid_provider_diff(self, scenario):
        from core.exceptions import InvalidDiffError

        with pytest.raises(InvalidDiffError):
            _generate(scenario, FixedProvider([{"op": "NOPE"}]))


class TestApprove:
    def test_applies_rewritten_diff(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        result = _approve(sc, proposal)

        assert result["proposal"]["status"] == ProposalStatus.APPLIED
        assert result["proposal"]["applied_at"] is not None
        assert set(result["applied"]["changed_session_ids"]) == {str(sc.tue.id), str(sc.sat.id)}
        assert result["applied"]["week_totals"] == {"0": 40, "1": 80}

        sc.db.refresh(sc.tue)
        assert sc.tue.duration_minutes == 32
        assert sc.tue.type == "endurance"
        assert sc.tue.notes == "Hills\n\nEasy week"
        sc.db.refresh(sc.w0)
        assert sc.w0.duration_minutes == 40

        audit = sc.db.query(PlanChangeAudit).filter(PlanChangeAudit.id == UUID(result["audit_id"])).one()
        assert audit.event_type == "APPLY_PROPOSAL"
        checkpoint = sc.db.query(PlanChangeBeforeState).filter(PlanChangeBeforeState.id == audit.before_state_id).one()
        assert checkpoint.sessions_json[str(sc.tue.id)]["duration_minutes"] == 40
        assert checkpoint.sessions_json[str(sc.tue.id)]["notes"] == "Hills"

    def test_cannot_approve_twice(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        _approve(sc, proposal)
        with pytest.raises(InvalidStatusError) as exc:
            _approve(sc, proposal)
        assert exc.value.error_code == "INVALID_STATUS"

    def test_draft_status_cannot_be_approved(self, scenario):
        proposal = _generate(scenario, FixedProvider([]))
        with pytest.raises(InvalidStatusError):
            _approve(scenario, proposal)

    def test_conflict_when_session_changed(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        sc.sat.duration_minutes = 70
        sc.db.commit()

        with pytest.raises(ProposalConflictError) as exc:
            _approve(sc, proposal)
        assert exc.value.error_code == "PROPOSAL_CONFLICT"
        assert exc.value.details["session_ids"] == [str(sc.sat.id)]
        sc.db.refresh(sc.tue)
        assert sc.tue.duration_minutes == 40

    def test_conflict_when_session_deleted(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        sc.db.delete(sc.sat)
        sc.db.commit()
        with pytest.raises(ProposalConflictError):
            _approve(sc, proposal)

    def test_lock_added_after_generation(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        sc.tue.locked = True
        sc.db.commit()
        with pytest.raises(SessionLockedError):
            _approve(sc, proposal)

    def test_conflict_when_week_session_unlocked_after_generation(self, scenario):
        sc = scenario
        sc.sat.locked = True
        sc.db.commit()
        proposal = _generate(sc, FixedProvider([{"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.2}]))
        assert proposal.status == ProposalStatus.PROPOSED
        assert set(proposal.baseline_sessions) == {str(sc.tue.id), str(sc.sat.id)}

        sc.sat.locked = False
        sc.db.commit()
        with pytest.raises(ProposalConflictError) as exc:
            _approve(sc, proposal)
        assert exc.value.details["session_ids"] == [str(sc.sat.id)]
        sc.db.refresh(sc.sat)
        assert sc.sat.duration_minutes == 60

    def test_conflict_when_session_added_to_adjusted_week(self, scenario):
        sc = scenario
        proposal = _generate(sc, FixedProvider([{"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.2}]))
        extra = DraftSession(
            draft_id=sc.draft.id,
            week_index=1,
            ordinal=2,
            day_of_week=4,
            discipline="run",
            type="endurance",
            duration_minutes=30,
            locked=False,
        )
        sc.db.add(extra)
        sc.db.commit()

        with pytest.raises(ProposalConflictError) as exc:
            _approve(sc, proposal)
        assert exc.value.details["session_ids"] == [str(extra.id)]

    def test_lock_added_to_adjusted_week_is_skipped(self, scenario):
        sc = scenario
        proposal = _generate(sc, FixedProvider([{"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.2}]))
        sc.sat.locked = True
        sc.db.commit()

        result = _approve(sc, proposal)
        assert result["proposal"]["status"] == "APPLIED"
        sc.db.refresh(sc.sat)
        sc.db.refresh(sc.tue)
        assert sc.sat.duration_minutes == 60
        assert sc.tue.duration_minutes == 32

    def test_hard_safety_rechecked_on_live_calendar(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        with pytest.raises(HardSafetyBlockedError) as exc:
            _approve(sc, proposal, today=PLAN_START + timedelta(days=14))
        assert exc.value.details["reasons"][0] == "Week 2 is in the past and cannot be auto-adjusted."

    def test_retry_after_commit_reports_already_applied(self, scenario, monkeypatch):
        sc = scenario
        proposal = _generate(sc)
        real_commit = sc.db.commit
        calls = {"n": 0}

        def flaky_commit():
            real_commit()
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(settings, "TRANSACTION_RETRY_DELAY_MS", 0)
        monkeypatch.setattr(sc.db, "commit", flaky_commit)
        result = _approve(sc, proposal)

        assert result["already_applied"] is True
        assert result["proposal"]["status"] == ProposalStatus.APPLIED
        assert result["audit_id"] is not None
        sc.db.refresh(sc.tue)
        assert sc.tue.duration_minutes == 32


class TestApproveAndPublish:
    def test_publishes_snapshot(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        out = approve_and_publish_plan_change_proposal(
            sc.db, proposal_id=proposal.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert out["approval"]["proposal"]["status"] == ProposalStatus.APPLIED
        assert out["publish"]["published"] is True
        sc.db.refresh(sc.draft)
        assert sc.draft.published_hash == out["publish"]["published_hash"]

    def test_publish_failure_keeps_approval(self, scenario):
        sc = scenario
        proposal = _generate(sc)

        def broken_publisher(db, draft):
            raise RuntimeError("calendar service down")

        out = approve_and_publish_plan_change_proposal(
            sc.db,
            proposal_id=proposal.id,
            publisher=broken_publisher,
            policy_registry=PolicyRegistry(),
            today=PLAN_START,
            **_ids(sc),
        )
        assert out["publish"] == {"published": False, "error": "calendar service down"}
        sc.db.refresh(proposal)
        assert proposal.status == ProposalStatus.APPLIED


class TestUndo:
    def test_undo_restores_pre_apply_state(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        _approve(sc, proposal)

        undo = create_undo_proposal(
            sc.db, proposal_id=proposal.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert undo.status == ProposalStatus.PROPOSED
        assert undo.trigger_ids == []
        assert undo.source_proposal_id == proposal.id
        assert undo.metadata_json["undo_of"]["proposal_id"] == str(proposal.id)
        assert undo.diff_json[0] == {
            "op": "UPDATE_SESSION",
            "session_id": str(sc.tue.id),
            "patch": {"discipline": "run", "type": "tempo", "duration_minutes": 40, "notes": "Hills"},
        }

        _approve(sc, undo)
        sc.db.refresh(sc.tue)
        sc.db.refresh(sc.sat)
        assert (sc.tue.type, sc.tue.duration_minutes, sc.tue.notes) == ("tempo", 40, "Hills")
        assert (sc.sat.type, sc.sat.duration_minutes, sc.sat.notes) == ("endurance", 60, None)

    def test_undo_requires_applied(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        with pytest.raises(InvalidStatusError):
            create_undo_proposal(sc.db, proposal_id=proposal.id, **_ids(sc))

    def test_undo_skips_deleted_sessions(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        _approve(sc, proposal)
        sc.db.delete(sc.sat)
        sc.db.commit()

        undo = create_undo_proposal(
            sc.db, proposal_id=proposal.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert undo.metadata_json["skipped_session_ids"] == [str(sc.sat.id)]
        assert [op["session_id"] for op in undo.diff_json] == [str(sc.tue.id)]

    def test_undo_not_available_when_nothing_left(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        _approve(sc, proposal)
        sc.db.query(DraftSession).filter(DraftSession.week_index == 1).delete()
        sc.db.commit()
        with pytest.raises(UndoNotAvailableError):
            create_undo_proposal(sc.db, proposal_id=proposal.id, **_ids(sc))


class TestReviseRejectReopen:
    def test_revise_reevaluates(self, scenario):
        sc = scenario
        proposal = _generate(sc)

        too_long = [{"op": "UPDATE_SESSION", "session_id": str(sc.sat.id), "patch": {"duration_minutes": 120}}]
        revised = revise_proposal_diff(
            sc.db, proposal_id=proposal.id, diff=too_long, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert revised.status == ProposalStatus.DRAFT
        assert revised.respects_locks is True
        assert revised.metadata_json["hard_safety"]["ok"] is False
        assert set(revised.baseline_sessions) == {str(sc.sat.id)}

        ok = [{"op": "UPDATE_SESSION", "session_id": str(sc.sat.id), "patch": {"duration_minutes": 70}}]
        revised = revise_proposal_diff(
            sc.db, proposal_id=proposal.id, diff=ok, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert revised.status == ProposalStatus.PROPOSED
        _approve(sc, revised)
        sc.db.refresh(sc.sat)
        assert sc.sat.duration_minutes == 70

        events = [a.event_type for a in sc.db.query(PlanChangeAudit).filter(PlanChangeAudit.proposal_id == proposal.id)]
        assert events.count("REVISE_PROPOSAL") == 2

    def test_revise_applied_is_rejected(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        _approve(sc, proposal)
        with pytest.raises(InvalidStatusError):
            revise_proposal_diff(sc.db, proposal_id=proposal.id, diff=[], **_ids(sc))

    def test_reject_then_reopen(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        rejected = reject_plan_change_proposal(sc.db, proposal_id=proposal.id, reason="Not now", **_ids(sc))
        assert rejected.status == ProposalStatus.REJECTED
        assert rejected.rejected_at is not None
        with pytest.raises(InvalidStatusError):
            reject_plan_change_proposal(sc.db, proposal_id=proposal.id, **_ids(sc))

        reopened = reopen_plan_change_proposal(
            sc.db, proposal_id=proposal.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert reopened.id != proposal.id
        assert reopened.status == ProposalStatus.PROPOSED
        assert reopened.source_proposal_id == proposal.id
        assert reopened.diff_json == proposal.diff_json
        assert reopened.metadata_json["reopened_from"] == {"proposal_id": str(proposal.id), "status": "REJECTED"}

        audit = sc.db.query(PlanChangeAudit).filter(PlanChangeAudit.proposal_id == proposal.id).one()
        assert audit.event_type == "REJECT_PROPOSAL"
        assert audit.change_summary_text == "Not now"

    def test_reopen_reflects_new_locks(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        week1 = sc.db.query(DraftWeek).filter(DraftWeek.draft_id == sc.draft.id, DraftWeek.week_index == 1).one()
        week1.locked = True
        sc.db.commit()

        reopened = reopen_plan_change_proposal(
            sc.db, proposal_id=proposal.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert reopened.status == ProposalStatus.DRAFT
        assert reopened.respects_locks is False


class TestBatchApprove:
    def test_collects_failures(self, scenario):
        sc = scenario
        first = _generate(sc)
        second = _generate(
            sc, FixedProvider([{"op": "UPDATE_SESSION", "session_id": str(sc.sat.id), "patch": {"duration_minutes": 65}}])
        )
        second.created_at = first.created_at + timedelta(seconds=1)
        sc.sat.locked = True
        sc.db.commit()

        out = batch_approve_safe_proposals(
            sc.db, draft_id=sc.draft.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert out["considered_count"] == 2
        assert out["approved_count"] == 1
        assert out["failed_count"] == 1
        assert out["results"][0] == {"proposal_id": str(first.id), "ok": True, "status": "APPLIED"}
        assert out["results"][1]["proposal_id"] == str(second.id)
        assert out["results"][1]["code"] == "SESSION_LOCKED"

        sc.db.refresh(sc.sat)
        assert sc.sat.duration_minutes == 60

    def test_database_error_does_not_stop_the_batch(self, scenario, monkeypatch):
        import services.plan_proposals as plan_proposals

        sc = scenario
        first = _generate(
            sc, FixedProvider([{"op": "ADD_NOTE", "target": "session", "session_id": str(sc.tue.id), "text": "One"}])
        )
        second = _generate(
            sc, FixedProvider([{"op": "ADD_NOTE", "target": "session", "session_id": str(sc.sat.id), "text": "Two"}])
        )
        second.created_at = first.created_at + timedelta(seconds=1)
        sc.db.commit()

        real_apply = plan_proposals.apply_plan_diff
        calls = []

        def failing_once(db, draft, diff):
            calls.append(draft.id)
            if len(calls) == 1:
                raise OperationalError("UPDATE draft_session", {}, Exception("disk I/O error"))
            return real_apply(db, draft, diff)

        monkeypatch.setattr(plan_proposals, "apply_plan_diff", failing_once)

        out = batch_approve_safe_proposals(
            sc.db, draft_id=sc.draft.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert out["considered_count"] == 2
        assert out["approved_count"] == 1
        assert out["results"][0]["proposal_id"] == str(first.id)
        assert out["results"][0]["ok"] is False
        assert out["results"][0]["code"] == "INTERNAL"
        assert out["results"][1] == {"proposal_id": str(second.id), "ok": True, "status": "APPLIED"}

        sc.db.refresh(first)
        sc.db.refresh(sc.sat)
        assert first.status == ProposalStatus.PROPOSED
        assert sc.sat.notes == "Two"

    def test_skips_non_proposed(self, scenario):
        sc = scenario
        _generate(sc, FixedProvider([]))
        out = batch_approve_safe_proposals(
            sc.db, draft_id=sc.draft.id, policy_registry=PolicyRegistry(), today=PLAN_START, **_ids(sc)
        )
        assert out["considered_count"] == 0

    def test_rejects_bad_max_hours(self, scenario):
        sc = scenario
        with pytest.raises(ValidationError):
            batch_approve_safe_proposals(sc.db, draft_id=sc.draft.id, max_hours=0, **_ids(sc))


class TestRead:
    def test_list_and_preview(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        _generate(sc, FixedProvider([]))

        pending = list_plan_change_proposals(sc.db, draft_id=sc.draft.id, status="PROPOSED", **_ids(sc))
        assert [p.id for p in pending] == [proposal.id]
        assert len(list_plan_change_proposals(sc.db, **_ids(sc))) == 2

        preview = get_proposal_preview(sc.db, proposal_id=proposal.id, **_ids(sc))
        assert preview["apply_safety"] == {"respects_locks": True, "would_fail_due_to_locks": False, "reasons": []}
        week1 = preview["view"]["weeks"][1]
        assert week1["items"] == [
            {"kind": "week", "text": "Week volume -20% (unlocked sessions only)"},
            {"kind": "session", "text": "Tue Run: Tempo → Endurance; 40 min → 32 min; Added note: Easy week"},
            {"kind": "session", "text": "Sat Run: 60 min → 48 min"},
        ]
        assert preview["view"]["summary"]["intensity_sessions_delta"] == -1

    def test_scoped_to_coach(self, scenario):
        sc = scenario
        proposal = _generate(sc)
        with pytest.raises(NotFoundError):
            get_proposal_preview(sc.db, coach_id=uuid4(), athlete_id=sc.athlete.id, proposal_id=proposal.id)

    def test_proposal_to_dict(self, scenario):
        proposal = _generate(scenario)
        data = proposal_to_dict(proposal)
        assert data["status"] == "PROPOSED"
        assert data["source_proposal_id"] is None
        assert data["approved_at"] is None
        assert data["metadata"]["rewrite"]["dropped_ops"] == 1

"""
Tests for the safety rewriter and the hard validator.
"""
from uuid import uuid4

from services.adaptation_safety import (
    SafetyContext,
    SessionState,
    build_safety_context,
    clamp_duration,
    duration_bounds,
    evaluate_hard_safety,
    rewrite_diff_for_safe_apply,
    summarize_proposal_action,
)
from services.plan_diff import dump_diff, parse_diff
from services.policy_registry import AdaptationCaps

CAPS = AdaptationCaps()

PAST = str(uuid4())
EASY = str(uuid4())
TEMPO = str(uuid4())
LONG = str(uuid4())


def _ctx(protective=False, current_week_index=1, caps=CAPS):
    sessions = [
        SessionState(id=PAST, week_index=0, type="endurance", duration_minutes=45),
        SessionState(id=EASY, week_index=1, type="endurance", duration_minutes=60),
        SessionState(id=TEMPO, week_index=1, type="tempo", duration_minutes=40),
        SessionState(id=LONG, week_index=2, type="endurance", duration_minutes=120, locked=True),
    ]
    return SafetyContext(
        current_week_index=current_week_index,
        protective_mode=protective,
        caps=caps,
        sessions={s.id: s for s in sessions},
    )


def test_duration_bounds_round_inward():
    assert duration_bounds(60, CAPS) == (45, 75)
    assert duration_bounds(45, CAPS) == (34, 56)


def test_clamp_duration_respects_absolute_limits():
    assert clamp_duration(90, 60, CAPS) == 75
    assert clamp_duration(10, 20, CAPS) == 20
    assert clamp_duration(300, 239, CAPS) == 240


class TestRewriter:
    def test_drops_removals(self):
        diff = parse_diff([{"op": "REMOVE_SESSION", "session_id": EASY}])
        result = rewrite_diff_for_safe_apply(diff, _ctx())
        assert result.diff == []
        assert result.dropped_ops == 1
        assert "removals are never auto-applied" in result.log[0]

    def test_clamps_week_volume(self):
        diff = parse_diff(
            [
                {"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.3},
                {"op": "ADJUST_WEEK_VOLUME", "week_index": 2, "pct_delta": 0.25},
                {"op": "ADJUST_WEEK_VOLUME", "week_index": 3, "pct_delta": 0.05},
            ]
        )
        result = rewrite_diff_for_safe_apply(diff, _ctx())
        assert [op.pct_delta for op in result.diff] == [-0.2, 0.12, 0.05]
        assert result.dropped_ops == 0
        assert result.log == [
            "Clamped week 2 volume change from -30% to -20%.",
            "Clamped week 3 volume change from +25% to +12%.",
        ]

    def test_clamps_duration_and_keeps_unset_fields_unset(self):
        diff = parse_diff([{"op": "UPDATE_SESSION", "session_id": EASY, "patch": {"duration_minutes": 90}}])
        result = rewrite_diff_for_safe_apply(diff, _ctx())
        assert dump_diff(result.diff) == [
            {"op": "UPDATE_SESSION", "session_id": EASY, "patch": {"duration_minutes": 75}}
        ]

    def test_protective_mode_downgrades_escalation(self):
        diff = parse_diff(
            [
                {"op": "SWAP_SESSION_TYPE", "session_id": EASY, "new_type": "threshold"},
                {"op": "UPDATE_SESSION", "session_id": EASY, "patch": {"type": "Tempo"}},
                {"op": "SWAP_SESSION_TYPE", "session_id": TEMPO, "new_type": "threshold"},
            ]
        )
        result = rewrite_diff_for_safe_apply(diff, _ctx(protective=True))
        assert result.diff[0].new_type == "endurance"
        assert result.diff[1].patch.type == "endurance"
        # already intensity: not an escalation
        assert result.diff[2].new_type == "threshold"

    def test_escalation_allowed_without_protective_triggers(self):
        diff = parse_diff([{"op": "SWAP_SESSION_TYPE", "session_id": EASY, "new_type": "threshold"}])
        result = rewrite_diff_for_safe_apply(diff, _ctx())
        assert result.diff[0].new_type == "threshold"
        assert result.log == []

    def test_drops_past_week_ops(self):
        diff = parse_diff(
            [
                {"op": "ADJUST_WEEK_VOLUME", "week_index": 0, "pct_delta": -0.1},
                {"op": "ADD_NOTE", "target": "week", "week_index": 0, "text": "late"},
                {"op": "ADD_NOTE", "target": "session", "session_id": PAST, "text": "late"},
                {"op": "ADD_NOTE", "target": "session", "session_id": EASY, "text": "ok"},
            ]
        )
        result = rewrite_diff_for_safe_apply(diff, _ctx())
        assert result.dropped_ops == 3
        assert len(result.diff) == 1
        assert result.diff[0].text == "ok"

    def test_unknown_sessions_pass_through(self):
        missing = str(uuid4())
        diff = parse_diff([{"op": "UPDATE_SESSION", "session_id": missing, "patch": {"duration_minutes": 500}}])
        result = rewrite_diff_for_safe_apply(diff, _ctx())
        assert result.diff[0].patch.duration_minutes == 500


class TestHardSafety:
    def test_clean_diff_is_ok(self):
        diff = parse_diff(
            [
                {"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.2},
                {"op": "ADD_NOTE", "target": "session", "session_id": EASY, "text": "easy"},
            ]
        )
        result = evaluate_hard_safety(diff, _ctx())
        assert result.ok
        assert result.reasons == []
        # 60 -> 48, 40 -> 32
        assert result.metrics.week_minutes_delta == {1: -20}
        assert result.metrics.total_duration_delta_minutes == -20

    def test_accumulates_every_reason(self):
        diff = parse_diff(
            [
                {"op": "REMOVE_SESSION", "session_id": EASY},
                {"op": "ADJUST_WEEK_VOLUME", "week_index": 0, "pct_delta": 0.3},
                {"op": "UPDATE_SESSION", "session_id": EASY, "patch": {"duration_minutes": 10}},
                {"op": "SWAP_SESSION_TYPE", "session_id": EASY, "new_type": "tempo"},
            ]
        )
        result = evaluate_hard_safety(diff, _ctx(protective=True))
        assert not result.ok
        assert result.reasons == [
            "Removing sessions is blocked in auto-apply mode.",
            "Week 1 is in the past and cannot be auto-adjusted.",
            "Week 1 exceeds +12% volume cap.",
            f"Session {EASY} exceeds per-session 25% duration cap.",
            f"Session {EASY} duration must stay between 20 and 240 minutes.",
            "Protective triggers cannot escalate a session into intensity.",
        ]
        assert result.metrics.remove_count == 1
        assert result.to_dict()["metrics"]["week_minutes_delta"] == {"0": 14}

    def test_missing_session_reported(self):
        diff = parse_diff([{"op": "SWAP_SESSION_TYPE", "session_id": str(uuid4()), "new_type": "easy"}])
        result = evaluate_hard_safety(diff, _ctx())
        assert result.reasons == ["A swap targets a missing session."]

    def test_restore_targets_skip_caps_but_not_past_week(self):
        diff = parse_diff(
            [
                {"op": "UPDATE_SESSION", "session_id": EASY, "patch": {"duration_minutes": 100, "type": "tempo"}},
                {"op": "UPDATE_SESSION", "session_id": PAST, "patch": {"duration_minutes": 45}},
            ]
        )
        targets = {
            EASY: {"duration_minutes": 100, "type": "tempo", "discipline": "run", "notes": None},
            PAST: {"duration_minutes": 45, "type": "endurance", "discipline": "run", "notes": None},
        }
        result = evaluate_hard_safety(diff, _ctx(protective=True), restore_targets=targets)
        assert result.reasons == [f"Session {PAST} is in a past week and cannot be auto-adjusted."]

    def test_restore_only_exempts_matching_values(self):
        diff = parse_diff([{"op": "UPDATE_SESSION", "session_id": EASY, "patch": {"duration_minutes": 100}}])
        targets = {EASY: {"duration_minutes": 90}}
        result = evaluate_hard_safety(diff, _ctx(), restore_targets=targets)
        assert not result.ok


def test_build_safety_context_from_rows(db_session, make_draft):
    from conftest import PLAN_START
    from datetime import timedelta

    from services.draft_plan import load_sessions

    draft = make_draft([{"sessions": [{}]}, {"sessions": [{}]}])
    ctx = build_safety_context(
        setup=draft.setup_json,
        sessions=load_sessions(db_session, draft.id),
        trigger_types=["HIGH_COMPLIANCE", "SORENESS"],
        caps=CAPS,
        today=PLAN_START + timedelta(days=7),
    )
    assert ctx.current_week_index == 1
    assert ctx.protective_mode is True
    assert len(ctx.sessions) == 2

    calm = build_safety_context(setup={}, sessions=[], trigger_types=["HIGH_COMPLIANCE"], caps=CAPS)
    assert calm.protective_mode is False
    assert calm.current_week_index == 0


def test_summarize_proposal_action():
    diff = parse_diff(
        [
            {"op": "ADJUST_WEEK_VOLUME", "week_index": 1, "pct_delta": -0.2},
            {"op": "ADD_NOTE", "target": "week", "week_index": 1, "text": "Deload"},
        ]
    )
    metrics = evaluate_hard_safety(diff, _ctx()).metrics
    assert summarize_proposal_action(["SORENESS"], metrics) == (
        "Why: SORENESS. Changed: week volume (W2 -20%), 1 coaching note, -20 min total duration."
    )
    assert summarize_proposal_action([], evaluate_hard_safety([], _ctx()).metrics) == (
        "Why: coach review. Changed: no material edits."
    )

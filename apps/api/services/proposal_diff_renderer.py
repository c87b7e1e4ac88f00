"""
Proposal Diff Renderer

Replays a diff in memory against the canonical plan snapshot and produces a
coach-facing view model:

    {
      "summary": {"sessions_changed_count", "total_minutes_delta", "intensity_sessions_delta"},
      "weeks": [{"week_index", "before_total_minutes", "after_total_minutes",
                 "items": [{"kind": "session" | "week" | "unknown", "text"}]}]
    }

Pure: no DB access. Sessions are addressed by (week_index, ordinal), and the
replay follows the applier's rules (week ops skip locked sessions, notes are
appended). References that cannot be resolved become "unknown" items instead
of errors so a stale proposal still previews.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Optional

from services.draft_plan import DAY_NAMES, round_minutes
from services.plan_diff import (
    AddSessionNoteOp,
    AddWeekNoteOp,
    AdjustWeekVolumeOp,
    PlanDiffOp,
    RemoveSessionOp,
    SwapSessionTypeOp,
    UpdateSessionOp,
    append_note,
    parse_diff,
)

INTENSITY_TYPES = {"tempo", "threshold"}

SessionKey = tuple[int, int]  # (week_index, ordinal)


def _day_name(day_of_week: Any) -> str:
    try:
        idx = int(day_of_week)
    except (TypeError, ValueError):
        idx = 0
    return DAY_NAMES[idx] if 0 <= idx < len(DAY_NAMES) else f"Day{idx}"


def _title(value: Any) -> str:
    text = str(value or "").strip()
    return text[0].upper() + text[1:] if text else "-"


def _label(session: dict) -> str:
    return f"{_day_name(session.get('day_of_week'))} {_title(session.get('discipline'))}"


def _minutes(value: Any) -> str:
    try:
        return f"{max(0, round_minutes(float(value)))} min"
    except (TypeError, ValueError):
        return "0 min"


def _week_minutes(week: Optional[dict]) -> int:
    if not week:
        return 0
    return sum(int(s.get("duration_minutes") or 0) for s in week.get("sessions") or [])


def _is_intensity(session: dict) -> bool:
    return str(session.get("type") or "").lower() in INTENSITY_TYPES


def _state(session: dict) -> dict:
    return {
        "type": str(session.get("type") or ""),
        "duration_minutes": int(session.get("duration_minutes") or 0),
        "discipline": str(session.get("discipline") or ""),
        "day_of_week": int(session.get("day_of_week") or 0),
    }


def _session_index(draft_sessions: Iterable[Any]) -> dict[str, dict]:
    out: dict[str, dict] = {}
    for s in draft_sessions or []:
        if isinstance(s, dict):
            sid = s.get("id")
            row = s
        else:
            sid = getattr(s, "id", None)
            row = {
                "week_index": s.week_index,
                "ordinal": s.ordinal,
                "day_of_week": s.day_of_week,
                "discipline": s.discipline,
                "type": s.type,
                "duration_minutes": s.duration_minutes,
                "locked": s.locked,
            }
        if sid is None:
            continue
        out[str(sid)] = {
            "week_index": int(row.get("week_index") or 0),
            "ordinal": int(row.get("ordinal") or 0),
            "day_of_week": int(row.get("day_of_week") or 0),
            "discipline": str(row.get("discipline") or ""),
            "type": str(row.get("type") or ""),
            "duration_minutes": int(row.get("duration_minutes") or 0),
        }
    return out


def render_proposal_diff(
    diff: list[PlanDiffOp] | list[dict],
    plan_json: dict,
    draft_sessions: Iterable[Any] = (),
) -> dict:
    if diff and isinstance(diff[0], dict):
        diff = parse_diff(diff)
    if not plan_json or plan_json.get("version") != "v1" or not isinstance(plan_json.get("weeks"), list):
        raise ValueError("Invalid plan snapshot (expected version=v1 with weeks).")

    before_weeks = {int(w["week_index"]): w for w in plan_json["weeks"]}
    after_weeks = {wi: copy.deepcopy(w) for wi, w in before_weeks.items()}
    sessions_by_id = _session_index(draft_sessions)

    unknown: list[tuple[Optional[int], str]] = []
    week_notes: list[tuple[int, str]] = []
    volume_by_week: dict[int, list[float]] = {}
    touched: set[SessionKey] = set()
    before_state: dict[SessionKey, dict] = {}
    after_state: dict[SessionKey, dict] = {}
    notes_added: dict[SessionKey, list[str]] = {}

    def find(week_index: int, ordinal: int) -> Optional[dict]:
        week = after_weeks.get(week_index)
        if not week:
            return None
        return next((s for s in week.get("sessions") or [] if int(s.get("ordinal", -1)) == ordinal), None)

    def ordered(week: dict) -> list[dict]:
        return sorted(week.get("sessions") or [], key=lambda s: int(s.get("ordinal") or 0))

    def resolve(op: PlanDiffOp, verb: str) -> tuple[Optional[SessionKey], Optional[dict]]:
        snap = sessions_by_id.get(str(op.session_id))
        if snap is None:
            unknown.append((None, f"Unknown session_id={op.session_id} (cannot {verb})."))
            return None, None
        key = (snap["week_index"], snap["ordinal"])
        before_state.setdefault(key, _state(snap))
        s = find(*key)
        if s is None:
            unknown.append(
                (key[0], f"Unknown session key week={key[0]} ordinal={key[1]} (cannot {verb}).")
            )
            return None, None
        return key, s

    for op in diff:
        if isinstance(op, AdjustWeekVolumeOp):
            week = after_weeks.get(op.week_index)
            if not week:
                unknown.append((None, f"Unknown week_index={op.week_index} (cannot adjust volume)."))
                continue
            volume_by_week.setdefault(op.week_index, []).append(op.pct_delta)
            factor = 1 + op.pct_delta
            for s in ordered(week):
                if s.get("locked"):
                    continue
                key = (op.week_index, int(s.get("ordinal") or 0))
                before_state.setdefault(key, _state(s))
                s["duration_minutes"] = max(0, round_minutes(int(s.get("duration_minutes") or 0) * factor))
                touched.add(key)
                after_state[key] = _state(s)

        elif isinstance(op, AddWeekNoteOp):
            week = after_weeks.get(op.week_index)
            if not week:
                unknown.append((None, f"Unknown week_index={op.week_index} (cannot add week note)."))
                continue
            week_notes.append((op.week_index, op.text))
            for s in ordered(week):
                if s.get("locked"):
                    continue
                s["notes"] = append_note(s.get("notes"), op.text)
                touched.add((op.week_index, int(s.get("ordinal") or 0)))

        elif isinstance(op, AddSessionNoteOp):
            key, s = resolve(op, "add note")
            if key is None:
                continue
            s["notes"] = append_note(s.get("notes"), op.text)
            touched.add(key)
            notes_added.setdefault(key, []).append(op.text)
            after_state[key] = _state(s)

        elif isinstance(op, SwapSessionTypeOp):
            key, s = resolve(op, "swap type")
            if key is None:
                continue
            s["type"] = op.new_type
            touched.add(key)
            after_state[key] = _state(s)

        elif isinstance(op, RemoveSessionOp):
            snap = sessions_by_id.get(str(op.session_id))
            if snap is None:
                unknown.append((None, f"Unknown session_id={op.session_id} (cannot remove)."))
                continue
            week = after_weeks.get(snap["week_index"])
            if not week:
                unknown.append((None, f"Unknown week_index={snap['week_index']} (cannot remove session)."))
                continue
            kept = [s for s in week.get("sessions") or [] if int(s.get("ordinal", -1)) != snap["ordinal"]]
            if len(kept) == len(week.get("sessions") or []):
                unknown.append(
                    (snap["week_index"], f"Session not found in week={snap['week_index']} ordinal={snap['ordinal']} (cannot remove).")
                )
                continue
            week["sessions"] = kept
            key = (snap["week_index"], snap["ordinal"])
            touched.add(key)
            before_state.setdefault(key, _state(snap))

        elif isinstance(op, UpdateSessionOp):
            key, s = resolve(op, "update session")
            if key is None:
                continue
            for field_name, value in op.patch.changes().items():
                s[field_name] = value
            touched.add(key)
            after_state[key] = _state(s)

    week_indices = sorted(set(before_weeks) | set(after_weeks))
    removed = {k for k in touched if find(*k) is None}

    weeks_out: list[dict] = []
    for wi in week_indices:
        items: list[dict] = []
        for pct in volume_by_week.get(wi, []):
            rounded = round(pct * 100)
            items.append({"kind": "week", "text": f"Week volume {'+' if rounded > 0 else ''}{rounded}% (unlocked sessions only)"})
        for note_week, text in week_notes:
            if note_week == wi:
                items.append({"kind": "week", "text": f"Added note: {text}"})

        for key in sorted((k for k in touched if k[0] == wi), key=lambda k: k[1]):
            if key in removed:
                b = before_state.get(key)
                label = _label(b) if b else f"Session {key[1]}"
                items.append({"kind": "session", "text": f"{label}: removed"})
                continue
            b, a = before_state.get(key), after_state.get(key)
            if not b or not a:
                s = find(*key)
                items.append({"kind": "session", "text": f"{_label(s)}: updated"})
                continue
            parts: list[str] = []
            if b["type"] != a["type"]:
                parts.append(f"{_title(b['type'])} → {_title(a['type'])}")
            if b["duration_minutes"] != a["duration_minutes"]:
                parts.append(f"{_minutes(b['duration_minutes'])} → {_minutes(a['duration_minutes'])}")
            for text in notes_added.get(key, []):
                parts.append(f"Added note: {text}")
            items.append({"kind": "session", "text": f"{_label(a)}: {'; '.join(parts) if parts else 'updated'}"})

        for unknown_week, text in unknown:
            if unknown_week == wi:
                items.append({"kind": "unknown", "text": text})

        weeks_out.append(
            {
                "week_index": wi,
                "before_total_minutes": _week_minutes(before_weeks.get(wi)),
                "after_total_minutes": _week_minutes(after_weeks.get(wi)),
                "items": items,
            }
        )

    global_unknown = [{"kind": "unknown", "text": text} for unknown_week, text in unknown if unknown_week is None]
    if global_unknown:
        if weeks_out:
            weeks_out[0]["items"] = global_unknown + weeks_out[0]["items"]
        else:
            weeks_out.append({"week_index": 0, "before_total_minutes": 0, "after_total_minutes": 0, "items": global_unknown})

    total_before = sum(_week_minutes(w) for w in before_weeks.values())
    total_after = sum(_week_minutes(w) for w in after_weeks.values())
    intensity_before = sum(1 for w in before_weeks.values() for s in w.get("sessions") or [] if _is_intensity(s))
    intensity_after = sum(1 for w in after_weeks.values() for s in w.get("sessions") or [] if _is_intensity(s))

    return {
        "summary": {
            "sessions_changed_count": len(touched),
            "total_minutes_delta": total_after - total_before,
            "intensity_sessions_delta": intensity_after - intensity_before,
        },
        "weeks": weeks_out,
    }

"""
Suggestion Providers

A suggestion provider turns (trigger types, draft snapshot) into a candidate
diff plus rationale. Its output is untrusted: the proposal service always
parses, rewrites and validates it, so swapping providers never changes the
safety guarantees.

- DeterministicSuggestionProvider: rule-based, one play per trigger type.
- LlmSuggestionProvider: OpenAI chat completion returning JSON; any failure
  (no key, API error, unparseable or invalid output) falls back to the
  deterministic provider.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings, settings as default_settings
from core.exceptions import InvalidDiffError
from services.plan_diff import parse_diff

logger = logging.getLogger(__name__)


# =============================================================================
# Contract
# =============================================================================


class WeekView(BaseModel):
    week_index: int
    locked: bool = False


class SessionView(BaseModel):
    id: str
    week_index: int
    ordinal: int
    day_of_week: int
    discipline: str
    type: str
    duration_minutes: int
    notes: Optional[str] = None
    locked: bool = False


class DraftView(BaseModel):
    weeks: list[WeekView] = Field(default_factory=list)
    sessions: list[SessionView] = Field(default_factory=list)


class SuggestionInput(BaseModel):
    trigger_types: list[str]
    draft: DraftView
    current_week_index: int = 0


class SuggestionResult(BaseModel):
    diff: list[dict[str, Any]]
    rationale_text: str = ""
    respects_locks: bool = True
    provider: str = "deterministic"


class SuggestionProvider(Protocol):
    name: str

    def suggest(self, data: SuggestionInput) -> SuggestionResult: ...


# =============================================================================
# Deterministic
# =============================================================================

INTENSITY_TYPES = {"tempo", "threshold"}


def _is_intensity(session: SessionView) -> bool:
    return (session.type or "").lower() in INTENSITY_TYPES


def _downgrade(session_type: str) -> str:
    return "tempo" if (session_type or "").lower() == "threshold" else "endurance"


def _pct_text(pct_delta: float) -> str:
    pct = round(pct_delta * 100)
    return f"+{pct}%" if pct > 0 else f"{pct}%"


class DeterministicSuggestionProvider:
    name = "deterministic"

    def suggest(self, data: SuggestionInput) -> SuggestionResult:
        week_locked = {w.week_index: w.locked for w in data.draft.weeks}
        sessions = sorted(
            (s for s in data.draft.sessions if s.week_index >= data.current_week_index),
            key=lambda s: (s.week_index, s.ordinal, s.day_of_week),
        )

        def open_for_edit(s: SessionView) -> bool:
            return not s.locked and not week_locked.get(s.week_index, False)

        next_week = data.current_week_index + 1
        next_week_locked = week_locked.get(next_week, False)
        next_intensity = next((s for s in sessions if _is_intensity(s) and open_for_edit(s)), None)

        ops: list[dict[str, Any]] = []
        rationale: list[str] = []
        respects_locks = True

        def blocked(reason: str) -> None:
            nonlocal respects_locks
            respects_locks = False
            rationale.append(f"Blocked by lock: {reason}")

        def week_volume(pct_delta: float, because: str) -> None:
            if next_week_locked:
                blocked(f"week {next_week + 1} is locked (cannot adjust week volume).")
                return
            ops.append({"op": "ADJUST_WEEK_VOLUME", "week_index": next_week, "pct_delta": pct_delta})
            ops.append(
                {
                    "op": "ADD_NOTE",
                    "target": "week",
                    "week_index": next_week,
                    "text": f"Volume adjustment {_pct_text(pct_delta)} ({because}).",
                }
            )
            rationale.append(f"{because}: adjust next week volume {_pct_text(pct_delta)}.")

        def swap(session: SessionView, new_type: str, note: str) -> None:
            ops.append({"op": "SWAP_SESSION_TYPE", "session_id": session.id, "new_type": new_type})
            ops.append({"op": "ADD_NOTE", "target": "session", "session_id": session.id, "text": note})

        for trigger in data.trigger_types:
            if trigger == "SORENESS":
                rationale.append("Trigger SORENESS: soreness or pain reported recently.")
                if next_intensity is None:
                    blocked("no unlocked intensity session found to convert for SORENESS.")
                else:
                    swap(next_intensity, "recovery", "SORENESS: converted to recovery.")
                week_volume(-0.10, "SORENESS")

            elif trigger == "TOO_HARD":
                rationale.append("Trigger TOO_HARD: recent sessions felt too hard.")
                if next_intensity is None:
                    blocked("no unlocked intensity session found to downgrade for TOO_HARD.")
                else:
                    new_type = _downgrade(next_intensity.type)
                    swap(
                        next_intensity,
                        new_type,
                        f"TOO_HARD: downgraded intensity ({next_intensity.type} -> {new_type}).",
                    )

            elif trigger == "MISSED_KEY":
                rationale.append("Trigger MISSED_KEY: key sessions were skipped.")
                week_volume(-0.15, "MISSED_KEY")
                if next_week_locked:
                    blocked(f"week {next_week + 1} is locked (cannot replace intensity session).")
                else:
                    target = next(
                        (s for s in sessions if s.week_index == next_week and _is_intensity(s) and open_for_edit(s)),
                        None,
                    )
                    if target is None:
                        blocked("no unlocked intensity session found in next week to replace for MISSED_KEY.")
                    else:
                        swap(target, "endurance", "MISSED_KEY: replaced an intensity session with endurance.")

            elif trigger == "HIGH_COMPLIANCE":
                rationale.append("Trigger HIGH_COMPLIANCE: strong completion with no negative flags.")
                if next_week_locked:
                    blocked(f"week {next_week + 1} is locked (cannot apply progression).")
                    continue
                candidates = sorted(
                    (s for s in sessions if s.week_index == next_week and open_for_edit(s)),
                    key=lambda s: (-s.duration_minutes, s.ordinal),
                )
                if candidates:
                    target = candidates[0]
                    ops.append(
                        {
                            "op": "UPDATE_SESSION",
                            "session_id": target.id,
                            "patch": {"duration_minutes": target.duration_minutes + 10},
                        }
                    )
                    ops.append(
                        {
                            "op": "ADD_NOTE",
                            "target": "session",
                            "session_id": target.id,
                            "text": "HIGH_COMPLIANCE: small progression (+10 minutes).",
                        }
                    )
                    rationale.append("HIGH_COMPLIANCE: +10 minutes to the longest session next week.")
                else:
                    week_volume(0.05, "HIGH_COMPLIANCE")

            else:
                logger.warning("Unknown trigger type %s ignored by deterministic suggester", trigger)

        return SuggestionResult(
            diff=ops,
            rationale_text="\n".join(rationale),
            respects_locks=respects_locks,
            provider=self.name,
        )


# =============================================================================
# LLM
# =============================================================================


def _extract_json_object(text: str) -> dict[str, Any]:
    """Extract the first JSON object from model output."""
    if not text:
        raise ValueError("Empty model response")
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise ValueError("No JSON object found in model response")
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise ValueError("Model response JSON is not an object")
    return parsed


_SYSTEM_PROMPT = (
    "You are an endurance coach's planning assistant. "
    "Given adaptation triggers and a draft training plan, propose a small, safe set of edits. "
    "Return ONLY valid JSON. No markdown, no commentary."
)

_OUTPUT_CONTRACT = """Return a JSON object:
{
  "diff": [operation, ...],
  "rationale_text": string,
  "respects_locks": boolean
}

Allowed operations:
- {"op": "UPDATE_SESSION", "session_id": id, "patch": {"type"?: str, "duration_minutes"?: int, "notes"?: str}}
- {"op": "SWAP_SESSION_TYPE", "session_id": id, "new_type": str}
- {"op": "ADJUST_WEEK_VOLUME", "week_index": int, "pct_delta": number between -0.20 and 0.12}
- {"op": "ADD_NOTE", "target": "session", "session_id": id, "text": str}
- {"op": "ADD_NOTE", "target": "week", "week_index": int, "text": str}

Rules:
- Never touch locked weeks or locked sessions.
- Never edit weeks before current_week_index.
- For SORENESS, TOO_HARD or MISSED_KEY never change a session into tempo or threshold.
- Keep duration changes within 25% of the current value and between 20 and 240 minutes."""


class LlmSuggestionProvider:
    name = "llm"

    def __init__(
        self,
        *,
        client: Any = None,
        model: Optional[str] = None,
        fallback: Optional[SuggestionProvider] = None,
        app_settings: Optional[Settings] = None,
    ):
        self._settings = app_settings or default_settings
        self._client = client
        self.model = model or self._settings.ADAPTATION_LLM_MODEL
        self.fallback = fallback or DeterministicSuggestionProvider()

    def _get_client(self):
        if self._client is not None:
            return self._client
        if not self._settings.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY not configured")
        from openai import OpenAI

        self._client = OpenAI(
            api_key=self._settings.OPENAI_API_KEY,
            timeout=self._settings.ADAPTATION_LLM_TIMEOUT_S,
        )
        return self._client

    def _ask(self, data: SuggestionInput) -> SuggestionResult:
        client = self._get_client()
        user = (
            f"Input:\n{json.dumps(data.model_dump(mode='json'), sort_keys=True)}\n\n{_OUTPUT_CONTRACT}"
        )
        response = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
            temperature=0.2,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        parsed = _extract_json_object(content)
        result = SuggestionResult.model_validate({**parsed, "provider": self.name})
        # Reject structurally invalid diffs here so the fallback can take over.
        parse_diff(result.diff)
        return result

    def suggest(self, data: SuggestionInput) -> SuggestionResult:
        try:
            return self._ask(data)
        except (InvalidDiffError, PydanticValidationError, ValueError, RuntimeError) as e:
            logger.warning("LLM suggestion rejected, using deterministic fallback: %s", e)
        except Exception as e:  # API/network errors from the client
            logger.warning("LLM suggestion failed, using deterministic fallback: %s", e)
        return self.fallback.suggest(data)


def get_suggestion_provider(app_settings: Optional[Settings] = None) -> SuggestionProvider:
    s = app_settings or default_settings
    if s.ADAPTATION_AI_MODE == "llm":
        return LlmSuggestionProvider(app_settings=s)
    return DeterministicSuggestionProvider()

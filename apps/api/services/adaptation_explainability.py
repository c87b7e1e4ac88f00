"""
Trigger explainability: how much to trust each trigger, and a short reason
chain (signal -> trigger -> action -> expected effect) shown with proposals.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional


@dataclass
class TriggerQuality:
    trigger_id: str
    trigger_type: str
    confidence: float  # 0..1
    impact: str  # low | medium | high
    reason: str


@dataclass
class TriggerAssessment:
    ranked: list[TriggerQuality] = field(default_factory=list)
    average_confidence: float = 0.0
    high_impact_count: int = 0
    should_queue: bool = False
    suppression_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _count(evidence: dict, key: str) -> float:
    try:
        return float(evidence.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def _confidence(trigger_type: str, evidence: dict) -> float:
    if trigger_type == "SORENESS":
        n = _count(evidence, "soreness_count") + _count(evidence, "pain_count")
        return _clamp01(0.45 + min(0.45, n * 0.18))
    if trigger_type == "TOO_HARD":
        n = _count(evidence, "too_hard_count") + 0.5 * _count(evidence, "high_rpe_count")
        return _clamp01(0.4 + min(0.5, n * 0.16))
    if trigger_type == "MISSED_KEY":
        return _clamp01(0.45 + min(0.45, _count(evidence, "missed_key_count") * 0.17))
    if trigger_type == "HIGH_COMPLIANCE":
        compliance = _count(evidence, "compliance")
        total = _count(evidence, "total_feedback_count")
        return _clamp01(0.25 + compliance * 0.4 + min(0.2, total * 0.02))
    return 0.45


def _impact(trigger_type: str, confidence: float) -> str:
    if trigger_type in ("SORENESS", "MISSED_KEY"):
        return "high" if confidence >= 0.55 else "medium"
    if trigger_type == "TOO_HARD":
        return "high" if confidence >= 0.6 else "medium"
    return "medium" if confidence >= 0.65 else "low"


def _reason(trigger_type: str, evidence: dict) -> str:
    if trigger_type == "SORENESS":
        return (
            f"{int(_count(evidence, 'soreness_count'))} soreness flags and "
            f"{int(_count(evidence, 'pain_count'))} pain flags in recent sessions."
        )
    if trigger_type == "TOO_HARD":
        return (
            f"{int(_count(evidence, 'too_hard_count'))} sessions reported as too hard, "
            f"{int(_count(evidence, 'high_rpe_count'))} at RPE 8+."
        )
    if trigger_type == "MISSED_KEY":
        return f"{int(_count(evidence, 'missed_key_count'))} key sessions skipped."
    if trigger_type == "HIGH_COMPLIANCE":
        return f"Completion {round(_count(evidence, 'compliance') * 100)}% with no negative flags."
    return "Trigger signal detected."


def assess_trigger_quality(triggers: Iterable[Any]) -> TriggerAssessment:
    """Rank triggers (AdaptationTrigger rows or dicts) by confidence."""
    ranked: list[TriggerQuality] = []
    for t in triggers:
        if isinstance(t, dict):
            trigger_id, trigger_type, evidence = t.get("id"), t.get("trigger_type"), t.get("evidence") or {}
        else:
            trigger_id, trigger_type, evidence = t.id, t.trigger_type, t.evidence_json or {}
        trigger_type = str(trigger_type)
        confidence = _confidence(trigger_type, evidence)
        ranked.append(
            TriggerQuality(
                trigger_id=str(trigger_id),
                trigger_type=trigger_type,
                confidence=round(confidence, 3),
                impact=_impact(trigger_type, confidence),
                reason=_reason(trigger_type, evidence),
            )
        )
    ranked.sort(key=lambda r: (-r.confidence, r.trigger_type))

    if not ranked:
        return TriggerAssessment(suppression_reason="No triggers to act on.")

    average = sum(r.confidence for r in ranked) / len(ranked)
    high_impact = len([r for r in ranked if r.impact == "high"])
    low_signals = len([r for r in ranked if r.confidence < 0.52])
    should_queue = not (high_impact == 0 and average < 0.55 and low_signals == len(ranked))
    return TriggerAssessment(
        ranked=ranked,
        average_confidence=round(average, 3),
        high_impact_count=high_impact,
        should_queue=should_queue,
        suppression_reason=None if should_queue else "Signals are low-confidence and low-impact.",
    )


def _expected_effect(trigger_types: list[str]) -> str:
    if any(t in ("SORENESS", "TOO_HARD") for t in trigger_types):
        return "Reduce acute stress and improve recovery readiness next week."
    if "MISSED_KEY" in trigger_types:
        return "Stabilize consistency and protect completion of key sessions."
    if "HIGH_COMPLIANCE" in trigger_types:
        return "Apply small, safe progression while preserving durability."
    return "Adjust next block to improve adherence and training quality."


def build_reason_chain(ranked: list[TriggerQuality], action_summary: str) -> list[str]:
    trigger_types = [r.trigger_type for r in ranked]
    signal = ", ".join(f"{r.trigger_type} ({round(r.confidence * 100)}%)" for r in ranked[:2])
    return [
        f"Signal: {signal or 'recent athlete feedback/activity'}",
        f"Trigger: {', '.join(trigger_types) if trigger_types else 'none'}",
        f"Action: {action_summary}",
        f"Expected effect: {_expected_effect(trigger_types)}",
    ]

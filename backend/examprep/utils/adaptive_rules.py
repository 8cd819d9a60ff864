"""Threshold rule evaluation for adaptive difficulty profiles.

Rules are evaluated in list order against the windowed average of each
metric. Every rule that fires applies its action; level moves accumulate
and are clamped to the ordinal range of `LEVELS`. The evaluation is a pure
function: it never mutates its inputs, so a caller can persist the outcome
in a single write or drop it entirely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

LEVELS = ("beginner", "intermediate", "advanced")
METRICS = ("score", "timeSpent", "accuracy", "completionRate")
ACTIONS = ("increaseDifficulty", "decreaseDifficulty", "suggestResource")
COMPARISONS = ("gte", "lte")
CONTENT_KINDS = ("topic", "quiz", "resource")


@dataclass
class RuleEvaluation:
    previous_level: str
    level: str
    recommended_content: List[Dict[str, Any]]
    fired: List[int] = field(default_factory=list)
    averages: Dict[str, Optional[float]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.level != self.previous_level


def windowed_average(values: Sequence[float], window: int) -> Optional[float]:
    """Mean of the last `window` values, or `None` when there is no data."""
    recent = list(values)[-window:] if window > 0 else list(values)
    if not recent:
        return None
    return sum(float(v) for v in recent) / len(recent)


def trim_window(metrics: Mapping[str, Sequence[float]], window: int) -> Dict[str, List[float]]:
    return {m: [float(v) for v in list(metrics.get(m, []))[-window:]] for m in METRICS}


def rule_fires(rule: Mapping[str, Any], average: Optional[float]) -> bool:
    if average is None:
        return False
    threshold = float(rule["threshold"])
    if rule.get("comparison", "gte") == "lte":
        return average <= threshold
    return average >= threshold


def _check_rule(index: int, rule: Mapping[str, Any]) -> None:
    if rule.get("metric") not in METRICS:
        raise ValueError(f"rule {index}: unknown metric {rule.get('metric')!r}")
    if rule.get("action") not in ACTIONS:
        raise ValueError(f"rule {index}: unknown action {rule.get('action')!r}")
    if rule.get("comparison", "gte") not in COMPARISONS:
        raise ValueError(f"rule {index}: unknown comparison {rule.get('comparison')!r}")
    if rule.get("threshold") is None:
        raise ValueError(f"rule {index}: threshold is required")
    if rule["action"] == "suggestResource" and rule.get("resource_ref") is None:
        raise ValueError(f"rule {index}: suggestResource requires resource_ref")


def merge_recommendations(existing: Sequence[Mapping[str, Any]], additions: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Append `additions` to `existing`, skipping content already present."""
    merged = [dict(c) for c in existing]
    seen = {(c["content_type"], c["content_id"]) for c in merged}
    for item in additions:
        key = (item["content_type"], item["content_id"])
        if key in seen:
            continue
        seen.add(key)
        merged.append(dict(item))
    return merged


def evaluate_rules(
    current_level: str,
    rules: Sequence[Mapping[str, Any]],
    metrics: Mapping[str, Sequence[float]],
    recommended_content: Sequence[Mapping[str, Any]] = (),
    window: int = 5,
) -> RuleEvaluation:
    """Apply `rules` in order and return the resulting level and content.

    Raises `ValueError` for an unknown level or a malformed rule before any
    effect is computed.
    """
    if current_level not in LEVELS:
        raise ValueError(f"unknown level {current_level!r}")
    for i, rule in enumerate(rules):
        _check_rule(i, rule)

    averages = {m: windowed_average(metrics.get(m, []), window) for m in METRICS}
    index = LEVELS.index(current_level)
    suggestions = []
    fired = []
    for i, rule in enumerate(rules):
        if not rule_fires(rule, averages[rule["metric"]]):
            continue
        fired.append(i)
        steps = int(rule.get("value") or 1)
        if rule["action"] == "increaseDifficulty":
            index = min(len(LEVELS) - 1, index + steps)
        elif rule["action"] == "decreaseDifficulty":
            index = max(0, index - steps)
        else:
            suggestions.append({"content_type": "resource", "content_id": int(rule["resource_ref"])})

    return RuleEvaluation(
        previous_level=current_level,
        level=LEVELS[index],
        recommended_content=merge_recommendations(recommended_content, suggestions),
        fired=fired,
        averages=averages,
    )

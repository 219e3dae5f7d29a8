"""Threshold evaluation for metric values."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from windcube.contracts import ThresholdEvaluation, ThresholdRule
from windcube.errors import CalculationError
from windcube.utils import as_float, resolve_parameter

logger = logging.getLogger(__name__)

COMPARISONS: Dict[str, Callable[[float, float, Optional[float]], bool]] = {
    "below": lambda v, lo, hi: v < lo,
    "above": lambda v, lo, hi: v > lo,
    "at_most": lambda v, lo, hi: v <= lo,
    "at_least": lambda v, lo, hi: v >= lo,
    "between": lambda v, lo, hi: lo <= v <= hi,
    "outside": lambda v, lo, hi: v < lo or v > hi,
}


def rule_matches(rule: ThresholdRule, value: float, references: Mapping[str, Any]) -> bool:
    """Whether ``rule`` matches ``value``; unresolvable bounds never match."""
    try:
        bound, _ = resolve_parameter(rule.value, references, "threshold")
        upper = None
        if rule.upper is not None:
            upper, _ = resolve_parameter(rule.upper, references, "threshold upper")
    except CalculationError as exc:
        logger.warning("Threshold '%s' skipped: %s", rule.annotation, exc)
        return False
    return COMPARISONS[rule.comparison](value, bound, upper)


def evaluate_thresholds(
    rules: Sequence[ThresholdRule],
    value: Any,
    references: Mapping[str, Any],
) -> Optional[ThresholdEvaluation]:
    """
    Evaluate every rule and keep the highest-priority match.

    Ties on priority go to the rule declared first. Non-numeric values
    (series, missing results) are not annotated.
    """
    number = as_float(value)
    if number is None or not rules:
        return None

    best: Optional[ThresholdEvaluation] = None
    for index, rule in enumerate(rules):
        if not rule_matches(rule, number, references):
            continue
        if best is None or rule.priority > best.priority:
            best = ThresholdEvaluation(
                annotation=rule.annotation,
                priority=rule.priority,
                rule_index=index,
                severity=rule.severity,
                color=rule.color,
            )
    return best


__all__ = ["COMPARISONS", "rule_matches", "evaluate_thresholds"]

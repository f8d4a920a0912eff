"""
Type-aware comparison operators for rule evaluation.

Dispatch on the coerced operand pair:

    1. text vs text       -- lexicographic ordering, exact equality.
    2. numeric vs numeric -- double ordering, equality within
       ``EQUALITY_EPSILON``.
    3. mixed              -- the text side is parsed as a double and rule 2
       applies; an unparseable text side makes the comparison false.
    4. unsupported (None) on either side -- false.

The metric value is always the left operand and the rule threshold the
right one, so ``compare("gt", m, t)`` reads as ``m > t``.
"""

from __future__ import annotations

import logging

from worker.rules.models import RuleOperator
from worker.rules.values import MetricValue, NumericValue, TextValue, parse_number

logger = logging.getLogger(__name__)


# Absolute tolerance for numeric equality.
EQUALITY_EPSILON: float = 1e-4


def _compare_text(op: RuleOperator, left: str, right: str) -> bool:
    if op is RuleOperator.GT:
        return left > right
    if op is RuleOperator.LT:
        return left < right
    if op is RuleOperator.GTE:
        return left >= right
    if op is RuleOperator.LTE:
        return left <= right
    return left == right


def _compare_numbers(op: RuleOperator, left: float, right: float) -> bool:
    if op is RuleOperator.GT:
        return left > right
    if op is RuleOperator.LT:
        return left < right
    if op is RuleOperator.GTE:
        return left >= right
    if op is RuleOperator.LTE:
        return left <= right
    return abs(left - right) < EQUALITY_EPSILON


def _as_number(operand: MetricValue) -> float | None:
    if isinstance(operand, NumericValue):
        return operand.value
    parsed = parse_number(operand.value)
    if parsed is None:
        logger.debug("Cannot compare text operand %r as a number", operand.value)
    return parsed


def compare(
    operator: RuleOperator | str,
    metric_value: MetricValue | None,
    threshold: MetricValue | None,
) -> bool:
    """Compare a metric value against a threshold.

    Parameters
    ----------
    operator : RuleOperator or str
        One of ``gt``, ``lt``, ``gte``, ``lte``, ``eq``. Anything else
        yields ``False``.
    metric_value : MetricValue or None
        Coerced metric reading. ``None`` (unsupported) yields ``False``.
    threshold : MetricValue or None
        Coerced rule threshold. ``None`` (unsupported) yields ``False``.

    Returns
    -------
    bool
        True if ``metric_value <operator> threshold`` holds.
    """
    try:
        op = RuleOperator(operator)
    except ValueError:
        logger.warning("Unknown comparison operator '%s'", operator)
        return False

    if metric_value is None or threshold is None:
        return False

    if isinstance(metric_value, TextValue) and isinstance(threshold, TextValue):
        return _compare_text(op, metric_value.value, threshold.value)

    left = _as_number(metric_value)
    right = _as_number(threshold)
    if left is None or right is None:
        return False
    return _compare_numbers(op, left, right)

"""
Core evaluation logic for the Rule Worker.

This package contains the comparison operators, the recursive rule
evaluator and the history window used by temporal rules.

Public API:
    - ``RuleEvaluator`` -- Evaluates one rule against one telemetry reading.
    - ``HistoryResolver`` -- Recent-readings window for ``repeat`` rules.
    - ``compare`` -- Type-aware comparison of a metric value and a threshold.
    - ``EQUALITY_EPSILON`` -- Tolerance for numeric ``eq``.
"""

from worker.rules.logic.comparator import EQUALITY_EPSILON, compare
from worker.rules.logic.evaluator import RuleEvaluator
from worker.rules.logic.history import HistoryResolver

__all__ = [
    "RuleEvaluator",
    "HistoryResolver",
    "compare",
    "EQUALITY_EPSILON",
]

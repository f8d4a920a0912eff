"""
Core rule evaluation logic for the Rule Worker.

Implements ``RuleEvaluator.evaluate`` which decides whether a single rule is
satisfied by a telemetry reading. The rule content is parsed into a
``RuleNode`` tree and walked recursively:

    - ``ComparisonNode`` -- compare the coerced metric value against the
      node's threshold.
    - ``RepeatNode`` -- fetch the ``times`` most recent readings of the device
      and require the inner node to hold for every one of them.

Evaluation is side-effect free apart from the history read and always ends
in a boolean. Malformed rule content, unknown operators and unsupported
value types are logged and evaluate to ``False``.
"""

from __future__ import annotations

import logging

from worker.rules.logic.comparator import compare
from worker.rules.logic.history import HistoryResolver
from worker.rules.models import (
    ComparisonNode,
    RepeatNode,
    Rule,
    RuleNode,
    TelemetryReading,
    parse_rule_content,
)
from worker.rules.values import MetricValue, coerce

logger = logging.getLogger(__name__)


class RuleEvaluator:
    """Evaluates rules against telemetry readings.

    Parameters
    ----------
    history : HistoryResolver
        Source of the recent-readings window used by ``repeat`` nodes.
    """

    def __init__(self, history: HistoryResolver) -> None:
        self._history = history

    def evaluate(self, rule: Rule, reading: TelemetryReading) -> bool:
        """Return True if ``rule`` is satisfied by ``reading``.

        Steps:
        1. A rule without content never matches.
        2. The rule's metric must be present in the reading.
        3. The metric value must coerce to numeric or text.
        4. The parsed rule tree is evaluated against the coerced value.
        """
        if rule.rule_content is None:
            logger.warning("Rule %s has null rule content", rule.id)
            return False

        raw_value = reading.metrics.get(rule.metric_name)
        if raw_value is None:
            logger.debug(
                "Metric %s not found in reading %s for device %s",
                rule.metric_name,
                reading.id,
                reading.device_id,
            )
            return False

        value = coerce(raw_value)
        if value is None:
            logger.debug(
                "Metric %s has unsupported type %s for device %s",
                rule.metric_name,
                type(raw_value).__name__,
                reading.device_id,
            )
            return False

        node = parse_rule_content(rule.rule_content, rule_id=rule.id)
        if node is None:
            return False

        return self._evaluate_node(node, value, reading, rule.metric_name)

    def _evaluate_node(
        self,
        node: RuleNode,
        value: MetricValue,
        reading: TelemetryReading,
        metric_name: str,
    ) -> bool:
        if isinstance(node, ComparisonNode):
            return compare(node.operator, value, node.threshold)
        if isinstance(node, RepeatNode):
            return self._evaluate_repeat(node, reading, metric_name)

        logger.warning("Unknown rule node %r", node)
        return False

    def _evaluate_repeat(
        self,
        node: RepeatNode,
        reading: TelemetryReading,
        metric_name: str,
    ) -> bool:
        """Require ``node.inner`` to hold for the ``node.times`` latest readings.

        The window is whatever the history resolver returns for the device;
        the reading being processed is not treated specially. Any reading in
        the window lacking a usable metric value breaks the chain.
        """
        window = self._history.recent_readings(reading.device_id, node.times)
        if len(window) < node.times:
            logger.debug(
                "Not enough readings for repeat rule on device %s. "
                "Required: %d, available: %d",
                reading.device_id,
                node.times,
                len(window),
            )
            return False

        for past in window:
            raw_value = past.metrics.get(metric_name)
            if raw_value is None:
                logger.debug(
                    "Reading %s (seq=%d) has no value for %s",
                    past.id,
                    past.seq,
                    metric_name,
                )
                return False

            past_value = coerce(raw_value)
            if past_value is None:
                logger.debug(
                    "Reading %s (seq=%d) has unsupported type for %s",
                    past.id,
                    past.seq,
                    metric_name,
                )
                return False

            if not self._evaluate_node(node.inner, past_value, past, metric_name):
                logger.debug(
                    "Reading %s (seq=%d) does not satisfy inner rule",
                    past.id,
                    past.seq,
                )
                return False

        return True

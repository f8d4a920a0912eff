"""
Telemetry processing for the Rule Worker.

``TelemetryProcessor.process_telemetry`` is the single entry point used by
the queue handler. For one telemetry id it:

1. Loads the reading (``TelemetryNotFoundError`` if absent).
2. Walks every metric present in the reading, in sorted name order.
3. Loads the rules bound to ``(device_id, metric_name)``.
4. Evaluates each rule and creates one alert per satisfied rule.

There is no transaction spanning rules or metrics. Alerts created before a
later failure stay in place, and reprocessing the same id re-creates alerts
for every rule that is still satisfied.
"""

from __future__ import annotations

import logging

from worker.rules.logic.evaluator import RuleEvaluator
from worker.rules.models import Alert, ProcessingResult
from worker.rules.repo import AlertSink, RuleStore, TelemetryStore

logger = logging.getLogger(__name__)


class TelemetryNotFoundError(Exception):
    """Raised when a notified telemetry id has no stored reading."""

    def __init__(self, telemetry_id: str) -> None:
        super().__init__(f"Telemetry reading not found: {telemetry_id}")
        self.telemetry_id = telemetry_id


class TelemetryProcessor:
    """Maps a telemetry id to the alerts raised by its satisfied rules.

    Parameters
    ----------
    telemetry_store : TelemetryStore
        Source of the reading being processed.
    rule_store : RuleStore
        Lookup of rules per device and metric.
    alert_sink : AlertSink
        Destination for created alerts.
    evaluator : RuleEvaluator
        Rule evaluation logic.
    """

    def __init__(
        self,
        telemetry_store: TelemetryStore,
        rule_store: RuleStore,
        alert_sink: AlertSink,
        evaluator: RuleEvaluator,
    ) -> None:
        self._telemetry_store = telemetry_store
        self._rule_store = rule_store
        self._alert_sink = alert_sink
        self._evaluator = evaluator

    def process_telemetry(self, telemetry_id: str) -> ProcessingResult:
        """Evaluate every rule applicable to a reading and raise alerts.

        Raises
        ------
        TelemetryNotFoundError
            If no reading is stored under ``telemetry_id``. No alerts are
            created in that case.
        """
        logger.debug("Processing telemetry id=%s", telemetry_id)

        reading = self._telemetry_store.get_telemetry(telemetry_id)
        if reading is None:
            logger.warning("Telemetry reading not found with id=%s", telemetry_id)
            raise TelemetryNotFoundError(telemetry_id)

        result = ProcessingResult(
            telemetry_id=reading.id,
            device_id=reading.device_id,
            reading_timestamp=reading.timestamp,
        )

        if not reading.metrics:
            logger.debug(
                "Telemetry %s has no metrics, skipping rule evaluation",
                telemetry_id,
            )
            return result

        alerts: list[Alert] = []
        for metric_name in sorted(reading.metrics):
            rules = self._rule_store.find_rules(reading.device_id, metric_name)
            if not rules:
                logger.debug(
                    "No rules found for device %s and metric %s",
                    reading.device_id,
                    metric_name,
                )
                continue

            for rule in rules:
                result.rules_evaluated += 1
                if not self._evaluator.evaluate(rule, reading):
                    continue

                logger.info(
                    "Rule %s satisfied for device %s and metric %s",
                    rule.id,
                    reading.device_id,
                    metric_name,
                )
                alerts.append(self._alert_sink.create_alert(rule, reading))

        result.alerts = alerts
        logger.debug(
            "Finished telemetry id=%s: %d rules evaluated, %d alerts",
            telemetry_id,
            result.rules_evaluated,
            len(alerts),
        )
        return result

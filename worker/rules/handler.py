"""
Lambda handler for the Rule Worker.

Implements the ``handler(event, context)`` entrypoint for the SQS-triggered
Lambda function. Each SQS record carries one telemetry notification; every
notification is processed independently and the handler returns a partial
batch failure response so only failed messages are retried.

Key Design Decisions:
    - **Partial Batch Failure**: Uses the ``batchItemFailures`` response format
      so that only failed messages are retried, not the entire batch.
    - **Missing Telemetry ACK**: ``TelemetryNotFoundError`` is ACKed (not
      retried). The reading is gone or was never stored; a retry cannot
      recover it.
    - **Store Failures NACK**: Any other exception (database, SQS publish)
      marks the message as failed. Alerts created before the failure remain,
      and the retry creates them again.
    - **TimeBudgetExceeded**: When the Lambda timeout is imminent, the current
      and all remaining messages are marked as failed for retry.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from worker.rules.config import load_settings
from worker.rules.models import ProcessingResult, TelemetryNotification
from worker.rules.processor import TelemetryNotFoundError, TelemetryProcessor

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Constants
# ---------------------------------------------------------------------------

METRIC_ALERTS_CREATED = "AlertsCreated"
METRIC_PROCESSING_LAG = "ProcessingLag"


# ---------------------------------------------------------------------------
# SQS Batch Response Models
# ---------------------------------------------------------------------------


class SQSBatchItemFailure:
    """A single failed item in the SQS partial batch response."""

    __slots__ = ("item_identifier",)

    def __init__(self, item_identifier: str) -> None:
        self.item_identifier = item_identifier

    def to_dict(self) -> dict[str, str]:
        return {"itemIdentifier": self.item_identifier}


class SQSBatchResponse:
    """Partial batch failure response for SQS Lambda integration."""

    __slots__ = ("batch_item_failures",)

    def __init__(self) -> None:
        self.batch_item_failures: list[SQSBatchItemFailure] = []

    def add_failure(self, message_id: str) -> None:
        self.batch_item_failures.append(SQSBatchItemFailure(message_id))

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        return {
            "batchItemFailures": [
                f.to_dict() for f in self.batch_item_failures
            ]
        }


# ---------------------------------------------------------------------------
# Timeout Guard
# ---------------------------------------------------------------------------

# Threshold in milliseconds below which we consider timeout imminent.
_TIMEOUT_THRESHOLD_MS = 5000


class TimeBudgetExceededError(Exception):
    """Raised when Lambda timeout is imminent."""

    pass


class TimeoutGuard:
    """Stops the batch before AWS Lambda hard-kills the invocation.

    Parameters
    ----------
    context : Any
        AWS Lambda context object. Must expose ``get_remaining_time_in_millis()``.
    """

    def __init__(self, context: Any) -> None:
        self._context = context

    def check_remaining(self) -> None:
        """Raise TimeBudgetExceededError if < 5 seconds remain."""
        remaining = self._context.get_remaining_time_in_millis()
        if remaining < _TIMEOUT_THRESHOLD_MS:
            raise TimeBudgetExceededError(
                f"Lambda timeout imminent: {remaining}ms remaining "
                f"(threshold: {_TIMEOUT_THRESHOLD_MS}ms)"
            )


# ---------------------------------------------------------------------------
# Metric Emitter
# ---------------------------------------------------------------------------


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Default metric emitter that logs metrics when no CloudWatch emitter is configured."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


# ---------------------------------------------------------------------------
# Message Parsing
# ---------------------------------------------------------------------------


def _parse_sqs_records(
    event: dict[str, Any],
) -> list[tuple[str, TelemetryNotification]]:
    """Parse SQS event records into (message_id, TelemetryNotification) pairs.

    Records whose body cannot be parsed are logged and dropped; they are
    ACKed by omission so a poison message cannot block the queue.
    """
    records = event.get("Records", [])
    if not records:
        logger.warning("SQS event contains no Records")
        return []

    parsed: list[tuple[str, TelemetryNotification]] = []
    for record in records:
        message_id = record["messageId"]
        body_str = record["body"]
        try:
            body = json.loads(body_str)
            notification = TelemetryNotification.model_validate(body)
        except Exception:
            logger.exception(
                "Failed to parse SQS record messageId=%s body=%s",
                message_id,
                body_str[:500],
            )
            continue
        parsed.append((message_id, notification))

    return parsed


# ---------------------------------------------------------------------------
# RuleWorker
# ---------------------------------------------------------------------------


class RuleWorker:
    """Lambda handler for the Rule Worker.

    Parameters
    ----------
    processor : TelemetryProcessor
        Orchestrates rule evaluation for one telemetry id.
    metric_emitter : callable or None
        Callback for emitting CloudWatch metrics. If None, metrics are
        logged but not sent to CloudWatch.
    """

    def __init__(
        self,
        processor: TelemetryProcessor,
        metric_emitter: Any | None = None,
    ) -> None:
        self._processor = processor
        self._metric_emitter = metric_emitter or _default_metric_emitter

    def handler(self, event: dict[str, Any], context: Any) -> dict[str, Any]:
        """Lambda handler entrypoint.

        Processing flow:
        1. Parse the SQS batch into notifications.
        2. For each notification, in delivery order:
           a. check the time budget; on timeout mark this and all remaining
              messages as failed.
           b. run ``process_telemetry``.
           c. catch TelemetryNotFoundError: ACK (log error, no retry).
           d. catch Exception: mark the message as failed (NACK for retry).
        3. Return ``SQSBatchResponse`` with partial failures.
        """
        response = SQSBatchResponse()
        timeout_guard = TimeoutGuard(context)

        parsed_messages = _parse_sqs_records(event)
        timeout_hit = False

        for message_id, notification in parsed_messages:
            if timeout_hit:
                response.add_failure(message_id)
                continue

            try:
                timeout_guard.check_remaining()
                result = self._processor.process_telemetry(notification.telemetry_id)

            except TimeBudgetExceededError:
                logger.warning(
                    "Timeout imminent before telemetry=%s messageId=%s. "
                    "Marking remaining messages as failed.",
                    notification.telemetry_id,
                    message_id,
                )
                timeout_hit = True
                response.add_failure(message_id)
                continue

            except TelemetryNotFoundError as exc:
                logger.error(
                    "Telemetry not found for messageId=%s: %s. "
                    "ACKing message, retry cannot recover it.",
                    message_id,
                    str(exc),
                )
                continue

            except Exception as exc:
                logger.exception(
                    "Error processing telemetry=%s messageId=%s: %s. "
                    "Message will be retried.",
                    notification.telemetry_id,
                    message_id,
                    str(exc),
                )
                response.add_failure(message_id)
                continue

            self._emit_metrics(result)

        return response.to_dict()

    def _emit_metrics(self, result: ProcessingResult) -> None:
        """Emit AlertsCreated and, when the reading has a timestamp, ProcessingLag."""
        dimensions = {"DeviceId": result.device_id}
        metrics: list[tuple[str, float, str]] = [
            (METRIC_ALERTS_CREATED, float(len(result.alerts)), "Count"),
        ]

        if result.reading_timestamp is not None:
            reading_ts = result.reading_timestamp
            if reading_ts.tzinfo is None:
                reading_ts = reading_ts.replace(tzinfo=timezone.utc)
            lag_seconds = (datetime.now(timezone.utc) - reading_ts).total_seconds()
            metrics.append((METRIC_PROCESSING_LAG, lag_seconds, "Seconds"))

        for name, value, unit in metrics:
            try:
                self._metric_emitter(name, value, unit, dimensions)
            except Exception:
                logger.warning(
                    "Failed to emit %s metric for telemetry=%s",
                    name,
                    result.telemetry_id,
                    exc_info=True,
                )


# ---------------------------------------------------------------------------
# Module-level handler (Lambda entrypoint)
# ---------------------------------------------------------------------------

# Singleton worker instance, initialized on first cold start so clients
# persist across warm invocations.
_worker: RuleWorker | None = None


def _create_worker() -> RuleWorker:
    """Create and configure the RuleWorker singleton from Settings."""
    import boto3

    from worker.rules.logic.evaluator import RuleEvaluator
    from worker.rules.logic.history import HistoryResolver
    from worker.rules.repo import PostgresRepository

    settings = load_settings()

    sqs_client = None
    if settings.alert_queue_url:
        sqs_client = boto3.client("sqs", region_name=settings.aws_region)

    repo = PostgresRepository(
        conninfo=settings.database_url.get_secret_value(),
        sqs_client=sqs_client,
        queue_url=settings.alert_queue_url,
        connect_timeout=settings.db_connect_timeout_seconds,
    )
    evaluator = RuleEvaluator(HistoryResolver(repo))
    processor = TelemetryProcessor(
        telemetry_store=repo,
        rule_store=repo,
        alert_sink=repo,
        evaluator=evaluator,
    )

    return RuleWorker(processor=processor)


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda handler entrypoint.

    Delegates to the ``RuleWorker`` singleton.
    """
    global _worker
    if _worker is None:
        _worker = _create_worker()

    return _worker.handler(event, context)

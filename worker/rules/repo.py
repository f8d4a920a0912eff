"""
Repository: Persistence layer for the Rule Worker.

Defines the three collaborators the rule engine consumes -- ``TelemetryStore``,
``RuleStore`` and ``AlertSink`` -- and a single PostgreSQL-backed
implementation of all three. Uses ``psycopg`` (v3) for database access and
``boto3`` for publishing alert events to SQS.

Key Design Decisions:
    - **Read-only telemetry**: ``device_data`` rows are written by the
      ingestion service; this worker only reads them.
    - **Append-only alerts**: ``create_alert`` always inserts a new row. There
      is no uniqueness constraint on ``(rule_id, device_data_id)``, so
      reprocessing a reading raises its alerts again.
    - **Publish after commit**: The ``AlertEvent`` is sent to SQS only after
      the alert row is committed, so no event ever refers to a rolled-back
      alert.
    - **Strict authoring**: ``create_rule`` rejects malformed rule content up
      front; evaluation still tolerates malformed rows already stored.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import psycopg
from psycopg.rows import dict_row

from worker.rules.models import (
    Alert,
    AlertEvent,
    Rule,
    TelemetryReading,
    validate_rule_content,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


class RuleNotFoundError(Exception):
    """Raised when a rule id does not exist in the rule store."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id


# ---------------------------------------------------------------------------
# Collaborator Interfaces
# ---------------------------------------------------------------------------


class TelemetryStore(ABC):
    """Read access to stored telemetry readings."""

    @abstractmethod
    def get_telemetry(self, telemetry_id: str) -> TelemetryReading | None:
        """Fetch one reading by id, or ``None`` if it does not exist."""
        ...

    @abstractmethod
    def recent_by_device(self, device_id: str, limit: int) -> list[TelemetryReading]:
        """Fetch the ``limit`` most recent readings for a device.

        Parameters
        ----------
        device_id : str
            Device identifier.
        limit : int
            Maximum number of readings to return.

        Returns
        -------
        list[TelemetryReading]
            Readings ordered by ``seq`` descending (newest first).
        """
        ...


class RuleStore(ABC):
    """Access to alerting rules."""

    @abstractmethod
    def find_rules(self, device_id: str, metric_name: str) -> list[Rule]:
        """Fetch all rules bound to ``(device_id, metric_name)``."""
        ...


class AlertSink(ABC):
    """Append-only destination for alerts."""

    @abstractmethod
    def create_alert(self, rule: Rule, reading: TelemetryReading) -> Alert:
        """Record an alert for a satisfied rule.

        No deduplication is performed: every call creates a new alert.
        """
        ...


# ---------------------------------------------------------------------------
# SQL Constants
# ---------------------------------------------------------------------------

_DEVICE_DATA_COLUMNS = """\
    id,
    device_id,
    seq,
    timestamp,
    metrics,
    meta
"""

_GET_TELEMETRY_SQL = f"""\
SELECT
{_DEVICE_DATA_COLUMNS}FROM device_data
WHERE id = %s
"""

_RECENT_BY_DEVICE_SQL = f"""\
SELECT
{_DEVICE_DATA_COLUMNS}FROM device_data
WHERE device_id = %s
ORDER BY seq DESC
LIMIT %s
"""

_RULE_COLUMNS = """\
    id,
    device_id,
    metric_name,
    rule_content
"""

_FIND_RULES_SQL = f"""\
SELECT
{_RULE_COLUMNS}FROM rules
WHERE device_id = %s
  AND metric_name = %s
ORDER BY id
"""

_GET_RULE_SQL = f"""\
SELECT
{_RULE_COLUMNS}FROM rules
WHERE id = %s
"""

_LIST_RULES_SQL = f"""\
SELECT
{_RULE_COLUMNS}FROM rules
"""

_INSERT_RULE_SQL = """\
INSERT INTO rules (
    id,
    device_id,
    metric_name,
    rule_content
) VALUES (%s, %s, %s, %s)
"""

_UPDATE_RULE_SQL = f"""\
UPDATE rules
SET device_id = %s,
    metric_name = %s,
    rule_content = %s
WHERE id = %s
RETURNING
{_RULE_COLUMNS}"""

_DELETE_RULE_SQL = """\
DELETE FROM rules
WHERE id = %s
RETURNING id
"""

_INSERT_ALERT_SQL = """\
INSERT INTO alerts (
    id,
    rule_id,
    device_data_id,
    timestamp
) VALUES (%s, %s, %s, %s)
"""


# ---------------------------------------------------------------------------
# Row -> Model Mapping Helpers
# ---------------------------------------------------------------------------


def _decode_json(raw: Any) -> Any:
    """JSONB columns may come back as text depending on the adapter setup."""
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def _row_to_reading(row: dict) -> TelemetryReading:
    """Convert a ``device_data`` row (dict) to a TelemetryReading model."""
    return TelemetryReading(
        id=row["id"],
        device_id=row["device_id"],
        seq=row["seq"],
        timestamp=row.get("timestamp"),
        metrics=_decode_json(row.get("metrics")) or {},
        meta=_decode_json(row.get("meta")) or {},
    )


def _row_to_rule(row: dict) -> Rule:
    """Convert a ``rules`` row (dict) to a Rule model.

    ``rule_content`` is decoded but not validated; malformed content is
    handled at evaluation time.
    """
    return Rule(
        id=row["id"],
        device_id=row["device_id"],
        metric_name=row["metric_name"],
        rule_content=_decode_json(row.get("rule_content")),
    )


# ---------------------------------------------------------------------------
# Concrete Implementation: PostgresRepository
# ---------------------------------------------------------------------------


class PostgresRepository(TelemetryStore, RuleStore, AlertSink):
    """PostgreSQL-backed stores using psycopg v3.

    Parameters
    ----------
    conninfo : str
        PostgreSQL connection string (DSN).
    sqs_client : boto3 SQS client or None
        Pre-configured boto3 SQS client for publishing alert events.
    queue_url : str
        SQS queue URL for alert events. Empty disables publishing.
    connect_timeout : int
        Seconds to wait when opening a database connection.
    """

    def __init__(
        self,
        conninfo: str,
        sqs_client: object | None = None,
        queue_url: str = "",
        connect_timeout: int = 5,
    ) -> None:
        self._conninfo = conninfo
        self._connect_timeout = connect_timeout
        self._sqs_client = sqs_client
        self._queue_url = queue_url

    def _connect(self) -> psycopg.Connection:
        """Create a new database connection with dict rows.

        ``autocommit=False`` is the default; the connection context manager
        commits on clean exit.
        """
        return psycopg.connect(
            self._conninfo,
            row_factory=dict_row,
            autocommit=False,
            connect_timeout=self._connect_timeout,
        )

    # -- TelemetryStore ----------------------------------------------------

    def get_telemetry(self, telemetry_id: str) -> TelemetryReading | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_GET_TELEMETRY_SQL, (telemetry_id,))
                row = cur.fetchone()

        if row is None:
            return None
        return _row_to_reading(row)

    def recent_by_device(self, device_id: str, limit: int) -> list[TelemetryReading]:
        """Uses the ``(device_id, seq DESC)`` index; no contiguity check."""
        if limit <= 0:
            return []

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_RECENT_BY_DEVICE_SQL, (device_id, limit))
                rows = cur.fetchall()

        return [_row_to_reading(row) for row in rows]

    # -- RuleStore ---------------------------------------------------------

    def find_rules(self, device_id: str, metric_name: str) -> list[Rule]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_FIND_RULES_SQL, (device_id, metric_name))
                rows = cur.fetchall()

        return [_row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: str) -> Rule:
        """Fetch a rule by id.

        Raises
        ------
        RuleNotFoundError
            If no rule has this id.
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_GET_RULE_SQL, (rule_id,))
                row = cur.fetchone()

        if row is None:
            raise RuleNotFoundError(rule_id)
        return _row_to_rule(row)

    def list_rules(
        self,
        device_id: str | None = None,
        metric_name: str | None = None,
    ) -> list[Rule]:
        """List rules, optionally filtered by device and/or metric."""
        clauses: list[str] = []
        params: list[str] = []
        if device_id is not None:
            clauses.append("device_id = %s")
            params.append(device_id)
        if metric_name is not None:
            clauses.append("metric_name = %s")
            params.append(metric_name)

        sql = _LIST_RULES_SQL
        if clauses:
            sql += "WHERE " + "\n  AND ".join(clauses) + "\n"
        sql += "ORDER BY id\n"

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()

        return [_row_to_rule(row) for row in rows]

    def create_rule(
        self,
        device_id: str,
        metric_name: str,
        rule_content: dict[str, Any],
    ) -> Rule:
        """Validate and store a new rule.

        Raises
        ------
        InvalidRuleContentError
            If ``rule_content`` is malformed. Nothing is written.
        """
        validate_rule_content(rule_content)

        rule = Rule(
            id=f"rule_{uuid.uuid4()}",
            device_id=device_id,
            metric_name=metric_name,
            rule_content=rule_content,
        )
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _INSERT_RULE_SQL,
                    (
                        rule.id,
                        rule.device_id,
                        rule.metric_name,
                        json.dumps(rule.rule_content),
                    ),
                )

        logger.info(
            "Created rule %s for device=%s metric=%s",
            rule.id,
            device_id,
            metric_name,
        )
        return rule

    def update_rule(
        self,
        rule_id: str,
        device_id: str,
        metric_name: str,
        rule_content: dict[str, Any],
    ) -> Rule:
        """Replace the binding and content of an existing rule.

        Raises
        ------
        InvalidRuleContentError
            If ``rule_content`` is malformed. Nothing is written.
        RuleNotFoundError
            If no rule has this id.
        """
        validate_rule_content(rule_content)

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _UPDATE_RULE_SQL,
                    (device_id, metric_name, json.dumps(rule_content), rule_id),
                )
                row = cur.fetchone()

        if row is None:
            raise RuleNotFoundError(rule_id)

        logger.info(
            "Updated rule %s for device=%s metric=%s",
            rule_id,
            device_id,
            metric_name,
        )
        return _row_to_rule(row)

    def delete_rule(self, rule_id: str) -> None:
        """Delete a rule by id.

        Raises
        ------
        RuleNotFoundError
            If no rule has this id.
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_DELETE_RULE_SQL, (rule_id,))
                deleted = cur.fetchone()

        if deleted is None:
            raise RuleNotFoundError(rule_id)
        logger.info("Deleted rule %s", rule_id)

    # -- AlertSink ---------------------------------------------------------

    def create_alert(self, rule: Rule, reading: TelemetryReading) -> Alert:
        """Insert an alert row, then publish an ``AlertEvent`` to SQS.

        If the SQS publish fails after the DB commit, the alert row exists
        and the error is re-raised so the caller can retry. A retry creates
        a second alert.
        """
        alert = Alert(
            id=f"alert_{uuid.uuid4()}",
            rule_id=rule.id,
            telemetry_id=reading.id,
            timestamp=datetime.now(timezone.utc),
        )

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _INSERT_ALERT_SQL,
                    (alert.id, alert.rule_id, alert.telemetry_id, alert.timestamp),
                )

        if self._sqs_client is not None and self._queue_url:
            event = AlertEvent(
                alert_id=alert.id,
                rule_id=rule.id,
                telemetry_id=reading.id,
                device_id=reading.device_id,
                metric_name=rule.metric_name,
                timestamp=alert.timestamp,
            )
            send_kwargs: dict = {
                "QueueUrl": self._queue_url,
                "MessageBody": event.model_dump_json(),
            }
            if _is_fifo_queue(self._queue_url):
                send_kwargs["MessageGroupId"] = reading.device_id
            try:
                self._sqs_client.send_message(**send_kwargs)
            except Exception:
                logger.exception(
                    "Failed to publish alert %s to SQS for rule=%s. "
                    "Alert row already committed.",
                    alert.id,
                    rule.id,
                )
                raise
            logger.info(
                "Published alert %s to SQS for rule=%s device=%s",
                alert.id,
                rule.id,
                reading.device_id,
            )

        return alert


def _is_fifo_queue(queue_url: str) -> bool:
    """Check if a queue URL indicates a FIFO queue."""
    return queue_url.endswith(".fifo")

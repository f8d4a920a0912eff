"""
Domain models for the Rule Worker.

Pydantic v2 models for the documents shared with the ingestion service
(``device_data``), the rule store (``rules``) and the alert store
(``alerts``), plus the SQS message schemas consumed and produced by the
worker.

Rule content is stored as an open-ended JSON document. This module also
defines the closed ``RuleNode`` variant derived from it and the parser that
performs the derivation::

    {"type": "gt", "value": 25.0}
    {"type": "repeat", "times": 3, "value": {"type": "gt", "value": 25.0}}
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field

from worker.rules.values import MetricValue, coerce

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RuleOperator(str, Enum):
    """Comparison operators usable in a rule leaf."""

    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    EQ = "eq"


REPEAT_TYPE = "repeat"

# Largest window a repeat rule may request; numeric values saturate here.
MAX_REPEAT_TIMES = 2**31 - 1


# ---------------------------------------------------------------------------
# Rule Tree
# ---------------------------------------------------------------------------


class InvalidRuleContentError(Exception):
    """Raised by ``validate_rule_content`` for structurally invalid rules.

    ``path`` is the dotted location of the offending field within the rule
    content, e.g. ``value.times``.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ComparisonNode(BaseModel):
    """Leaf node: compare the metric value against a literal threshold."""

    model_config = {"frozen": True}

    operator: RuleOperator
    threshold: MetricValue


class RepeatNode(BaseModel):
    """Temporal node: ``inner`` must hold for the ``times`` most recent readings."""

    model_config = {"frozen": True}

    times: int = Field(gt=0, le=MAX_REPEAT_TIMES)
    inner: RuleNode


RuleNode = Union[ComparisonNode, RepeatNode]

RepeatNode.model_rebuild()


def _parse_times(raw: Any, path: str) -> int:
    if raw is None:
        raise InvalidRuleContentError(path, "missing 'times'")
    if isinstance(raw, bool):
        raise InvalidRuleContentError(path, f"invalid 'times' type {type(raw).__name__}")
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and math.isnan(raw):
            raise InvalidRuleContentError(path, "invalid 'times' value nan")
        times = int(max(min(raw, MAX_REPEAT_TIMES), -MAX_REPEAT_TIMES - 1))
    elif isinstance(raw, str):
        if raw != raw.strip() or "_" in raw:
            raise InvalidRuleContentError(path, f"'times' is not an integer: {raw!r}")
        try:
            times = int(raw)
        except ValueError:
            raise InvalidRuleContentError(path, f"'times' is not an integer: {raw!r}")
        if times > MAX_REPEAT_TIMES:
            raise InvalidRuleContentError(path, f"'times' is out of range: {raw!r}")
    else:
        raise InvalidRuleContentError(path, f"invalid 'times' type {type(raw).__name__}")

    if times <= 0:
        raise InvalidRuleContentError(path, f"'times' must be positive, got {times}")
    return times


def _parse_node(content: Any, path: str) -> RuleNode:
    if not isinstance(content, dict):
        raise InvalidRuleContentError(path or "<root>", "rule content must be an object")

    prefix = f"{path}." if path else ""
    node_type = content.get("type")
    if not isinstance(node_type, str):
        raise InvalidRuleContentError(f"{prefix}type", "missing or invalid 'type'")

    if node_type == REPEAT_TYPE:
        times = _parse_times(content.get("times"), f"{prefix}times")
        inner = content.get("value")
        if not isinstance(inner, dict):
            raise InvalidRuleContentError(
                f"{prefix}value", "repeat rule needs an inner rule object"
            )
        return RepeatNode(times=times, inner=_parse_node(inner, f"{prefix}value"))

    try:
        operator = RuleOperator(node_type)
    except ValueError:
        raise InvalidRuleContentError(f"{prefix}type", f"unknown rule type '{node_type}'")

    raw_threshold = content.get("value")
    if raw_threshold is None:
        raise InvalidRuleContentError(f"{prefix}value", "missing threshold 'value'")
    threshold = coerce(raw_threshold)
    if threshold is None:
        raise InvalidRuleContentError(
            f"{prefix}value",
            f"unsupported threshold type {type(raw_threshold).__name__}",
        )
    return ComparisonNode(operator=operator, threshold=threshold)


def validate_rule_content(content: Any) -> RuleNode:
    """Strictly parse rule content into a ``RuleNode``.

    Intended for rule authoring paths, where an invalid rule should be
    rejected before it is stored.

    Raises
    ------
    InvalidRuleContentError
        If the content, or any nested rule, is malformed.
    """
    return _parse_node(content, "")


def parse_rule_content(content: Any, rule_id: str = "") -> RuleNode | None:
    """Leniently parse rule content for evaluation.

    Malformed content is logged and mapped to ``None`` so the rule is
    treated as not satisfied.
    """
    if content is None:
        return None
    try:
        return _parse_node(content, "")
    except InvalidRuleContentError as exc:
        logger.warning("Rule %s has invalid content (%s): %s", rule_id, exc, content)
        return None


# ---------------------------------------------------------------------------
# Domain Entities
# ---------------------------------------------------------------------------


class Rule(BaseModel):
    """A rule bound to one metric of one device.

    ``rule_content`` is kept in its stored JSON form. A ``None`` content
    never matches.
    """

    model_config = {"populate_by_name": True}

    id: str
    device_id: str
    metric_name: str
    rule_content: Any = None


class TelemetryReading(BaseModel):
    """A single stored telemetry package (``device_data`` document).

    ``seq`` increases monotonically per device. Readings are immutable once
    stored.
    """

    model_config = {"populate_by_name": True}

    id: str
    device_id: str
    seq: int
    timestamp: datetime | None = None
    metrics: dict[str, Any] = {}
    meta: dict[str, Any] = {}


class Alert(BaseModel):
    """An alert raised for one (rule, reading) pair."""

    model_config = {"populate_by_name": True}

    id: str
    rule_id: str
    telemetry_id: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Input: TelemetryNotification (ingestion service -> Rule Worker)
# ---------------------------------------------------------------------------


class TelemetryNotification(BaseModel):
    """Queue payload announcing a newly stored telemetry reading.

    The ingestion service serializes the identifier as ``deviceDataId``.
    """

    model_config = {"populate_by_name": True}

    telemetry_id: str = Field(alias="deviceDataId", min_length=1)


# ---------------------------------------------------------------------------
# Output: AlertEvent (Rule Worker -> Alert SQS Queue)
# ---------------------------------------------------------------------------


class AlertEvent(BaseModel):
    """Message published to the alert queue for every created alert."""

    model_config = {"populate_by_name": True}

    alert_id: str
    rule_id: str
    telemetry_id: str
    device_id: str
    metric_name: str
    timestamp: datetime


# ---------------------------------------------------------------------------
# Processing Output
# ---------------------------------------------------------------------------


class ProcessingResult(BaseModel):
    """Summary of one ``process_telemetry`` call."""

    model_config = {"populate_by_name": True}

    telemetry_id: str
    device_id: str
    reading_timestamp: datetime | None = None
    rules_evaluated: int = 0
    alerts: list[Alert] = []

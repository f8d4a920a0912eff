"""
Unit tests for the rule evaluator and history window.

Covers:
    - Null rule content and missing metrics
    - Unsupported metric value types
    - Comparison rules against numeric and text metrics
    - Malformed rule content (unknown operator, missing fields) -> False
    - Repeat rules: all satisfied, one failing, insufficient history
    - Repeat rules: missing/unsupported metric in a historical reading
    - Repeat rules: window includes the current reading, no special-casing
    - Repeat rules: sequence gaps are not detected (known gap)
    - Nested repeat rules
    - HistoryResolver ordering and truncation
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest

from worker.rules.logic.evaluator import RuleEvaluator
from worker.rules.logic.history import HistoryResolver
from worker.rules.models import MAX_REPEAT_TIMES, Rule, TelemetryReading
from worker.rules.repo import TelemetryStore


# ---------------------------------------------------------------------------
# Fixtures & Helpers
# ---------------------------------------------------------------------------

NOW = datetime(2026, 2, 6, 12, 0, 0, tzinfo=timezone.utc)
DEVICE_ID = "d1"
METRIC = "temperature"


class InMemoryTelemetryStore(TelemetryStore):
    """Telemetry store over a plain list, honouring the newest-first contract."""

    def __init__(self, readings: list[TelemetryReading] | None = None) -> None:
        self.readings = list(readings or [])
        self.recent_calls: list[tuple[str, int]] = []

    def get_telemetry(self, telemetry_id: str) -> TelemetryReading | None:
        return next((r for r in self.readings if r.id == telemetry_id), None)

    def recent_by_device(self, device_id: str, limit: int) -> list[TelemetryReading]:
        self.recent_calls.append((device_id, limit))
        own = [r for r in self.readings if r.device_id == device_id]
        return sorted(own, key=lambda r: r.seq, reverse=True)[:limit]


def _make_reading(
    seq: int,
    value: Any = 30.0,
    device_id: str = DEVICE_ID,
    metric: str = METRIC,
    metrics: dict[str, Any] | None = None,
) -> TelemetryReading:
    """Create a reading with a single metric unless ``metrics`` is given."""
    return TelemetryReading(
        id=f"{device_id}_t{seq}",
        device_id=device_id,
        seq=seq,
        timestamp=NOW + timedelta(seconds=seq),
        metrics=metrics if metrics is not None else {metric: value},
    )


def _make_rule(
    rule_content: Any,
    rule_id: str = "rule_001",
    metric: str = METRIC,
) -> Rule:
    return Rule(
        id=rule_id,
        device_id=DEVICE_ID,
        metric_name=metric,
        rule_content=rule_content,
    )


def _gt(value: Any) -> dict[str, Any]:
    return {"type": "gt", "value": value}


def _repeat(times: Any, inner: Any) -> dict[str, Any]:
    return {"type": "repeat", "times": times, "value": inner}


def _make_evaluator(
    readings: list[TelemetryReading] | None = None,
) -> tuple[RuleEvaluator, InMemoryTelemetryStore]:
    store = InMemoryTelemetryStore(readings)
    return RuleEvaluator(HistoryResolver(store)), store


# ---------------------------------------------------------------------------
# Rule-level Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:
    """Rule content and metric presence checks."""

    def test_null_rule_content(self) -> None:
        evaluator, _ = _make_evaluator()
        assert evaluator.evaluate(_make_rule(None), _make_reading(1)) is False

    def test_metric_absent_from_reading(self) -> None:
        evaluator, _ = _make_evaluator()
        reading = _make_reading(1, metrics={"humidity": 50.0})
        assert evaluator.evaluate(_make_rule(_gt(25.0)), reading) is False

    def test_metric_value_null(self) -> None:
        evaluator, _ = _make_evaluator()
        reading = _make_reading(1, metrics={METRIC: None})
        assert evaluator.evaluate(_make_rule(_gt(25.0)), reading) is False

    @pytest.mark.parametrize("value", [True, {"c": 30}, [30.0]])
    def test_unsupported_metric_type(self, value: Any) -> None:
        evaluator, _ = _make_evaluator()
        assert evaluator.evaluate(_make_rule(_gt(25.0)), _make_reading(1, value)) is False


# ---------------------------------------------------------------------------
# Comparison Rules
# ---------------------------------------------------------------------------


class TestComparisonRules:
    """Leaf rules delegate to the comparator."""

    def test_gt_satisfied(self) -> None:
        evaluator, _ = _make_evaluator()
        assert evaluator.evaluate(_make_rule(_gt(25.0)), _make_reading(1, 30.0)) is True

    def test_gt_not_satisfied(self) -> None:
        evaluator, _ = _make_evaluator()
        assert evaluator.evaluate(_make_rule(_gt(35.0)), _make_reading(1, 30.0)) is False

    def test_integer_metric_against_double_threshold(self) -> None:
        evaluator, _ = _make_evaluator()
        rule = _make_rule({"type": "eq", "value": 30.0})
        assert evaluator.evaluate(rule, _make_reading(1, 30)) is True

    def test_text_metric_against_text_threshold(self) -> None:
        evaluator, _ = _make_evaluator()
        rule = _make_rule({"type": "eq", "value": "OPEN"}, metric="door")
        reading = _make_reading(1, metric="door", value="OPEN")
        assert evaluator.evaluate(rule, reading) is True

    def test_text_metric_against_numeric_threshold(self) -> None:
        evaluator, _ = _make_evaluator()
        assert evaluator.evaluate(_make_rule(_gt(25.0)), _make_reading(1, "30")) is True
        assert evaluator.evaluate(_make_rule(_gt(25.0)), _make_reading(1, "hot")) is False

    def test_string_threshold_against_numeric_metric(self) -> None:
        evaluator, _ = _make_evaluator()
        assert evaluator.evaluate(_make_rule(_gt("3")), _make_reading(1, 4)) is True

    def test_comparison_does_not_read_history(self) -> None:
        evaluator, store = _make_evaluator()
        evaluator.evaluate(_make_rule(_gt(25.0)), _make_reading(1, 30.0))
        assert store.recent_calls == []


# ---------------------------------------------------------------------------
# Malformed Rule Content
# ---------------------------------------------------------------------------


class TestMalformedContent:
    """Malformed content never raises, always evaluates to False."""

    def test_unknown_operator_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        evaluator, _ = _make_evaluator()
        rule = _make_rule({"type": "between", "value": [20, 40]}, rule_id="rule_bad")
        with caplog.at_level(logging.WARNING):
            assert evaluator.evaluate(rule, _make_reading(1, 30.0)) is False
        assert "rule_bad" in caplog.text
        assert "between" in caplog.text

    @pytest.mark.parametrize(
        "content",
        [
            {},
            {"type": 5, "value": 1},
            {"type": "gt"},
            {"type": "gt", "value": None},
            {"type": "gt", "value": {"nested": 1}},
            {"type": "repeat", "value": _gt(1)},
            {"type": "repeat", "times": 0, "value": _gt(1)},
            {"type": "repeat", "times": -2, "value": _gt(1)},
            {"type": "repeat", "times": "x", "value": _gt(1)},
            {"type": "repeat", "times": 2},
            {"type": "repeat", "times": 2, "value": "gt"},
            {"type": "repeat", "times": 2, "value": {"type": "unknown"}},
            ["gt", 1],
            "gt 25",
        ],
    )
    def test_malformed_content_is_false(self, content: Any) -> None:
        evaluator, _ = _make_evaluator([_make_reading(s) for s in (1, 2, 3)])
        assert evaluator.evaluate(_make_rule(content), _make_reading(3)) is False


# ---------------------------------------------------------------------------
# Repeat Rules
# ---------------------------------------------------------------------------


class TestRepeatRules:
    """Temporal rules over the device's recent readings."""

    def test_all_readings_satisfy(self) -> None:
        readings = [_make_reading(s, 26.0 + s) for s in (1, 2, 3)]
        evaluator, store = _make_evaluator(readings)

        rule = _make_rule(_repeat(3, _gt(25.0)))
        assert evaluator.evaluate(rule, readings[-1]) is True
        assert store.recent_calls == [(DEVICE_ID, 3)]

    def test_one_reading_fails(self) -> None:
        readings = [
            _make_reading(1, 30.0),
            _make_reading(2, 20.0),
            _make_reading(3, 30.0),
        ]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is False

    def test_insufficient_history(self) -> None:
        readings = [_make_reading(1, 30.0), _make_reading(2, 30.0)]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is False

    def test_only_latest_window_is_considered(self) -> None:
        readings = [_make_reading(1, 10.0)] + [_make_reading(s, 30.0) for s in (2, 3, 4)]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is True

    def test_times_one_checks_latest_reading(self) -> None:
        readings = [_make_reading(1, 30.0), _make_reading(2, 10.0)]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(1, _gt(25.0))), readings[-1]) is False

    def test_window_is_device_history_not_current_reading(self) -> None:
        """The window is always the newest readings; the processed one is not special."""
        readings = [_make_reading(s, 30.0) for s in (1, 2, 3)] + [_make_reading(4, 10.0)]
        evaluator, _ = _make_evaluator(readings)
        # Evaluating an older reading still uses seqs 4, 3 as the window.
        assert evaluator.evaluate(_make_rule(_repeat(2, _gt(25.0))), readings[1]) is False

    def test_historical_reading_missing_metric(self) -> None:
        readings = [
            _make_reading(1, 30.0),
            _make_reading(2, metrics={"humidity": 40.0}),
            _make_reading(3, 30.0),
        ]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is False

    def test_historical_reading_unsupported_value(self) -> None:
        readings = [
            _make_reading(1, 30.0),
            _make_reading(2, [30.0]),
            _make_reading(3, 30.0),
        ]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is False

    def test_history_of_other_devices_ignored(self) -> None:
        readings = [
            _make_reading(1, 30.0),
            _make_reading(2, 30.0, device_id="d2"),
            _make_reading(3, 30.0, device_id="d2"),
        ]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(2, _gt(25.0))), readings[0]) is False

    def test_mixed_type_history(self) -> None:
        readings = [_make_reading(1, "31"), _make_reading(2, 32), _make_reading(3, 33.5)]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is True

    def test_times_given_as_string(self) -> None:
        readings = [_make_reading(s, 30.0) for s in (1, 2)]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat("2", _gt(25.0))), readings[-1]) is True

    def test_nested_repeat(self) -> None:
        readings = [_make_reading(s, 30.0) for s in (1, 2, 3)]
        evaluator, store = _make_evaluator(readings)
        rule = _make_rule(_repeat(2, _repeat(3, _gt(25.0))))
        assert evaluator.evaluate(rule, readings[-1]) is True
        assert store.recent_calls[0] == (DEVICE_ID, 2)
        assert all(call == (DEVICE_ID, 3) for call in store.recent_calls[1:])

    def test_huge_times_saturates_instead_of_raising(self) -> None:
        readings = [_make_reading(s, 30.0) for s in (1, 2, 3)]
        evaluator, store = _make_evaluator(readings)
        rule = _make_rule(_repeat(1e30, _gt(25.0)))
        assert evaluator.evaluate(rule, readings[-1]) is False
        assert store.recent_calls == [(DEVICE_ID, MAX_REPEAT_TIMES)]

    @pytest.mark.parametrize("times", [" 2 ", "2\n", "2_0"])
    def test_padded_times_string_is_invalid(self, times: str) -> None:
        readings = [_make_reading(s, 30.0) for s in (1, 2)]
        evaluator, store = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(times, _gt(25.0))), readings[-1]) is False
        assert store.recent_calls == []

    def test_sequence_gap_not_detected(self) -> None:
        """Known gap: seqs 10, 8, 7 count as three consecutive occurrences."""
        readings = [_make_reading(s, 30.0) for s in (7, 8, 10)]
        evaluator, _ = _make_evaluator(readings)
        assert evaluator.evaluate(_make_rule(_repeat(3, _gt(25.0))), readings[-1]) is True

    def test_store_failure_propagates(self) -> None:
        store = MagicMock(spec=TelemetryStore)
        store.recent_by_device.side_effect = ConnectionError("db down")
        evaluator = RuleEvaluator(HistoryResolver(store))
        with pytest.raises(ConnectionError):
            evaluator.evaluate(_make_rule(_repeat(2, _gt(25.0))), _make_reading(1))


# ---------------------------------------------------------------------------
# HistoryResolver
# ---------------------------------------------------------------------------


class TestHistoryResolver:
    """The resolver enforces newest-first ordering and the limit."""

    def test_passes_device_and_limit(self) -> None:
        store = MagicMock(spec=TelemetryStore)
        store.recent_by_device.return_value = []
        HistoryResolver(store).recent_readings("d9", 4)
        store.recent_by_device.assert_called_once_with("d9", 4)

    def test_sorts_newest_first(self) -> None:
        store = MagicMock(spec=TelemetryStore)
        store.recent_by_device.return_value = [_make_reading(s) for s in (2, 5, 3)]
        window = HistoryResolver(store).recent_readings(DEVICE_ID, 3)
        assert [r.seq for r in window] == [5, 3, 2]

    def test_truncates_to_limit(self) -> None:
        store = MagicMock(spec=TelemetryStore)
        store.recent_by_device.return_value = [_make_reading(s) for s in (4, 3, 2, 1)]
        window = HistoryResolver(store).recent_readings(DEVICE_ID, 2)
        assert [r.seq for r in window] == [4, 3]

    def test_short_history_returned_as_is(self) -> None:
        store = MagicMock(spec=TelemetryStore)
        store.recent_by_device.return_value = [_make_reading(1)]
        assert len(HistoryResolver(store).recent_readings(DEVICE_ID, 5)) == 1

    def test_non_positive_limit_skips_store(self) -> None:
        store = MagicMock(spec=TelemetryStore)
        assert HistoryResolver(store).recent_readings(DEVICE_ID, 0) == []
        store.recent_by_device.assert_not_called()

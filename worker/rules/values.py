"""
Metric value model for the Rule Worker.

Telemetry metrics and rule thresholds arrive as arbitrary decoded JSON.
Before any comparison they are classified by ``coerce`` into one of:

    - ``NumericValue`` -- any int or float (booleans excluded).
    - ``TextValue``    -- any string.
    - ``None``         -- unsupported (null, object, array, boolean).

An unsupported value never raises; the comparison that owns it simply
evaluates to ``False``.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_NON_FINITE_WORDS = frozenset({"inf", "infinity", "nan"})
_NON_FINITE_SPELLINGS = frozenset({"Infinity", "NaN"})


class NumericValue(BaseModel):
    """A numeric metric reading or threshold, held as a double."""

    model_config = {"frozen": True}

    kind: Literal["numeric"] = "numeric"
    value: float


class TextValue(BaseModel):
    """A textual metric reading or threshold."""

    model_config = {"frozen": True}

    kind: Literal["text"] = "text"
    value: str


MetricValue = Union[NumericValue, TextValue]


def coerce(raw: Any) -> MetricValue | None:
    """Classify a raw decoded value as numeric, text, or unsupported.

    ``bool`` is checked first because it is a subclass of ``int`` in
    Python but is not a valid metric type.

    Returns
    -------
    MetricValue or None
        ``None`` means the value is unsupported.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            return NumericValue(value=float(raw))
        except OverflowError:
            logger.debug("Integer value %d does not fit a double", raw)
            return None
    if isinstance(raw, str):
        return TextValue(value=raw)
    return None


def parse_number(text: str) -> float | None:
    """Parse a text operand as a double, returning ``None`` on failure.

    Surrounding whitespace is ignored. Digit-group underscores and the
    lenient non-finite spellings ``float()`` accepts (``inf``, ``nan``,
    ``INFINITY``, ...) are rejected; only ``Infinity`` and ``NaN`` are
    recognised.
    """
    if "_" in text:
        return None
    body = text.strip().lstrip("+-")
    if body.lower() in _NON_FINITE_WORDS and body not in _NON_FINITE_SPELLINGS:
        return None
    try:
        return float(text)
    except ValueError:
        return None

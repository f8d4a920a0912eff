"""
History window for temporal (``repeat``) rules.

The resolver owns the windowing contract: the ``limit`` most recent readings
of a device, ordered by ``seq`` descending. Storage is delegated to the
``TelemetryStore``. Contiguity of the returned sequence numbers is not
checked; a window with gaps is used as-is.
"""

from __future__ import annotations

import logging

from worker.rules.models import TelemetryReading
from worker.rules.repo import TelemetryStore

logger = logging.getLogger(__name__)


class HistoryResolver:
    """Resolves the recent-readings window for a device.

    Parameters
    ----------
    store : TelemetryStore
        Read-only source of stored telemetry.
    """

    def __init__(self, store: TelemetryStore) -> None:
        self._store = store

    def recent_readings(self, device_id: str, limit: int) -> list[TelemetryReading]:
        """Return at most ``limit`` readings for ``device_id``, newest first.

        The store is expected to honour the ordering and limit already; the
        result is re-sorted and truncated so a lax store cannot widen the
        window.
        """
        if limit <= 0:
            return []

        readings = self._store.recent_by_device(device_id, limit)
        window = sorted(readings, key=lambda r: r.seq, reverse=True)[:limit]

        logger.debug(
            "History window for device=%s limit=%d: seqs=%s",
            device_id,
            limit,
            [r.seq for r in window],
        )
        return window

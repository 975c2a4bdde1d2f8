"""
Health file writer for the exporter daemon.

Writes a JSON health file at a configurable path after every collection
cycle:
- last_collection_ts: ISO timestamp of the most recent cycle.
- last_success_ts: ISO timestamp of the most recent successful cycle.
- device_count: Devices in the most recent successful cycle.
- energy_calculated_count: Of those, devices whose energy was accounted.
- source_connected: Device source connection status.
- consecutive_failures: Failed cycles since the last successful one.

The file is rewritten on every cycle, providing a simple liveness signal
that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

from exporter.src.models import CollectionResult


class HealthWriter:
    """Writes exporter health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
        source_connected: Optional callable reporting the device source
            connection status.
    """

    def __init__(
        self,
        path: str | Path,
        source_connected: Callable[[], bool] | None = None,
    ) -> None:
        self.path = Path(path)
        self._source_connected = source_connected
        self._last_collection_ts: str | None = None
        self._last_success_ts: str | None = None
        self._device_count: int = 0
        self._energy_calculated_count: int = 0
        self._consecutive_failures: int = 0

    def record_cycle(self, result: CollectionResult) -> None:
        """Record a cycle outcome and write health file.

        Used as a scheduler result callback.
        """
        ts = result.collection_time.isoformat()
        self._last_collection_ts = ts
        if result.success:
            self._last_success_ts = ts
            self._device_count = result.device_count
            self._energy_calculated_count = result.energy_calculated_count
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_collection_ts": self._last_collection_ts,
            "last_success_ts": self._last_success_ts,
            "device_count": self._device_count,
            "energy_calculated_count": self._energy_calculated_count,
            "source_connected": (
                self._source_connected() if self._source_connected is not None else None
            ),
            "consecutive_failures": self._consecutive_failures,
        }
        self.path.write_text(json.dumps(data))

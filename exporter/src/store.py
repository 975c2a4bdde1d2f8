"""
Durable per-device sample store using async SQLite.

Keeps one row per device holding the last sample timestamp and cumulative
energy total, which the energy engine uses as the integration baseline for
the next calculation. The store survives process restarts because it is
backed by a SQLite database file on disk in WAL mode.

Operations:
- read(device_id): last PersistedSample, or a synthesized zero sample stamped
  with the current time for a device never seen before.
- write(device_id, sample): validate and upsert the device's row.
- device_ids() / count(): devices that carry a persisted total.
- close(): Close the underlying database connection.

A write is a single upsert followed by a commit and is shielded from task
cancellation, so a cancelled collection cycle never leaves a device's record
half-written.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from pathlib import Path

import aiosqlite

from exporter.src.errors import StorageError
from exporter.src.models import PersistedSample

logger = logging.getLogger(__name__)

MAX_FUTURE_SKEW_MS: int = 24 * 60 * 60 * 1000
"""Samples stamped further than this in the future are rejected."""

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS device_samples (
    device_id TEXT PRIMARY KEY,
    timestamp_ms INTEGER NOT NULL,
    energy_wh REAL NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_SELECT_SQL = """\
SELECT timestamp_ms, energy_wh
FROM device_samples
WHERE device_id = ?;
"""

_UPSERT_SQL = """\
INSERT INTO device_samples (device_id, timestamp_ms, energy_wh)
VALUES (?, ?, ?)
ON CONFLICT (device_id) DO UPDATE SET
    timestamp_ms = excluded.timestamp_ms,
    energy_wh = excluded.energy_wh,
    updated_at = datetime('now');
"""

_IDS_SQL = "SELECT device_id FROM device_samples ORDER BY device_id ASC;"

_COUNT_SQL = "SELECT COUNT(*) FROM device_samples;"


def now_ms() -> int:
    """Return the current wall-clock time as Unix epoch milliseconds."""
    return time.time_ns() // 1_000_000


class SampleStore:
    """Per-device last-sample store backed by a SQLite database.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.
        clock: Callable returning the current time in epoch milliseconds,
            used to stamp synthesized samples for unseen devices.

    Usage::

        async with SampleStore(path="/data/energy.db") as store:
            sample = await store.read("ups-1")
            await store.write("ups-1", PersistedSample(timestamp_ms=..., energy_wh=12.5))
    """

    def __init__(
        self,
        path: str | Path,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._path = Path(path)
        self._clock = clock
        self._db: aiosqlite.Connection | None = None
        self._pending_writes: set[asyncio.Task[None]] = set()

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema.

        Creates the parent directory if needed, sets WAL journal mode and
        creates the samples table if it does not exist.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection.

        Writes still in flight (their caller was cancelled) finish first.
        """
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SampleStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self, device_id: str) -> PersistedSample:
        """Return the last persisted sample for *device_id*.

        A device without a row gets a zero-energy sample stamped with the
        current time, so its first integration interval is effectively zero
        rather than unbounded.

        Raises:
            StorageError: If the database read fails.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        try:
            cursor = await self._db.execute(_SELECT_SQL, (device_id,))
            row = await cursor.fetchone()
        except (aiosqlite.Error, ValueError) as exc:
            raise StorageError("read", device_id, exc) from exc

        if row is None:
            logger.debug("No persisted sample for device=%s, seeding zero", device_id)
            return PersistedSample(timestamp_ms=self._clock(), energy_wh=0.0)
        return PersistedSample(timestamp_ms=row[0], energy_wh=row[1])

    async def write(self, device_id: str, sample: PersistedSample) -> None:
        """Persist *sample* as the latest record for *device_id*.

        Raises:
            StorageError: If the sample fails validation or the write fails.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        self._validate(device_id, sample)
        task = asyncio.ensure_future(self._upsert(device_id, sample))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        await asyncio.shield(task)

    async def device_ids(self) -> list[str]:
        """Return the ids of all devices that have a persisted sample.

        Raises:
            StorageError: If the database query fails.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        try:
            cursor = await self._db.execute(_IDS_SQL)
            rows = await cursor.fetchall()
        except (aiosqlite.Error, ValueError) as exc:
            raise StorageError("list", "", exc) from exc
        return [row[0] for row in rows]

    async def count(self) -> int:
        """Return the number of devices with a persisted sample.

        Raises:
            StorageError: If the database query fails.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        try:
            cursor = await self._db.execute(_COUNT_SQL)
            row = await cursor.fetchone()
        except (aiosqlite.Error, ValueError) as exc:
            raise StorageError("count", "", exc) from exc
        return row[0]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _validate(self, device_id: str, sample: PersistedSample) -> None:
        if not device_id:
            raise StorageError("write", device_id, ValueError("device ID cannot be empty"))
        if not math.isfinite(sample.energy_wh):
            raise StorageError("write", device_id, ValueError("energy value must be finite"))
        if sample.timestamp_ms > self._clock() + MAX_FUTURE_SKEW_MS:
            raise StorageError(
                "write", device_id, ValueError("timestamp is too far in the future")
            )

    async def _upsert(self, device_id: str, sample: PersistedSample) -> None:
        assert self._db is not None
        try:
            await self._db.execute(
                _UPSERT_SQL, (device_id, sample.timestamp_ms, sample.energy_wh)
            )
            await self._db.commit()
        except (aiosqlite.Error, ValueError) as exc:
            raise StorageError("write", device_id, exc) from exc

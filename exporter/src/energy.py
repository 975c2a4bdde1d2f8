"""
Energy accounting engine: converts instantaneous power into cumulative Wh.

Each call to :meth:`EnergyService.calculate` reads the device's last
persisted sample, integrates the new power reading over the elapsed time
(rectangular integration on the newest sample), rounds the new total to the
configured precision and persists it before returning.

Integration rules:

- An unseen device starts from a zero sample stamped "now", so the first
  interval contributes nothing.
- A negative elapsed time (clock stepped back) contributes nothing.
- An interval longer than ``max_interval_s`` is a gap (restart, outage):
  ``gap_policy="drop"`` credits nothing and re-seeds the window,
  ``gap_policy="cap"`` integrates over ``max_interval_s`` only.
- Negative power is integrated unless disallowed, in which case
  ``negative_power_policy`` either credits nothing (``"zero"``) or fails the
  calculation (``"reject"``).

A store read or write failure raises AccountingError and leaves the
persisted total untouched. Calculations for the same device are serialized
by a per-device lock; different devices proceed concurrently.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Protocol

from exporter.src.errors import (
    AccountingError,
    InvalidDeviceIdError,
    InvalidPowerError,
    NilDependencyError,
    StorageError,
)
from exporter.src.models import AccountingConfig, PersistedSample
from exporter.src.store import now_ms

logger = logging.getLogger(__name__)

MS_PER_HOUR: int = 3_600_000


class SampleStoreProtocol(Protocol):
    """Per-device persistence the engine depends on."""

    async def read(self, device_id: str) -> PersistedSample: ...

    async def write(self, device_id: str, sample: PersistedSample) -> None: ...


@dataclass
class EnergyStats:
    """Running calculation statistics for one engine instance."""

    total_calculations: int = 0
    total_errors: int = 0
    last_update_time: datetime | None = None
    avg_calculation_s: float = 0.0


def round_to_precision(value: float, precision: float) -> float:
    """Round *value* to the nearest multiple of *precision*.

    The result is also rounded to the number of decimals in *precision* so
    that 0.01 steps do not accumulate binary floating point noise.
    """
    exponent = Decimal(str(precision)).normalize().as_tuple().exponent
    decimals = max(0, -exponent) if isinstance(exponent, int) else 0
    return round(round(value / precision) * precision, decimals)


class EnergyService:
    """Per-device cumulative energy accounting.

    Args:
        store: Persistent per-device sample store.
        config: Accounting settings; defaults apply when omitted.
        clock: Callable returning the current time in epoch milliseconds.

    Raises:
        NilDependencyError: If *store* is None.
    """

    def __init__(
        self,
        store: SampleStoreProtocol,
        config: AccountingConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if store is None:
            raise NilDependencyError("store")
        self._store = store
        self._config = config or AccountingConfig()
        self._clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._stats = EnergyStats()

    @property
    def config(self) -> AccountingConfig:
        return self._config

    @property
    def stats(self) -> EnergyStats:
        """A copy of the current calculation statistics."""
        return dataclasses.replace(self._stats)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def calculate(self, device_id: str, power_w: float) -> float:
        """Integrate *power_w* for *device_id* and return the new total in Wh.

        Args:
            device_id: Stable device identifier.
            power_w: Instantaneous active power in watts.

        Returns:
            The new cumulative energy total, rounded to the configured
            precision.

        Raises:
            InvalidDeviceIdError: If *device_id* is empty.
            InvalidPowerError: If *power_w* is not finite, or is negative
                while negative power is disallowed with the reject policy.
            AccountingError: If the store read or write fails.
        """
        if not device_id:
            raise InvalidDeviceIdError()
        if not math.isfinite(power_w):
            raise InvalidPowerError(device_id, f"power value must be finite, got {power_w}")

        async with self._locks[device_id]:
            started = time.perf_counter()
            try:
                total = await self._calculate_locked(device_id, power_w)
            except AccountingError:
                self._record(success=False, duration_s=time.perf_counter() - started)
                raise
            duration_s = time.perf_counter() - started
            self._record(success=True, duration_s=duration_s)

        if duration_s > self._config.slow_calculation_s:
            logger.warning(
                "Slow energy calculation for device=%s: %.3fs", device_id, duration_s
            )
        logger.debug(
            "Energy calculated: device=%s power_w=%.2f total_wh=%.2f",
            device_id,
            power_w,
            total,
        )
        return total

    async def get(self, device_id: str) -> float:
        """Return the last cumulative energy total for *device_id* in Wh.

        Unseen devices report 0.0.

        Raises:
            InvalidDeviceIdError: If *device_id* is empty.
            AccountingError: If the store read fails.
        """
        if not device_id:
            raise InvalidDeviceIdError()
        try:
            sample = await self._store.read(device_id)
        except StorageError as exc:
            raise AccountingError(device_id, "failed to read last sample", exc) from exc
        return sample.energy_wh

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _calculate_locked(self, device_id: str, power_w: float) -> float:
        try:
            last = await self._store.read(device_id)
        except StorageError as exc:
            logger.error("Failed to read last sample for device=%s: %s", device_id, exc)
            raise AccountingError(device_id, "failed to read last sample", exc) from exc

        now = self._clock()
        increment = self._interval_energy(device_id, last, power_w, now)
        total = round_to_precision(last.energy_wh + increment, self._config.precision)
        if self._config.clamp_negative_total and total < 0:
            total = 0.0

        try:
            await self._store.write(
                device_id, PersistedSample(timestamp_ms=now, energy_wh=total)
            )
        except StorageError as exc:
            logger.error("Failed to persist sample for device=%s: %s", device_id, exc)
            raise AccountingError(device_id, "failed to persist sample", exc) from exc
        return total

    def _interval_energy(
        self,
        device_id: str,
        last: PersistedSample,
        power_w: float,
        now: int,
    ) -> float:
        """Energy in Wh credited for the interval ending at *now*."""
        cfg = self._config
        elapsed_ms = now - last.timestamp_ms

        if elapsed_ms < 0:
            logger.warning(
                "Clock moved backwards for device=%s by %dms, interval ignored",
                device_id,
                -elapsed_ms,
            )
            return 0.0

        max_ms = cfg.max_interval_s * 1000
        if elapsed_ms > max_ms:
            if cfg.gap_policy == "drop":
                logger.warning(
                    "Sample gap for device=%s (%.1fs > %.1fs), interval dropped",
                    device_id,
                    elapsed_ms / 1000,
                    cfg.max_interval_s,
                )
                return 0.0
            logger.warning(
                "Sample gap for device=%s (%.1fs > %.1fs), interval capped",
                device_id,
                elapsed_ms / 1000,
                cfg.max_interval_s,
            )
            elapsed_ms = max_ms

        if power_w < 0 and not cfg.negative_power_allowed:
            if cfg.negative_power_policy == "reject":
                raise InvalidPowerError(
                    device_id, f"negative power {power_w}W is not allowed"
                )
            logger.debug(
                "Negative power %.2fW for device=%s counted as zero", power_w, device_id
            )
            return 0.0

        return power_w * elapsed_ms / MS_PER_HOUR

    def _record(self, *, success: bool, duration_s: float) -> None:
        if not self._config.enable_stats:
            return
        stats = self._stats
        stats.total_calculations += 1
        if not success:
            stats.total_errors += 1
        if stats.avg_calculation_s == 0:
            stats.avg_calculation_s = duration_s
        else:
            stats.avg_calculation_s = (stats.avg_calculation_s + duration_s) / 2
        stats.last_update_time = datetime.now(tz=UTC)

"""
Collection coordinator: one poll of the device source fanned out to N devices.

:meth:`CollectorService.collect_device_data` runs a single cycle:

1. Reject a missing or already-set cancellation event.
2. Fetch every device snapshot from the source. A source failure aborts the
   cycle with SourceCollectionError carrying a failed CollectionResult.
3. Convert each snapshot into a DeviceCollectionInfo and run energy
   accounting for it. A conversion or accounting failure is recorded on that
   device's record and logged; the remaining devices are unaffected.
4. Aggregate every device record into a CollectionResult.

The cancellation event plays the role of the cycle's context: setting it
while the source call or accounting is in flight cancels the outstanding work
and raises CollectionCancelledError.

The collector keeps no state between calls and may be invoked concurrently
with the scheduler; per-device store access is serialized by the engine.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable
from datetime import UTC, datetime, timedelta
from typing import Protocol, TypeVar

from pydantic import ValidationError

from exporter.src.errors import (
    AccountingError,
    CollectionCancelledError,
    ConversionError,
    InvalidContextError,
    NilDependencyError,
    SourceCollectionError,
)
from exporter.src.models import CollectionResult, DeviceCollectionInfo, DeviceSnapshot
from exporter.src.source import DeviceSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EnergyCalculator(Protocol):
    """Energy accounting capability the collector depends on."""

    async def calculate(self, device_id: str, power_w: float) -> float: ...

    async def get(self, device_id: str) -> float: ...


async def until_cancelled(aw: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """Await *aw* unless *cancel_event* is set first.

    Raises:
        CollectionCancelledError: If the event fired before *aw* finished;
            *aw* is cancelled and awaited before raising.
    """
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    if task.cancelled():
        raise CollectionCancelledError("collection cancelled while in flight")
    return task.result()


class CollectorService:
    """Coordinates one collection cycle across all devices.

    Args:
        source: Device snapshot source.
        energy: Energy accounting engine.
        log: Logger used for cycle and device messages.

    Raises:
        NilDependencyError: If any collaborator is None.
    """

    def __init__(
        self,
        source: DeviceSource,
        energy: EnergyCalculator,
        log: logging.Logger | None = logger,
    ) -> None:
        if source is None:
            raise NilDependencyError("source")
        if energy is None:
            raise NilDependencyError("energy")
        if log is None:
            raise NilDependencyError("logger")
        self._source = source
        self._energy = energy
        self._log = log

    def source_connected(self) -> bool:
        """Connection status reported by the device source."""
        return self._source.connection_status()

    def last_source_collection(self) -> datetime | None:
        """Last successful collection time reported by the device source."""
        return self._source.last_collection_time()

    async def collect_device_data(
        self, cancel_event: asyncio.Event | None
    ) -> CollectionResult:
        """Run one collection cycle.

        Args:
            cancel_event: Cancellation signal for this cycle. Setting it
                aborts outstanding source and store work.

        Returns:
            The aggregated CollectionResult (``success=True``), even when
            individual devices failed.

        Raises:
            InvalidContextError: If *cancel_event* is None or already set.
            SourceCollectionError: If the source call failed; its ``result``
                holds the failed CollectionResult.
            CollectionCancelledError: If *cancel_event* fired mid-cycle.
        """
        if cancel_event is None:
            raise InvalidContextError("invalid context: no cancellation context supplied")
        if cancel_event.is_set():
            raise InvalidContextError("invalid context: already cancelled")

        started = time.monotonic()
        self._log.debug("Starting device data collection")

        try:
            snapshots = await until_cancelled(
                self._source.collect_device_data(), cancel_event
            )
        except CollectionCancelledError:
            raise
        except Exception as exc:
            error = SourceCollectionError(exc)
            error.result = CollectionResult(
                success=False,
                device_count=0,
                devices={},
                collection_time=datetime.now(tz=UTC),
                duration=timedelta(seconds=time.monotonic() - started),
                error_message=str(error),
            )
            self._log.error("Failed to collect data from device source: %s", exc)
            raise error from exc

        devices = await until_cancelled(self._process_devices(snapshots), cancel_event)

        result = CollectionResult(
            success=True,
            device_count=len(devices),
            devices=devices,
            collection_time=datetime.now(tz=UTC),
            duration=timedelta(seconds=time.monotonic() - started),
        )
        self._log.info(
            "Device data collection completed: devices=%d energy_calculated=%d duration=%.3fs",
            result.device_count,
            result.energy_calculated_count,
            result.duration.total_seconds(),
        )
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _process_devices(
        self, snapshots: list[DeviceSnapshot]
    ) -> dict[str, DeviceCollectionInfo]:
        infos = await asyncio.gather(*(self._process_device(s) for s in snapshots))

        devices: dict[str, DeviceCollectionInfo] = {}
        for info in infos:
            if info.device_id in devices:
                self._log.warning(
                    "Duplicate device id in batch: %s, keeping latest", info.device_id
                )
            devices[info.device_id] = info
        return devices

    async def _process_device(self, snapshot: DeviceSnapshot) -> DeviceCollectionInfo:
        try:
            info = self._convert_to_device_info(snapshot)
        except ConversionError as exc:
            self._log.warning("Conversion failed for device=%s: %s", snapshot.device_id, exc)
            return DeviceCollectionInfo(
                device_id=snapshot.device_id,
                device_name=snapshot.device_name,
                device_type=snapshot.device_type,
                device_model=snapshot.device_model,
                connected=snapshot.connected,
                last_update_time=snapshot.collected_at,
                error_msg=f"data conversion failed: {exc}",
            )

        try:
            energy_wh = await self._energy.calculate(info.device_id, info.load_total_watt)
        except AccountingError as exc:
            self._log.warning(
                "Energy calculation failed for device=%s: %s", snapshot.device_id, exc
            )
            return info.model_copy(
                update={
                    "energy_calculated": False,
                    "error_msg": f"energy calculation failed: {exc}",
                }
            )
        except Exception as exc:
            # CancelledError is a BaseException and still propagates.
            self._log.warning(
                "Unexpected error accounting device=%s: %r",
                snapshot.device_id,
                exc,
                exc_info=True,
            )
            return info.model_copy(
                update={
                    "energy_calculated": False,
                    "error_msg": f"energy calculation failed: {exc!r}",
                }
            )

        return info.model_copy(
            update={"energy_calculated": True, "energy_value_wh": energy_wh}
        )

    @staticmethod
    def _convert_to_device_info(snapshot: DeviceSnapshot) -> DeviceCollectionInfo:
        """Flatten a snapshot into a DeviceCollectionInfo.

        Raises:
            ConversionError: If the readings do not validate (e.g. NaN).
        """
        try:
            return DeviceCollectionInfo(
                device_id=snapshot.device_id,
                device_name=snapshot.device_name,
                device_type=snapshot.device_type,
                device_model=snapshot.device_model,
                connected=snapshot.connected,
                last_update_time=snapshot.collected_at,
                **snapshot.realtime.model_dump(),
            )
        except ValidationError as exc:
            raise ConversionError(
                snapshot.device_id,
                f"{exc.error_count()} invalid field(s)",
                exc,
            ) from exc

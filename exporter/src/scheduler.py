"""
Periodic collection scheduler.

Runs the collector once per tick at a fixed interval in a single asyncio task.
Cycles never overlap: an explicit cycle lock guards every run, and ticks
missed while a slow cycle was in flight are skipped rather than queued, so
outstanding work cannot pile up behind a slow device source.

A failed cycle is logged with a classified failure type and retried on the
next tick; the interval itself throttles retries. Cycle results are
handed to the registered result callbacks (health file, metrics consumer).

Lifecycle: ``stopped -> running -> stopped``. ``stop()`` sets the
cancellation event, waits up to ``shutdown_timeout_s`` for the in-flight cycle
to observe it and return, and is a no-op when the scheduler is not running.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

import httpx
from pydantic import ValidationError

from exporter.src.errors import (
    AuthenticationError,
    CollectionCancelledError,
    ConfigError,
    NilDependencyError,
    ShutdownTimeoutError,
    SourceCollectionError,
    SourceResponseError,
)
from exporter.src.models import CollectionResult

logger = logging.getLogger(__name__)

ResultCallback = Callable[[CollectionResult], Awaitable[None] | None]


class Collector(Protocol):
    """Collection capability driven by the scheduler."""

    async def collect_device_data(
        self, cancel_event: asyncio.Event | None
    ) -> CollectionResult: ...


def classify_failure(exc: BaseException) -> str:
    """Map a cycle failure to a coarse failure type for logging.

    Args:
        exc: The exception raised by a collection cycle.

    Returns:
        One of ``auth_error``, ``timeout_error``, ``network_error``,
        ``data_error``, ``cancelled`` or ``unknown_error``.
    """
    match exc:
        case CollectionCancelledError():
            return "cancelled"
        case SourceCollectionError(cause=AuthenticationError()):
            return "auth_error"
        case SourceCollectionError(cause=httpx.TimeoutException() | TimeoutError()):
            return "timeout_error"
        case SourceCollectionError(cause=httpx.TransportError()):
            return "network_error"
        case SourceCollectionError(
            cause=SourceResponseError() | ValidationError() | ValueError()
        ):
            return "data_error"
        case SourceCollectionError(cause=httpx.HTTPStatusError(response=response)) if (
            response.status_code in (401, 403)
        ):
            return "auth_error"
        case TimeoutError():
            return "timeout_error"
        case _:
            return "unknown_error"


class Scheduler:
    """Drives the collector at a fixed interval without overlapping cycles.

    Args:
        collector: Object with an async ``collect_device_data(cancel_event)``.
        interval_s: Seconds between tick starts.
        collection_timeout_s: Upper bound for a single cycle.
        shutdown_timeout_s: How long ``stop()`` waits for the loop to finish.
        collect_on_start: Run the first cycle immediately on start.
        on_result: Callbacks invoked with every CollectionResult, including
            the failed result of a source failure.

    Raises:
        NilDependencyError: If *collector* is None.
        ConfigError: If any timing parameter is not positive.
    """

    def __init__(
        self,
        collector: Collector,
        *,
        interval_s: float = 5.0,
        collection_timeout_s: float = 30.0,
        shutdown_timeout_s: float = 30.0,
        collect_on_start: bool = True,
        on_result: Sequence[ResultCallback] = (),
    ) -> None:
        if collector is None:
            raise NilDependencyError("collector")
        for name, value in (
            ("interval_s", interval_s),
            ("collection_timeout_s", collection_timeout_s),
            ("shutdown_timeout_s", shutdown_timeout_s),
        ):
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

        self._collector = collector
        self._interval_s = interval_s
        self._collection_timeout_s = collection_timeout_s
        self._shutdown_timeout_s = shutdown_timeout_s
        self._collect_on_start = collect_on_start
        self._callbacks = list(on_result)

        self._cycle_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._cycle_count = 0
        self._skipped_ticks = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_count(self) -> int:
        """Number of cycles run since construction."""
        return self._cycle_count

    @property
    def skipped_ticks(self) -> int:
        """Ticks skipped because a cycle was still in flight."""
        return self._skipped_ticks

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Start the collection loop.

        Args:
            shutdown_event: Optional external cancellation signal. When given,
                setting it stops the loop as if ``stop()`` had been called.
        """
        if self.is_running:
            return

        self._stop_event = shutdown_event if shutdown_event is not None else asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(self._stop_event))
        logger.info("Scheduler started (interval=%ss)", self._interval_s)

    async def stop(self) -> None:
        """Stop the collection loop and wait for the in-flight cycle.

        Raises:
            ShutdownTimeoutError: If the loop did not finish within
                ``shutdown_timeout_s``; it is cancelled and the scheduler is
                stopped regardless.
        """
        task = self._task
        if task is None:
            return

        assert self._stop_event is not None
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_timeout_s)
        except TimeoutError as exc:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.warning(
                "Scheduler stop timed out after %ss, loop cancelled",
                self._shutdown_timeout_s,
            )
            raise ShutdownTimeoutError(
                f"scheduler stop timeout after {self._shutdown_timeout_s}s"
            ) from exc
        finally:
            self._task = None
            self._stop_event = None
        logger.info("Scheduler stopped gracefully")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        if not self._collect_on_start:
            next_tick += self._interval_s

        while not stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    stop_event.wait(), timeout=max(0.0, next_tick - loop.time())
                )
            if stop_event.is_set():
                break

            await self._run_cycle(stop_event)

            next_tick += self._interval_s
            now = loop.time()
            if next_tick < now:
                missed = int((now - next_tick) // self._interval_s) + 1
                self._skipped_ticks += missed
                next_tick += missed * self._interval_s
                logger.warning(
                    "Collection cycle overran the interval, skipped %d tick(s)", missed
                )
        logger.info("Scheduler loop stopped")

    async def _run_cycle(self, stop_event: asyncio.Event) -> None:
        """Run one collection cycle unless one is already in flight.

        The loop awaits cycles inline and counts its own overruns, so the
        lock only rejects calls that arrive while another cycle holds it.
        """
        if self._cycle_lock.locked():
            self._skipped_ticks += 1
            logger.warning("Collection cycle still in flight, tick skipped")
            return

        async with self._cycle_lock:
            self._cycle_count += 1
            cycle_id = f"collection-{self._cycle_count}"
            try:
                result = await asyncio.wait_for(
                    self._collector.collect_device_data(stop_event),
                    timeout=self._collection_timeout_s,
                )
            except Exception as exc:
                self._log_failure(cycle_id, exc)
                if isinstance(exc, SourceCollectionError) and exc.result is not None:
                    await self._notify(exc.result)
                return

            logger.info(
                "%s completed: success=%s devices=%d energy_calculated=%d failed=%s",
                cycle_id,
                result.success,
                result.device_count,
                result.energy_calculated_count,
                result.failed_device_ids,
            )
            await self._notify(result)

    async def _notify(self, result: CollectionResult) -> None:
        for callback in self._callbacks:
            try:
                outcome = callback(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.warning("Result callback failed", exc_info=True)

    def _log_failure(self, cycle_id: str, exc: Exception) -> None:
        failure_type = classify_failure(exc)
        if failure_type == "cancelled":
            logger.info("%s cancelled during shutdown", cycle_id)
            return
        logger.error(
            "%s failed (error_type=%s): %s",
            cycle_id,
            failure_type,
            exc,
            exc_info=failure_type == "unknown_error",
        )

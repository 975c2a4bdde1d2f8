"""
Exporter daemon entrypoint for the WinPower energy pipeline.

Wires the device source, the per-device sample store, the energy engine, the
collector and the scheduler together, then runs until SIGTERM/SIGINT:

1. **Scheduler loop**: every ``collection_interval_s`` the collector polls
   WinPower, converts every device snapshot and updates its cumulative
   energy total in the SQLite store.
2. **Result consumers**: each cycle's CollectionResult is written to the JSON
   health file.

A signal sets a shared asyncio.Event; the scheduler observes it, lets the
in-flight cycle finish or cancel, and the store is closed before exit.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from exporter.src.collector import CollectorService
from exporter.src.energy import EnergyService
from exporter.src.errors import ShutdownTimeoutError
from exporter.src.health import HealthWriter
from exporter.src.scheduler import Scheduler
from exporter.src.source import WinPowerSource
from exporter.src.store import SampleStore

if TYPE_CHECKING:
    from exporter.src.config import ExporterSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the exporter daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_secret(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: ExporterSettings) -> None:
    """Log a config summary at startup, excluding secrets.

    The WinPower password is only logged as a fingerprint.
    """
    logger.info(
        "Exporter starting with config: "
        "winpower_url=%s, winpower_username=%s, winpower_verify_tls=%s, "
        "collection_interval_s=%s, collection_timeout_s=%s, "
        "energy_precision=%s, energy_max_interval_s=%s, energy_gap_policy=%s, "
        "energy_negative_power_allowed=%s, storage_path=%s, health_path=%s, "
        "winpower_password_masked=%s",
        settings.winpower_url,
        settings.winpower_username,
        settings.winpower_verify_tls,
        settings.collection_interval_s,
        settings.collection_timeout_s,
        settings.energy_precision,
        settings.energy_max_interval_s,
        settings.energy_gap_policy,
        settings.energy_negative_power_allowed,
        settings.storage_path,
        settings.health_path,
        _masked_secret(settings.winpower_password),
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def build_scheduler(
    *,
    settings: ExporterSettings,
    store: SampleStore,
    source: WinPowerSource | None = None,
) -> Scheduler:
    """Assemble source, engine, collector, health writer and scheduler."""
    if source is None:
        source = WinPowerSource(
            base_url=settings.winpower_url,
            username=settings.winpower_username,
            password=settings.winpower_password,
            timeout_s=settings.winpower_timeout_s,
            verify_tls=settings.winpower_verify_tls,
            page_size=settings.winpower_page_size,
            token_ttl_s=settings.winpower_token_ttl_s,
        )
    energy = EnergyService(store, config=settings.accounting_config())
    collector = CollectorService(source, energy)
    health = HealthWriter(settings.health_path, source_connected=source.connection_status)
    return Scheduler(
        collector,
        interval_s=settings.collection_interval_s,
        collection_timeout_s=settings.collection_timeout_s,
        shutdown_timeout_s=settings.shutdown_timeout_s,
        on_result=[health.record_cycle],
    )


async def run(
    *,
    settings: ExporterSettings,
    shutdown_event: asyncio.Event,
    source: WinPowerSource | None = None,
) -> None:
    """Run the exporter until *shutdown_event* is set."""
    async with SampleStore(settings.storage_path) as store:
        known = await store.count()
        logger.info("Sample store opened: %d device(s) with persisted totals", known)

        scheduler = build_scheduler(settings=settings, store=store, source=source)
        await scheduler.start(shutdown_event)
        await shutdown_event.wait()
        try:
            await scheduler.stop()
        except ShutdownTimeoutError:
            logger.error("Scheduler did not stop cleanly", exc_info=True)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, register signals, run the exporter."""
    from exporter.src.config import ExporterSettings

    settings = ExporterSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    await run(settings=settings, shutdown_event=shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the exporter daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()

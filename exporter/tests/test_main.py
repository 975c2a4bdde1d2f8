"""
Unit tests for the exporter daemon entrypoint.

Tests verify:
- JSON log formatter output, including exceptions.
- configure_logging installs a single JSON handler at the requested level.
- Startup config summary includes endpoints and intervals but never the
  WinPower password.
- build_scheduler wires the collector and health writer together.
- run() opens the store, drives collection cycles, writes the health file
  and returns once the shutdown event is set.
- The signal handler sets the shutdown event.
- async_main loads settings and delegates to run().

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
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from exporter.src.config import ExporterSettings
from exporter.src.main import (
    JsonFormatter,
    _handle_signal,
    _masked_secret,
    async_main,
    build_scheduler,
    configure_logging,
    log_config_summary,
    run,
)
from exporter.src.models import DeviceSnapshot, RealtimeReadings
from exporter.src.scheduler import Scheduler
from exporter.src.store import SampleStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides: object) -> ExporterSettings:
    """Create ExporterSettings pointing storage and health into tmp_path."""
    values: dict[str, object] = {
        "winpower_url": "https://winpower.example.com:8081",
        "winpower_username": "admin",
        "winpower_password": "super-secret-password",
        "collection_interval_s": 0.02,
        "storage_path": str(tmp_path / "energy.db"),
        "health_path": str(tmp_path / "health.json"),
    }
    values.update(overrides)
    return ExporterSettings(**values)


def _make_source(power_w: float = 850.0) -> MagicMock:
    """Create a mock device source reporting one UPS."""
    snapshot = DeviceSnapshot(
        device_id="ups-1",
        device_name="Rack A UPS",
        connected=True,
        collected_at=datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
        realtime=RealtimeReadings(load_total_watt=power_w),
    )
    source = MagicMock()
    source.collect_device_data = AsyncMock(return_value=[snapshot])
    source.connection_status = MagicMock(return_value=True)
    source.last_collection_time = MagicMock(return_value=None)
    return source


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestJsonLogging:
    """Structured JSON log output."""

    def test_formatter_emits_json(self) -> None:
        record = logging.LogRecord(
            name="exporter.src.collector",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="device=%s failed",
            args=("ups-1",),
            exc_info=None,
        )

        entry = json.loads(JsonFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["logger"] == "exporter.src.collector"
        assert entry["msg"] == "device=ups-1 failed"
        assert "ts" in entry
        assert "exception" not in entry

    def test_formatter_includes_exception(self) -> None:
        try:
            raise RuntimeError("store exploded")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            name="exporter.src.store",
            level=logging.ERROR,
            pathname=__file__,
            lineno=1,
            msg="write failed",
            args=(),
            exc_info=exc_info,
        )

        entry = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: store exploded" in entry["exception"]

    def test_configure_logging_installs_json_handler(self) -> None:
        root = logging.getLogger()
        saved_handlers = root.handlers[:]
        saved_level = root.level
        try:
            configure_logging("DEBUG")

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestStartupLogging:
    """Startup config summary never leaks the password."""

    def test_summary_contains_endpoint_and_intervals(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        settings = _make_settings(tmp_path, collection_interval_s=7)

        with caplog.at_level(logging.INFO, logger="exporter.src.main"):
            log_config_summary(settings)

        assert "https://winpower.example.com:8081" in caplog.text
        assert "collection_interval_s=7" in caplog.text
        assert "energy_gap_policy=drop" in caplog.text

    def test_summary_does_not_contain_password(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        settings = _make_settings(tmp_path)

        with caplog.at_level(logging.INFO, logger="exporter.src.main"):
            log_config_summary(settings)

        assert "super-secret-password" not in caplog.text
        assert "winpower_password_masked=len=21 sha256=" in caplog.text

    def test_masked_secret(self) -> None:
        digest = hashlib.sha256(b"abc").hexdigest()[:10]

        assert _masked_secret("") == "empty"
        assert _masked_secret(None) == "empty"
        assert _masked_secret("abc") == f"len=3 sha256={digest}"


# ---------------------------------------------------------------------------
# Wiring and run loop
# ---------------------------------------------------------------------------


class TestRun:
    """run() drives the full pipeline until shutdown."""

    @pytest.mark.asyncio
    async def test_build_scheduler_uses_settings(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path, shutdown_timeout_s=3)
        store = MagicMock()

        scheduler = build_scheduler(settings=settings, store=store, source=_make_source())

        assert isinstance(scheduler, Scheduler)
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_build_scheduler_creates_winpower_source(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path)

        with patch("exporter.src.main.WinPowerSource") as source_cls:
            build_scheduler(settings=settings, store=MagicMock())

        kwargs = source_cls.call_args.kwargs
        assert kwargs["base_url"] == "https://winpower.example.com:8081"
        assert kwargs["username"] == "admin"
        assert kwargs["password"] == "super-secret-password"
        assert kwargs["page_size"] == 100

    @pytest.mark.asyncio
    async def test_run_collects_persists_and_writes_health(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path)
        source = _make_source()
        shutdown = asyncio.Event()

        async def _trigger_shutdown() -> None:
            await asyncio.sleep(0.1)
            shutdown.set()

        await asyncio.wait_for(
            asyncio.gather(
                run(settings=settings, shutdown_event=shutdown, source=source),
                _trigger_shutdown(),
            ),
            timeout=5,
        )

        assert source.collect_device_data.await_count >= 2
        health = json.loads((tmp_path / "health.json").read_text())
        assert health["device_count"] == 1
        assert health["source_connected"] is True
        assert health["consecutive_failures"] == 0

        async with SampleStore(tmp_path / "energy.db") as store:
            assert await store.device_ids() == ["ups-1"]

    @pytest.mark.asyncio
    async def test_run_records_source_failures_in_health(self, tmp_path: Path) -> None:
        settings = _make_settings(tmp_path)
        source = _make_source()
        source.collect_device_data = AsyncMock(side_effect=RuntimeError("winpower down"))
        source.connection_status = MagicMock(return_value=False)
        shutdown = asyncio.Event()

        async def _trigger_shutdown() -> None:
            await asyncio.sleep(0.1)
            shutdown.set()

        await asyncio.gather(
            run(settings=settings, shutdown_event=shutdown, source=source),
            _trigger_shutdown(),
        )

        health = json.loads((tmp_path / "health.json").read_text())
        assert health["consecutive_failures"] >= 2
        assert health["last_success_ts"] is None
        assert health["source_connected"] is False


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


class TestEntrypoint:
    """Signal handling and async_main wiring."""

    def test_handle_signal_sets_event(self) -> None:
        event = asyncio.Event()
        _handle_signal(event)
        assert event.is_set()

    @pytest.mark.asyncio
    async def test_async_main_loads_settings_and_runs(
        self, env_vars_required_only: dict[str, str]
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            with (
                patch("exporter.src.main.configure_logging") as mock_logging,
                patch("exporter.src.main.run", new_callable=AsyncMock) as mock_run,
            ):
                await async_main()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

        mock_logging.assert_called_once_with("INFO")
        mock_run.assert_awaited_once()
        settings = mock_run.call_args.kwargs["settings"]
        assert settings.winpower_url == "http://10.0.0.20:8081"
        assert isinstance(mock_run.call_args.kwargs["shutdown_event"], asyncio.Event)

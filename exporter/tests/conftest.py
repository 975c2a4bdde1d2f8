"""
Shared test fixtures for exporter tests.

Provides environment variable fixtures for ExporterSettings tests, a manual
millisecond clock and an in-memory sample store with injectable failures.
All exporter env vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio

import pytest
from exporter.src.errors import StorageError
from exporter.src.models import PersistedSample

# All ExporterSettings environment variable names, used for cleanup.
_ALL_EXPORTER_ENV_VARS = (
    "WINPOWER_URL",
    "WINPOWER_USERNAME",
    "WINPOWER_PASSWORD",
    "WINPOWER_TIMEOUT_S",
    "WINPOWER_VERIFY_TLS",
    "WINPOWER_PAGE_SIZE",
    "WINPOWER_TOKEN_TTL_S",
    "COLLECTION_INTERVAL_S",
    "COLLECTION_TIMEOUT_S",
    "SHUTDOWN_TIMEOUT_S",
    "ENERGY_PRECISION",
    "ENERGY_MAX_INTERVAL_S",
    "ENERGY_GAP_POLICY",
    "ENERGY_NEGATIVE_POWER_ALLOWED",
    "ENERGY_NEGATIVE_POWER_POLICY",
    "ENERGY_CLAMP_NEGATIVE_TOTAL",
    "ENERGY_ENABLE_STATS",
    "STORAGE_PATH",
    "HEALTH_PATH",
    "LOG_LEVEL",
)

START_MS = 1_760_000_000_000
"""Arbitrary fixed epoch-ms starting point for the manual clock."""


@pytest.fixture(autouse=True)
def _clean_exporter_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all exporter env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_EXPORTER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for ExporterSettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "WINPOWER_URL": "https://winpower.example.com:8081/",
        "WINPOWER_USERNAME": "admin",
        "WINPOWER_PASSWORD": "s3cret-pass",
        "WINPOWER_TIMEOUT_S": "15",
        "WINPOWER_VERIFY_TLS": "false",
        "WINPOWER_PAGE_SIZE": "50",
        "WINPOWER_TOKEN_TTL_S": "1200",
        "COLLECTION_INTERVAL_S": "10",
        "COLLECTION_TIMEOUT_S": "20",
        "SHUTDOWN_TIMEOUT_S": "5",
        "ENERGY_PRECISION": "0.1",
        "ENERGY_MAX_INTERVAL_S": "600",
        "ENERGY_GAP_POLICY": "cap",
        "ENERGY_NEGATIVE_POWER_ALLOWED": "false",
        "ENERGY_NEGATIVE_POWER_POLICY": "reject",
        "ENERGY_CLAMP_NEGATIVE_TOTAL": "true",
        "ENERGY_ENABLE_STATS": "false",
        "STORAGE_PATH": "/tmp/test-energy.db",
        "HEALTH_PATH": "/tmp/test-health.json",
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {
        "WINPOWER_URL": "http://10.0.0.20:8081",
        "WINPOWER_USERNAME": "operator",
        "WINPOWER_PASSWORD": "pw-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class ManualClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class InMemorySampleStore:
    """Dict-backed stand-in for SampleStore.

    Device ids listed in ``failing_reads`` / ``failing_writes`` raise
    StorageError; exceptions in ``read_errors`` are raised as-is. Every
    read and write is appended to ``events`` so tests can assert on
    ordering; ``delay`` yields to the event loop inside each operation.
    """

    def __init__(self, clock: ManualClock, delay: float | None = None) -> None:
        self.samples: dict[str, PersistedSample] = {}
        self.failing_reads: set[str] = set()
        self.failing_writes: set[str] = set()
        self.read_errors: dict[str, Exception] = {}
        self.events: list[tuple[str, str]] = []
        self._clock = clock
        self._delay = delay

    async def read(self, device_id: str) -> PersistedSample:
        self.events.append(("read", device_id))
        if self._delay is not None:
            await asyncio.sleep(self._delay)
        if device_id in self.read_errors:
            raise self.read_errors[device_id]
        if device_id in self.failing_reads:
            raise StorageError("read", device_id, RuntimeError("injected read failure"))
        sample = self.samples.get(device_id)
        if sample is None:
            return PersistedSample(timestamp_ms=self._clock(), energy_wh=0.0)
        return sample

    async def write(self, device_id: str, sample: PersistedSample) -> None:
        self.events.append(("write", device_id))
        if self._delay is not None:
            await asyncio.sleep(self._delay)
        if device_id in self.failing_writes:
            raise StorageError("write", device_id, RuntimeError("injected write failure"))
        self.samples[device_id] = sample


@pytest.fixture()
def clock() -> ManualClock:
    """A manual clock starting at START_MS."""
    return ManualClock()


@pytest.fixture()
def memory_store(clock: ManualClock) -> InMemorySampleStore:
    """An empty in-memory sample store sharing the manual clock."""
    return InMemorySampleStore(clock)


@pytest.fixture()
def yielding_store(clock: ManualClock) -> InMemorySampleStore:
    """An in-memory store that yields to the event loop on every operation."""
    return InMemorySampleStore(clock, delay=0)

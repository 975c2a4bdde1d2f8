"""
Error taxonomy for the WinPower energy exporter.

Every failure the pipeline can raise is a subclass of ExporterError and is
tagged with an ErrorKind so callers can tell a batch-level failure (the whole
cycle is lost) from a device-level one (a single device is affected) or a
configuration/wiring mistake. Callers classify errors with ``match`` on the
exception class and its attributes, never by comparing message strings.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from exporter.src.models import CollectionResult


class ErrorKind(StrEnum):
    """Coarse classification of exporter failures."""

    BATCH = "batch"
    DEVICE = "device"
    CONFIG = "config"


class ExporterError(Exception):
    """Base class for all exporter errors."""

    kind: ErrorKind = ErrorKind.BATCH


# ---------------------------------------------------------------------------
# Configuration / wiring errors
# ---------------------------------------------------------------------------


class ConfigError(ExporterError):
    """Invalid construction parameters."""

    kind = ErrorKind.CONFIG


class InvalidContextError(ConfigError):
    """No cancellation context was supplied, or it was already cancelled."""


class NilDependencyError(ConfigError):
    """A required collaborator was not provided at construction time.

    Args:
        dependency: Name of the missing collaborator.
    """

    def __init__(self, dependency: str) -> None:
        super().__init__(f"nil dependency provided: {dependency}")
        self.dependency = dependency


# ---------------------------------------------------------------------------
# Batch-level errors
# ---------------------------------------------------------------------------


class SourceCollectionError(ExporterError):
    """The device snapshot source call failed; the whole cycle is aborted.

    Attributes:
        cause: The underlying exception raised by the source.
        result: The failed CollectionResult (``success=False``, no devices),
            attached by the collector so callers still get a result record.
    """

    kind = ErrorKind.BATCH

    def __init__(
        self,
        cause: BaseException,
        result: CollectionResult | None = None,
    ) -> None:
        super().__init__(f"device data collection failed: {cause}")
        self.cause = cause
        self.result = result


class CollectionCancelledError(ExporterError):
    """A collection cycle was cancelled while work was in flight."""

    kind = ErrorKind.BATCH


class ShutdownTimeoutError(ExporterError):
    """The scheduler did not stop within its graceful shutdown timeout."""

    kind = ErrorKind.BATCH


class SourceError(ExporterError):
    """Base class for errors raised by a concrete device source."""

    kind = ErrorKind.BATCH


class AuthenticationError(SourceError):
    """The device source rejected our credentials or login failed."""


class SourceResponseError(SourceError):
    """The device source answered with an error code or malformed body.

    Args:
        message: Human readable description.
        code: Vendor response code, when one was returned.
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Device-level errors
# ---------------------------------------------------------------------------


class DeviceError(ExporterError):
    """A failure scoped to a single device.

    Args:
        device_id: The device the failure belongs to.
        message: Human readable description.
        cause: Optional underlying exception.
    """

    kind = ErrorKind.DEVICE

    def __init__(
        self,
        device_id: str,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.device_id = device_id
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        text = f"device {self.device_id}: {self.message}" if self.device_id else self.message
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text


class AccountingError(DeviceError):
    """The energy calculation for one device failed."""


class InvalidDeviceIdError(AccountingError):
    """The device id was empty."""

    def __init__(self) -> None:
        super().__init__("", "invalid device ID: device ID cannot be empty")


class InvalidPowerError(AccountingError):
    """The power reading was not usable (non-finite, or rejected negative)."""


class ConversionError(DeviceError):
    """A snapshot could not be mapped to a DeviceCollectionInfo."""


class StorageError(DeviceError):
    """A persistent store read or write failed.

    Args:
        operation: ``"read"`` or ``"write"`` (or another store operation).
        device_id: The device whose record was being accessed.
        cause: Optional underlying exception.
    """

    def __init__(
        self,
        operation: str,
        device_id: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(device_id, f"storage {operation} failed", cause)
        self.operation = operation

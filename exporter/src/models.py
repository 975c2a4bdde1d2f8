"""
Pydantic models shared by the collection and accounting pipeline.

Defines the per-poll DeviceSnapshot delivered by a device source, the
per-cycle DeviceCollectionInfo and CollectionResult built by the collector,
the PersistedSample kept per device by the store, and the immutable
AccountingConfig used by the energy engine.

Readings accept the WinPower camelCase keys (``loadTotalWatt``) as well as
the snake_case field names, so a source can validate vendor ``realtime``
maps directly.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _blank_to_zero(value: Any) -> Any:
    """WinPower reports missing numeric readings as empty strings."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0
    return value


def _as_text(value: Any) -> Any:
    """Status fields arrive as strings or bare numbers depending on firmware."""
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


Reading = Annotated[float, BeforeValidator(_blank_to_zero)]
"""Numeric reading; blank strings read as 0, numeric strings are coerced."""

WholeReading = Annotated[int, BeforeValidator(_blank_to_zero)]

StatusText = Annotated[str, BeforeValidator(_as_text)]


# ---------------------------------------------------------------------------
# Device snapshot (source output)
# ---------------------------------------------------------------------------


class RealtimeReadings(BaseModel):
    """Electrical, battery and status readings for one device at one poll.

    ``load_total_watt`` is the active power in watts and the sole input to
    energy accounting. Negative values are legal (devices feeding power back).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    load_total_watt: Reading = Field(default=0.0, alias="loadTotalWatt")

    input_volt_1: Reading = Field(default=0.0, alias="inputVolt1")
    input_freq: Reading = Field(default=0.0, alias="inputFreq")
    output_volt_1: Reading = Field(default=0.0, alias="outputVolt1")
    output_current_1: Reading = Field(default=0.0, alias="outputCurrent1")
    output_freq: Reading = Field(default=0.0, alias="outputFreq")

    load_percent: Reading = Field(default=0.0, alias="loadPercent")
    load_total_va: Reading = Field(default=0.0, alias="loadTotalVa")
    load_watt_1: Reading = Field(default=0.0, alias="loadWatt1")
    load_va_1: Reading = Field(default=0.0, alias="loadVa1")

    is_charging: bool = Field(default=False, alias="isCharging")
    bat_volt_p: Reading = Field(default=0.0, alias="batVoltP")
    bat_capacity: Reading = Field(default=0.0, alias="batCapacity")
    bat_remain_time: WholeReading = Field(default=0, alias="batRemainTime")
    battery_status: StatusText = Field(default="", alias="batteryStatus")

    ups_temperature: Reading = Field(default=0.0, alias="upsTemperature")
    mode: StatusText = ""
    status: StatusText = ""
    test_status: StatusText = Field(default="", alias="testStatus")
    fault_code: StatusText = Field(default="", alias="faultCode")

    @field_validator("is_charging", mode="before")
    @classmethod
    def _charging_flag(cls, v: Any) -> Any:
        """Accept the vendor's "0"/"1" and blank charging flags."""
        if v is None or v == "":
            return False
        return v


class DeviceSnapshot(BaseModel):
    """One device's readings from a single poll of the device source.

    Attributes:
        device_id: Stable vendor device identifier.
        device_name: Display name (vendor alias).
        device_type: Vendor device type code.
        device_model: Device model string.
        connected: Whether the vendor reports the device as reachable.
        collected_at: When the source collected this snapshot.
        realtime: The reading bundle.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1)
    device_name: str = ""
    device_type: int = 0
    device_model: str = ""
    connected: bool = False
    collected_at: datetime
    realtime: RealtimeReadings = Field(default_factory=RealtimeReadings)

    @property
    def active_power_w(self) -> float:
        """Active power in watts used for energy accounting."""
        return self.realtime.load_total_watt


# ---------------------------------------------------------------------------
# Collection results
# ---------------------------------------------------------------------------


class DeviceCollectionInfo(BaseModel):
    """Flattened per-device record produced by one collection cycle.

    Carries every snapshot field plus the energy accounting outcome. All
    numeric readings must be finite; a snapshot carrying NaN or infinity
    fails conversion into this model.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    # Identity
    device_id: str
    device_name: str = ""
    device_type: int = 0
    device_model: str = ""
    connected: bool = False
    last_update_time: datetime | None = None

    # Electrical
    input_volt_1: float = 0.0
    input_freq: float = 0.0
    output_volt_1: float = 0.0
    output_current_1: float = 0.0
    output_freq: float = 0.0

    # Load and power
    load_percent: float = 0.0
    load_total_watt: float = 0.0
    load_total_va: float = 0.0
    load_watt_1: float = 0.0
    load_va_1: float = 0.0

    # Battery
    is_charging: bool = False
    bat_volt_p: float = 0.0
    bat_capacity: float = 0.0
    bat_remain_time: int = 0
    battery_status: str = ""

    # UPS status
    ups_temperature: float = 0.0
    mode: str = ""
    status: str = ""
    test_status: str = ""
    fault_code: str = ""

    # Energy accounting outcome
    energy_calculated: bool = False
    energy_value_wh: float = 0.0
    error_msg: str | None = None


class CollectionResult(BaseModel):
    """Aggregated outcome of one collection cycle.

    ``success`` reflects only the batch-level source call: it stays True when
    individual devices failed accounting.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    device_count: int
    devices: dict[str, DeviceCollectionInfo] = Field(default_factory=dict)
    collection_time: datetime
    duration: timedelta = timedelta(0)
    error_message: str | None = None

    @property
    def energy_calculated_count(self) -> int:
        """Number of devices whose energy was accounted this cycle."""
        return sum(1 for info in self.devices.values() if info.energy_calculated)

    @property
    def failed_device_ids(self) -> list[str]:
        """Ids of devices that carry an error this cycle."""
        return sorted(
            device_id for device_id, info in self.devices.items() if info.error_msg
        )


# ---------------------------------------------------------------------------
# Persistence and accounting configuration
# ---------------------------------------------------------------------------


class PersistedSample(BaseModel):
    """Last recorded sample for a device: the integration baseline.

    Attributes:
        timestamp_ms: Unix epoch milliseconds of the sample.
        energy_wh: Cumulative energy total in watt-hours (may be negative
            for net exporters).
    """

    model_config = ConfigDict(frozen=True)

    timestamp_ms: int = Field(ge=0)
    energy_wh: float = 0.0

    @field_validator("energy_wh")
    @classmethod
    def energy_must_be_finite(cls, v: float) -> float:
        """Reject NaN and infinite totals."""
        if not math.isfinite(v):
            raise ValueError("energy value must be finite")
        return v


class AccountingConfig(BaseModel):
    """Immutable energy accounting settings shared by every calculation.

    Attributes:
        precision: Rounding unit for cumulative totals in Wh.
        negative_power_allowed: Whether negative active power is integrated.
        negative_power_policy: What to do with negative power when it is not
            allowed: ``"zero"`` credits nothing for the interval, ``"reject"``
            fails the calculation.
        max_interval_s: Longest plausible time between two samples.
        gap_policy: How to treat a longer interval: ``"drop"`` credits
            nothing and re-seeds the window, ``"cap"`` integrates over
            ``max_interval_s`` only.
        clamp_negative_total: Floor cumulative totals at zero.
        enable_stats: Keep running calculation statistics.
        slow_calculation_s: Calculations slower than this log a warning.
    """

    model_config = ConfigDict(frozen=True)

    precision: float = Field(default=0.01, gt=0)
    negative_power_allowed: bool = True
    negative_power_policy: Literal["zero", "reject"] = "zero"
    max_interval_s: float = Field(default=3600.0, gt=0)
    gap_policy: Literal["drop", "cap"] = "drop"
    clamp_negative_total: bool = False
    enable_stats: bool = True
    slow_calculation_s: float = Field(default=1.0, gt=0)

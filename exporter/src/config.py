"""
Exporter daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded hosts or credentials.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

import logging
from typing import Literal

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings

from exporter.src.models import AccountingConfig


class ExporterSettings(BaseSettings):
    """Exporter daemon configuration.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        winpower_url: WinPower base URL (http or https).
        winpower_username: WinPower login user.
        winpower_password: WinPower login password.
        winpower_timeout_s: Per-request timeout against WinPower.
        winpower_verify_tls: Verify the WinPower TLS certificate.
        winpower_page_size: Devices requested per device list call.
        winpower_token_ttl_s: Re-login once the cached token is this old.
        collection_interval_s: Seconds between collection cycles.
        collection_timeout_s: Upper bound for a single collection cycle.
        shutdown_timeout_s: Graceful shutdown wait for the scheduler.
        energy_precision: Rounding unit for cumulative energy in Wh.
        energy_max_interval_s: Longest plausible interval between samples.
        energy_gap_policy: ``drop`` or ``cap`` an interval beyond the bound.
        energy_negative_power_allowed: Integrate negative active power.
        energy_negative_power_policy: ``zero`` or ``reject`` disallowed
            negative power.
        energy_clamp_negative_total: Floor cumulative totals at zero.
        energy_enable_stats: Keep calculation statistics.
        storage_path: SQLite file holding per-device samples.
        health_path: JSON health file path.
        log_level: Root log level name.
    """

    winpower_url: str
    winpower_username: str
    winpower_password: str
    winpower_timeout_s: float = 10.0
    winpower_verify_tls: bool = True
    winpower_page_size: int = 100
    winpower_token_ttl_s: float = 3000.0

    collection_interval_s: float = 5.0
    collection_timeout_s: float = 30.0
    shutdown_timeout_s: float = 30.0

    energy_precision: float = 0.01
    energy_max_interval_s: float = 3600.0
    energy_gap_policy: Literal["drop", "cap"] = "drop"
    energy_negative_power_allowed: bool = True
    energy_negative_power_policy: Literal["zero", "reject"] = "zero"
    energy_clamp_negative_total: bool = False
    energy_enable_stats: bool = True

    storage_path: str = "/data/energy.db"
    health_path: str = "/data/health.json"
    log_level: str = "INFO"

    @field_validator("winpower_url")
    @classmethod
    def winpower_url_must_be_http(cls, v: str) -> str:
        """Validate that the WinPower URL has an http(s) scheme."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(
                f"WINPOWER_URL must start with http:// or https:// (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator(
        "winpower_timeout_s",
        "winpower_token_ttl_s",
        "collection_interval_s",
        "collection_timeout_s",
        "shutdown_timeout_s",
        "energy_precision",
        "energy_max_interval_s",
    )
    @classmethod
    def must_be_positive(cls, v: float, info: ValidationInfo) -> float:
        """Validate that durations and the precision are positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name.upper()} must be > 0")
        return v

    @field_validator("winpower_page_size")
    @classmethod
    def page_size_must_be_valid(cls, v: int) -> int:
        """Validate page size is between 1 and 1000."""
        if v < 1 or v > 1000:
            raise ValueError("WINPOWER_PAGE_SIZE must be >= 1 and <= 1000")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate the log level is a standard logging level name."""
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"LOG_LEVEL must be a logging level name (got: '{v}')")
        return level

    def accounting_config(self) -> AccountingConfig:
        """Build the immutable energy accounting configuration."""
        return AccountingConfig(
            precision=self.energy_precision,
            negative_power_allowed=self.energy_negative_power_allowed,
            negative_power_policy=self.energy_negative_power_policy,
            max_interval_s=self.energy_max_interval_s,
            gap_policy=self.energy_gap_policy,
            clamp_negative_total=self.energy_clamp_negative_total,
            enable_stats=self.energy_enable_stats,
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

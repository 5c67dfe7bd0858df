"""Settings loader for the prepaid meter backend."""
from __future__ import annotations

from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MeterSettings(BaseSettings):
    tariff_per_kwh: int = Field(default=1000, env="METER_TARIFF_PER_KWH")
    time_accel: float = Field(default=1.0, env="METER_TIME_ACCEL")
    timezone: Optional[str] = Field(default=None, env="METER_TIMEZONE")

    data_path: Path = Field(default=Path("/app/data/meters.json"), env="METER_DATA_PATH")

    low_balance_threshold: int = Field(default=10000, env="METER_LOW_BALANCE_THRESHOLD")
    history_days: int = Field(default=5, env="METER_HISTORY_DAYS")
    accrual_max_retries: int = Field(default=3, env="METER_ACCRUAL_MAX_RETRIES")
    sweep_interval_seconds: int = Field(default=60, env="METER_SWEEP_INTERVAL_SECONDS")

    api_host: str = Field(default="0.0.0.0", env="METER_API_HOST")
    api_port: int = Field(default=8080, env="METER_API_PORT")
    api_root_path: str = Field(default="", env="METER_API_ROOT_PATH")
    api_admin_token: Optional[str] = Field(default=None, env="METER_API_ADMIN_TOKEN")

    model_config = SettingsConfigDict(
        env_prefix="METER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("tariff_per_kwh", "api_port", "history_days", "accrual_max_retries")
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("low_balance_threshold", "sweep_interval_seconds")
    @classmethod
    def validate_non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Value must not be negative")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if not candidate:
            return None
        try:
            ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {candidate}") from exc
        return candidate

    @field_validator("api_admin_token")
    @classmethod
    def blank_token_is_unset(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip() or None


settings = MeterSettings()

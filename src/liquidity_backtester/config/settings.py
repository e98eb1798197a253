"""Configuration management for the backtester."""

from __future__ import annotations

import os
import tomllib
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, cast

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.constants import DEFAULT_CHECKPOINT_INTERVAL, SYSTEM_USER

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "BACKTEST_PROFILE"
DEFAULT_PROFILE = "default"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    if not data:
        return {}, DEFAULT_PROFILE
    base_section = cast(Dict[str, Any], data.get(DEFAULT_PROFILE, {}))
    requested = os.getenv(PROFILE_ENV_VAR)
    if not requested:
        profile_section = base_section.get("profile")
        if isinstance(profile_section, dict):
            requested = cast(str, profile_section.get("active", DEFAULT_PROFILE))
        elif isinstance(profile_section, str):
            requested = profile_section
    requested = (requested or DEFAULT_PROFILE).lower()

    if requested != DEFAULT_PROFILE and requested in data:
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested])), requested
    if base_section:
        return base_section, DEFAULT_PROFILE
    # Flat files without profile tables are taken as-is.
    return data, DEFAULT_PROFILE


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged, active = _select_profile(payload)
    merged = {k: v for k, v in merged.items()}
    profile_section = merged.get("profile")
    profile_section = dict(profile_section) if isinstance(profile_section, dict) else {}
    profile_section["active"] = active
    profile_section.setdefault("config_file", str(path))
    merged["profile"] = profile_section
    return merged, path


class ProfileConfig(BaseModel):
    """Which configuration profile is active and where it was loaded from."""

    active: str = Field(default=DEFAULT_PROFILE)
    config_file: Optional[Path] = None


class BacktestConfig(BaseModel):
    """Replay window, ledger seed, and driver tuning."""

    start_date: date = Field(default=date(2021, 5, 5))
    end_date: date = Field(default=date(2021, 11, 6))
    checkpoint_interval: int = Field(default=DEFAULT_CHECKPOINT_INTERVAL, ge=1)
    system_user: str = Field(default=SYSTEM_USER, min_length=1)
    initial_token0: int = Field(default=2_000 * 10**6, ge=0)
    initial_token1: int = Field(default=0, ge=0)
    # "package.module:callable" returning a CorePool for a PoolConfig.
    pool_factory: Optional[str] = None

    @field_validator("pool_factory")
    @classmethod
    def _validate_factory_path(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        module, sep, attr = value.partition(":")
        if not sep or not module or not attr:
            raise ValueError(f"pool_factory must look like 'module:attribute', got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "BacktestConfig":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class StorageConfig(BaseModel):
    """SQLite locations for the event store and the rebalance log sink."""

    event_database_path: Path = Field(default=Path("./events.sqlite3"))
    log_database_path: Path = Field(default=Path("./rebalance_log.sqlite3"))


class StrategyConfig(BaseModel):
    """Parameters of the bundled volatility band strategy."""

    price_window_days: int = Field(default=7, ge=2)
    std_ratio: float = Field(default=1.96, gt=0.0)
    owner: str = Field(default="0x01", min_length=1)


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "BacktestConfig",
    "MonitoringConfig",
    "ProfileConfig",
    "StorageConfig",
    "StrategyConfig",
    "get_app_config",
]

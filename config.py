"""Centralized configuration loading for the continuity engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


VALID_DEPTHS = {"shallow", "medium", "deep"}


@dataclass(frozen=True)
class AppConfig:
    """Typed application configuration loaded from environment variables."""

    openrouter_api_key: str | None
    continuity_db_path: Path
    item_db_path: Path
    failure_log_dir: Path
    max_external_retries: int
    generation_timeout_seconds: float
    io_timeout_seconds: float
    daily_budget_cents: int
    snapshot_ttl_minutes: int
    snapshot_retention_days: int
    cleanup_probability: float
    default_depth: str
    default_lookback_hours: int
    enable_generation: bool
    api_secret: str | None

    @property
    def generation_configured(self) -> bool:
        return self.enable_generation and bool(self.openrouter_api_key)


_REQUIRED_ENV_VARS = (
    "CONTINUITY_DB_PATH",
    "ITEM_DB_PATH",
    "FAILURE_LOG_DIR",
)


def _get_required_env(name: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        raise ConfigError(f"Missing required environment variable: {name}")
    return raw.strip()


def _get_optional_env(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _parse_bool(name: str, raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {raw!r}")


def _parse_int(name: str, raw: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got {value}")
    return value


def _parse_float(
    name: str, raw: str, minimum: float | None = None, maximum: float | None = None
) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number value for {name}: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got {value}")
    return value


def _validate_required_envs() -> None:
    for name in _REQUIRED_ENV_VARS:
        _get_required_env(name)


@lru_cache(maxsize=1)
def get_config(load_dotenv_file: bool = True) -> AppConfig:
    """Load and cache app configuration."""
    if load_dotenv_file:
        load_dotenv()

    _validate_required_envs()

    default_depth = (_get_optional_env("DEFAULT_DEPTH") or "shallow").lower()
    if default_depth not in VALID_DEPTHS:
        raise ConfigError(
            f"Invalid DEFAULT_DEPTH: {default_depth!r}. Expected one of {sorted(VALID_DEPTHS)}"
        )

    return AppConfig(
        openrouter_api_key=_get_optional_env("OPENROUTER_API_KEY"),
        continuity_db_path=Path(_get_required_env("CONTINUITY_DB_PATH")),
        item_db_path=Path(_get_required_env("ITEM_DB_PATH")),
        failure_log_dir=Path(_get_required_env("FAILURE_LOG_DIR")),
        max_external_retries=_parse_int(
            "MAX_EXTERNAL_RETRIES",
            _get_optional_env("MAX_EXTERNAL_RETRIES") or "2",
            minimum=1,
        ),
        generation_timeout_seconds=_parse_float(
            "GENERATION_TIMEOUT_SECONDS",
            _get_optional_env("GENERATION_TIMEOUT_SECONDS") or "20",
            minimum=1.0,
        ),
        io_timeout_seconds=_parse_float(
            "IO_TIMEOUT_SECONDS",
            _get_optional_env("IO_TIMEOUT_SECONDS") or "5",
            minimum=0.1,
        ),
        daily_budget_cents=_parse_int(
            "DAILY_BUDGET_CENTS",
            _get_optional_env("DAILY_BUDGET_CENTS") or "500",
            minimum=0,
        ),
        snapshot_ttl_minutes=_parse_int(
            "SNAPSHOT_TTL_MINUTES",
            _get_optional_env("SNAPSHOT_TTL_MINUTES") or "15",
            minimum=1,
        ),
        snapshot_retention_days=_parse_int(
            "SNAPSHOT_RETENTION_DAYS",
            _get_optional_env("SNAPSHOT_RETENTION_DAYS") or "14",
            minimum=1,
        ),
        cleanup_probability=_parse_float(
            "CLEANUP_PROBABILITY",
            _get_optional_env("CLEANUP_PROBABILITY") or "0.08",
            minimum=0.0,
            maximum=1.0,
        ),
        default_depth=default_depth,
        default_lookback_hours=_parse_int(
            "DEFAULT_LOOKBACK_HOURS",
            _get_optional_env("DEFAULT_LOOKBACK_HOURS") or "24",
            minimum=1,
        ),
        enable_generation=_parse_bool(
            "ENABLE_GENERATION", _get_optional_env("ENABLE_GENERATION") or "true"
        ),
        api_secret=_get_optional_env("API_SECRET"),
    )


def reset_config_cache() -> None:
    """Clear memoized configuration for tests and process reloads."""
    get_config.cache_clear()

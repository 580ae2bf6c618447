"""Tests for config loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from config import ConfigError, get_config, reset_config_cache

REQUIRED_ENV = {
    "CONTINUITY_DB_PATH": "data/continuity.db",
    "ITEM_DB_PATH": "data/items.db",
    "FAILURE_LOG_DIR": "data/failures",
}

OPTIONAL_ENV = (
    "OPENROUTER_API_KEY",
    "MAX_EXTERNAL_RETRIES",
    "GENERATION_TIMEOUT_SECONDS",
    "IO_TIMEOUT_SECONDS",
    "DAILY_BUDGET_CENTS",
    "SNAPSHOT_TTL_MINUTES",
    "SNAPSHOT_RETENTION_DAYS",
    "CLEANUP_PROBABILITY",
    "DEFAULT_DEPTH",
    "DEFAULT_LOOKBACK_HOURS",
    "ENABLE_GENERATION",
    "API_SECRET",
)


def _apply_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in OPTIONAL_ENV:
        monkeypatch.delenv(key, raising=False)
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)


def test_get_config_applies_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)

    config = get_config(load_dotenv_file=False)

    assert config.continuity_db_path == Path("data/continuity.db")
    assert config.max_external_retries == 2
    assert config.daily_budget_cents == 500
    assert config.snapshot_ttl_minutes == 15
    assert config.snapshot_retention_days == 14
    assert config.cleanup_probability == pytest.approx(0.08)
    assert config.default_depth == "shallow"
    assert config.default_lookback_hours == 24
    assert config.api_secret is None
    assert config.generation_configured is False


def test_get_config_parses_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-v1-test")
    monkeypatch.setenv("DEFAULT_DEPTH", "Deep")
    monkeypatch.setenv("CLEANUP_PROBABILITY", "0.5")
    monkeypatch.setenv("API_SECRET", "s3cret")

    config = get_config(load_dotenv_file=False)

    assert config.default_depth == "deep"
    assert config.cleanup_probability == pytest.approx(0.5)
    assert config.api_secret == "s3cret"
    assert config.generation_configured is True


def test_generation_disabled_by_flag(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-v1-test")
    monkeypatch.setenv("ENABLE_GENERATION", "off")

    config = get_config(load_dotenv_file=False)

    assert config.generation_configured is False


def test_get_config_missing_required_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.delenv("ITEM_DB_PATH", raising=False)

    with pytest.raises(ConfigError, match="ITEM_DB_PATH"):
        get_config(load_dotenv_file=False)


def test_get_config_invalid_depth_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("DEFAULT_DEPTH", "bottomless")

    with pytest.raises(ConfigError, match="DEFAULT_DEPTH"):
        get_config(load_dotenv_file=False)


def test_get_config_probability_out_of_range_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("CLEANUP_PROBABILITY", "1.5")

    with pytest.raises(ConfigError, match="CLEANUP_PROBABILITY"):
        get_config(load_dotenv_file=False)


def test_get_config_invalid_boolean_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("ENABLE_GENERATION", "maybe")

    with pytest.raises(ConfigError, match="ENABLE_GENERATION"):
        get_config(load_dotenv_file=False)

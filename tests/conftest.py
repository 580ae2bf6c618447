"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from config import AppConfig
from continuity.item_store import SqliteItemStore
from continuity.store import ContinuityStore

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    data_dir = tmp_path / "data"
    return AppConfig(
        openrouter_api_key="sk-or-v1-test",
        continuity_db_path=data_dir / "continuity.db",
        item_db_path=data_dir / "items.db",
        failure_log_dir=data_dir / "failures",
        max_external_retries=2,
        generation_timeout_seconds=20.0,
        io_timeout_seconds=5.0,
        daily_budget_cents=500,
        snapshot_ttl_minutes=15,
        snapshot_retention_days=14,
        cleanup_probability=0.08,
        default_depth="shallow",
        default_lookback_hours=24,
        enable_generation=True,
        api_secret=None,
    )


@pytest.fixture
def item_store(tmp_path: Path) -> SqliteItemStore:
    store = SqliteItemStore(tmp_path / "items.db")
    store.initialize()
    return store


@pytest.fixture
def continuity_store(tmp_path: Path) -> ContinuityStore:
    store = ContinuityStore(tmp_path / "continuity.db")
    store.initialize()
    return store

"""Tests for runtime path bootstrap logic."""

from __future__ import annotations

import sqlite3

from config import AppConfig
from continuity.runtime_paths import bootstrap_runtime_paths


def test_bootstrap_runtime_paths_creates_expected_artifacts(app_config: AppConfig) -> None:
    continuity_store, item_store = bootstrap_runtime_paths(app_config)

    assert app_config.failure_log_dir.is_dir()
    assert app_config.continuity_db_path.exists()
    assert app_config.item_db_path.exists()
    assert continuity_store.count_snapshots() == 0
    assert item_store.load_watchlist_terms() == []


def test_bootstrap_runtime_paths_is_repeatable(app_config: AppConfig) -> None:
    bootstrap_runtime_paths(app_config)
    bootstrap_runtime_paths(app_config)

    with sqlite3.connect(app_config.continuity_db_path) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }

    assert {"continuity_state", "continuity_snapshots", "api_usage"} <= tables

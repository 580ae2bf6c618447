"""Runtime directory/database bootstrap helpers."""

from __future__ import annotations

from config import AppConfig
from continuity.item_store import SqliteItemStore
from continuity.store import ContinuityStore


def bootstrap_runtime_paths(config: AppConfig) -> tuple[ContinuityStore, SqliteItemStore]:
    """Create runtime directories and initialize both SQLite databases."""
    config.continuity_db_path.parent.mkdir(parents=True, exist_ok=True)
    config.item_db_path.parent.mkdir(parents=True, exist_ok=True)
    config.failure_log_dir.mkdir(parents=True, exist_ok=True)

    continuity_store = ContinuityStore(
        config.continuity_db_path, busy_timeout_seconds=config.io_timeout_seconds
    )
    continuity_store.initialize()

    item_store = SqliteItemStore(config.item_db_path, busy_timeout_seconds=config.io_timeout_seconds)
    item_store.initialize()
    return continuity_store, item_store

"""Tests for continuity state resolution and acknowledgment."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from continuity.state import StateResolver, resolve_watermark
from continuity.store import ContinuityStore, ContinuityStoreError
from models import Depth

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class _FailingStore:
    def __getattr__(self, name: str) -> Any:
        def _fail(*_: Any, **__: Any) -> Any:
            raise ContinuityStoreError(f"{name} unavailable")

        return _fail


def test_resolve_creates_state_with_default_depth(continuity_store: ContinuityStore) -> None:
    resolver = StateResolver(continuity_store, default_depth=Depth.MEDIUM)

    state = resolver.resolve("reader-1")

    assert state.last_seen_at is None
    assert state.preferred_depth == Depth.MEDIUM
    assert continuity_store.get_state("reader-1") is not None


def test_resolve_falls_back_when_store_fails() -> None:
    resolver = StateResolver(_FailingStore())  # type: ignore[arg-type]

    state = resolver.resolve("reader-1")

    assert state.client_id == "reader-1"
    assert state.last_seen_at is None
    assert state.preferred_depth == Depth.SHALLOW


def test_acknowledge_is_idempotent(continuity_store: ContinuityStore) -> None:
    resolver = StateResolver(continuity_store)
    until = "2026-03-02T10:00:00Z"

    first = resolver.acknowledge("reader-1", "deep", until, now=NOW)
    second = resolver.acknowledge("reader-1", "deep", until, now=NOW)

    assert first == second
    stored = continuity_store.get_state("reader-1")
    assert stored is not None
    assert stored.last_seen_at == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    assert stored.preferred_depth == Depth.DEEP


def test_acknowledge_clamps_future_watermark(continuity_store: ContinuityStore) -> None:
    resolver = StateResolver(continuity_store)
    future = (NOW + timedelta(seconds=30)).isoformat()

    result = resolver.acknowledge("reader-1", None, future, now=NOW)

    assert result.last_seen_at == NOW
    assert result.preferred_depth == Depth.SHALLOW


def test_acknowledge_invalid_timestamp_means_now(continuity_store: ContinuityStore) -> None:
    resolver = StateResolver(continuity_store)

    result = resolver.acknowledge("reader-1", "10m", "not-a-date", now=NOW)

    assert result.last_seen_at == NOW
    assert result.preferred_depth == Depth.MEDIUM


def test_acknowledge_survives_persistence_failure() -> None:
    resolver = StateResolver(_FailingStore())  # type: ignore[arg-type]

    result = resolver.acknowledge("reader-1", "deep", None, now=NOW)

    assert result.to_dict() == {
        "clientId": "reader-1",
        "lastSeenAt": NOW.isoformat(),
        "preferredDepth": "deep",
    }


def test_touch_failure_is_swallowed() -> None:
    StateResolver(_FailingStore()).touch("reader-1", Depth.SHALLOW, "hash")  # type: ignore[arg-type]


def test_resolve_watermark_accepts_datetimes() -> None:
    naive = datetime(2026, 3, 1, 8, 0)

    assert resolve_watermark(naive, now=NOW) == datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
    assert resolve_watermark(None, now=NOW) == NOW

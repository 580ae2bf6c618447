"""Content-addressed cache of computed since-last-read snapshots."""

from __future__ import annotations

import hashlib
import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from continuity.store import ContinuityStore, ContinuityStoreError, SnapshotRecord
from models import (
    Brief,
    Citation,
    Depth,
    DepthConfig,
    Highlight,
    SnapshotCounts,
    SnapshotPayload,
    SnapshotState,
)

logger = logging.getLogger(__name__)

SNAPSHOT_HASH_LENGTH = 24


def make_snapshot_hash(
    client_id: str,
    depth: Depth,
    since_at_iso: str,
    article_ids: Sequence[str],
) -> str:
    """Hash the inputs that fully determine a snapshot.

    Article ids are taken in ranked order, so a reordering of the same set
    yields a different snapshot.
    """
    material = "|".join([client_id, depth.value, since_at_iso, ",".join(article_ids)])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:SNAPSHOT_HASH_LENGTH]


class SnapshotCache:
    """TTL-bounded snapshot lookups with opportunistic retention cleanup."""

    def __init__(
        self,
        store: ContinuityStore,
        *,
        ttl_minutes: int = 15,
        retention_days: int = 14,
        cleanup_probability: float = 0.08,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._ttl = timedelta(minutes=ttl_minutes)
        self._retention = timedelta(days=retention_days)
        self._cleanup_probability = cleanup_probability
        self._rng = rng or random.Random()

    def lookup(
        self,
        client_id: str,
        snapshot_hash: str,
        depth: Depth,
        *,
        now: datetime | None = None,
    ) -> SnapshotRecord | None:
        """Return a snapshot generated within the TTL, or None (errors count as a miss)."""
        cutoff = (now or datetime.now(UTC)) - self._ttl
        try:
            return self._store.get_snapshot(
                client_id, snapshot_hash, depth, generated_after=cutoff
            )
        except ContinuityStoreError as exc:
            logger.warning("Snapshot lookup failed for %s/%s: %s", client_id, snapshot_hash, exc)
            return None

    def store(self, record: SnapshotRecord) -> None:
        try:
            self._store.upsert_snapshot(record)
        except ContinuityStoreError as exc:
            logger.warning(
                "Snapshot write failed for %s/%s: %s", record.client_id, record.snapshot_hash, exc
            )

    def maybe_cleanup(self, *, now: datetime | None = None) -> int | None:
        """Delete expired snapshots on a random fraction of calls.

        Returns the number of rows removed, or None when the sweep did not run.
        """
        if self._rng.random() >= self._cleanup_probability:
            return None

        cutoff = (now or datetime.now(UTC)) - self._retention
        try:
            removed = self._store.delete_snapshots_before(cutoff)
        except ContinuityStoreError as exc:
            logger.warning("Snapshot cleanup failed: %s", exc)
            return None

        if removed:
            logger.info("Removed %d expired continuity snapshots", removed)
        return removed


def hydrate_snapshot(
    record: SnapshotRecord,
    *,
    state: SnapshotState,
    depth_config: DepthConfig,
    fallback_brief: Callable[[Sequence[Highlight]], Brief],
) -> SnapshotPayload:
    """Rebuild a cached payload for the current request.

    Lists are re-truncated to the current depth's limits and the state echo is
    replaced wholesale, so a snapshot cached at a deeper depth is still safe to
    serve.
    """
    payload = record.payload
    highlights = _parse_items(payload.get("highlights"), Highlight.from_dict)[
        : depth_config.highlight_limit
    ]
    citations = _parse_items(payload.get("citations"), Citation.from_dict)[
        : depth_config.citation_limit
    ]

    counts_raw = payload.get("counts")
    try:
        counts = SnapshotCounts.from_dict(counts_raw if isinstance(counts_raw, dict) else {})
    except (TypeError, ValueError):
        counts = SnapshotCounts(new_articles=len(highlights), new_threads=0, watchlist_hits=0)

    brief = parse_cached_brief(payload.get("brief"))
    if brief is None:
        logger.warning("Cached brief for %s is malformed; using fallback", record.snapshot_hash)
        brief = fallback_brief(highlights)

    return SnapshotPayload(
        state=replace(state, cached=True),
        counts=counts,
        highlights=tuple(highlights),
        brief=brief,
        citations=tuple(citations),
    )


def parse_cached_brief(raw: Any) -> Brief | None:
    if not isinstance(raw, dict):
        return None
    headline = raw.get("headline")
    summary = raw.get("summary")
    if not isinstance(headline, str) or not headline.strip():
        return None
    if not isinstance(summary, str) or not summary.strip():
        return None

    lists: dict[str, tuple[str, ...]] = {}
    for key in ("changed", "unchanged", "watchNext"):
        value = raw.get(key, [])
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            return None
        lists[key] = tuple(value)

    return Brief(
        headline=headline,
        summary=summary,
        changed=lists["changed"],
        unchanged=lists["unchanged"],
        watch_next=lists["watchNext"],
    )


def _parse_items(raw: Any, parse: Callable[[dict[str, Any]], Any]) -> list[Any]:
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        try:
            items.append(parse(entry))
        except (KeyError, TypeError, ValueError):
            continue
    return items

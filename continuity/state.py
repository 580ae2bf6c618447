"""Per-client continuity state: resolution, acknowledgment, and touch."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from continuity.normalization import ensure_utc, normalize_depth, parse_iso
from continuity.store import ContinuityStore, ContinuityStoreError
from models import AcknowledgeResult, ContinuityState, Depth

logger = logging.getLogger(__name__)


class StateResolver:
    """Load, advance, and touch continuity state.

    Persistence failures never surface to callers: reads fall back to a fresh
    in-memory state and writes are logged and dropped.
    """

    def __init__(self, store: ContinuityStore, *, default_depth: Depth = Depth.SHALLOW) -> None:
        self._store = store
        self._default_depth = default_depth

    def resolve(self, client_id: str) -> ContinuityState:
        """Return the stored state for *client_id*, creating it on first sight."""
        try:
            existing = self._store.get_state(client_id)
            if existing is not None:
                return existing
            return self._store.create_state(client_id, self._default_depth)
        except ContinuityStoreError as exc:
            logger.warning("Continuity state unavailable for %s: %s", client_id, exc)
            return ContinuityState(
                client_id=client_id,
                last_seen_at=None,
                preferred_depth=self._default_depth,
            )

    def acknowledge(
        self,
        client_id: str,
        depth: str | Depth | None,
        until_at: str | datetime | None,
        *,
        now: datetime | None = None,
    ) -> AcknowledgeResult:
        """Move the client's watermark to *until_at*, never past *now*."""
        now_utc = (now or datetime.now(UTC)).astimezone(UTC)
        last_seen_at = resolve_watermark(until_at, now=now_utc)
        preferred_depth = (
            depth if isinstance(depth, Depth) else normalize_depth(depth, self._default_depth)
        )

        try:
            self._store.upsert_acknowledgment(client_id, last_seen_at, preferred_depth)
        except ContinuityStoreError as exc:
            logger.warning("Failed to persist acknowledgment for %s: %s", client_id, exc)

        return AcknowledgeResult(
            client_id=client_id,
            last_seen_at=last_seen_at,
            preferred_depth=preferred_depth,
        )

    def touch(self, client_id: str, depth: Depth, snapshot_hash: str) -> None:
        """Remember the snapshot shown and the depth used; the watermark stays put."""
        try:
            self._store.upsert_touch(client_id, depth, snapshot_hash)
        except ContinuityStoreError as exc:
            logger.warning("Failed to touch continuity state for %s: %s", client_id, exc)


def resolve_watermark(until_at: str | datetime | None, *, now: datetime) -> datetime:
    """Parse an acknowledgment timestamp; invalid input means now, future is clamped."""
    if isinstance(until_at, datetime):
        parsed: datetime | None = ensure_utc(until_at)
    else:
        parsed = parse_iso(until_at)

    if parsed is None or parsed > now:
        return now
    return parsed

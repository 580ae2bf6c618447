"""SQLite persistence for continuity state, snapshot cache, and usage ledger."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from continuity.normalization import ensure_utc, parse_depth
from models import ContinuityState, Depth


class ContinuityStoreError(RuntimeError):
    """Raised when a continuity persistence operation fails."""


@dataclass(frozen=True)
class SnapshotRecord:
    """Persisted snapshot cache row."""

    client_id: str
    snapshot_hash: str
    depth: Depth
    since_at: datetime
    until_at: datetime
    payload: dict[str, Any]
    model_used: str | None
    input_tokens: int
    output_tokens: int
    generated_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Daily generation usage totals."""

    date: str
    input_tokens: int
    output_tokens: int
    cost_cents: int
    call_count: int


class ContinuityStore:
    """SQLite-backed store keyed by client id and snapshot hash."""

    def __init__(self, db_path: Path, *, busy_timeout_seconds: float = 5.0) -> None:
        self.db_path = db_path
        self._busy_timeout_seconds = busy_timeout_seconds

    def initialize(self) -> None:
        """Initialize SQLite tables if they do not exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_state (
                    client_id TEXT PRIMARY KEY,
                    last_seen_at TEXT,
                    preferred_depth TEXT NOT NULL,
                    last_snapshot_hash TEXT,
                    last_snapshot_generated_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_snapshots (
                    client_id TEXT NOT NULL,
                    snapshot_hash TEXT NOT NULL,
                    depth TEXT NOT NULL,
                    since_at TEXT NOT NULL,
                    until_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    model_used TEXT,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    generated_at TEXT NOT NULL,
                    UNIQUE (client_id, snapshot_hash, depth)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_continuity_snapshots_generated
                    ON continuity_snapshots(generated_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_usage (
                    date TEXT PRIMARY KEY,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    cost_cents INTEGER NOT NULL DEFAULT 0,
                    call_count INTEGER NOT NULL DEFAULT 0
                )
                """
            )

    def get_state(self, client_id: str) -> ContinuityState | None:
        """Return continuity state for a client, if any."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT client_id, last_seen_at, preferred_depth,
                       last_snapshot_hash, last_snapshot_generated_at
                FROM continuity_state
                WHERE client_id = ?
                """,
                (client_id,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_state(row)

    def create_state(self, client_id: str, preferred_depth: Depth) -> ContinuityState:
        """Insert a fresh state row; an existing row for the client wins."""
        now = _now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_state (
                    client_id, last_seen_at, preferred_depth, created_at, updated_at
                )
                VALUES (?, NULL, ?, ?, ?)
                ON CONFLICT(client_id) DO NOTHING
                """,
                (client_id, preferred_depth.value, now, now),
            )

        state = self.get_state(client_id)
        if state is None:
            raise ContinuityStoreError(f"Failed to create continuity state for {client_id}")
        return state

    def upsert_acknowledgment(
        self, client_id: str, last_seen_at: datetime, preferred_depth: Depth
    ) -> None:
        """Set the client's watermark and preferred depth (last write wins)."""
        now = _now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_state (
                    client_id, last_seen_at, preferred_depth, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(client_id) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    preferred_depth = excluded.preferred_depth,
                    updated_at = excluded.updated_at
                """,
                (client_id, _to_db(last_seen_at), preferred_depth.value, now, now),
            )

    def upsert_touch(self, client_id: str, preferred_depth: Depth, snapshot_hash: str) -> None:
        """Record the snapshot a client was shown without moving its watermark."""
        now = _now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_state (
                    client_id, last_seen_at, preferred_depth, last_snapshot_hash,
                    last_snapshot_generated_at, created_at, updated_at
                )
                VALUES (?, NULL, ?, ?, ?, ?, ?)
                ON CONFLICT(client_id) DO UPDATE SET
                    preferred_depth = excluded.preferred_depth,
                    last_snapshot_hash = excluded.last_snapshot_hash,
                    last_snapshot_generated_at = excluded.last_snapshot_generated_at,
                    updated_at = excluded.updated_at
                """,
                (client_id, preferred_depth.value, snapshot_hash, now, now, now),
            )

    def get_snapshot(
        self,
        client_id: str,
        snapshot_hash: str,
        depth: Depth,
        *,
        generated_after: datetime,
    ) -> SnapshotRecord | None:
        """Return the cached snapshot for the key if generated after the cutoff."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT client_id, snapshot_hash, depth, since_at, until_at, payload_json,
                       model_used, input_tokens, output_tokens, generated_at
                FROM continuity_snapshots
                WHERE client_id = ? AND snapshot_hash = ? AND depth = ? AND generated_at >= ?
                ORDER BY generated_at DESC
                LIMIT 1
                """,
                (client_id, snapshot_hash, depth.value, _to_db(generated_after)),
            ).fetchone()

        if row is None:
            return None

        try:
            payload = json.loads(row["payload_json"])
        except json.JSONDecodeError as exc:
            raise ContinuityStoreError(f"Corrupt snapshot payload for {snapshot_hash}") from exc
        if not isinstance(payload, dict):
            raise ContinuityStoreError(f"Snapshot payload for {snapshot_hash} is not an object")

        return SnapshotRecord(
            client_id=row["client_id"],
            snapshot_hash=row["snapshot_hash"],
            depth=parse_depth(row["depth"]) or depth,
            since_at=_from_db(row["since_at"]),
            until_at=_from_db(row["until_at"]),
            payload=payload,
            model_used=row["model_used"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            generated_at=_from_db(row["generated_at"]),
        )

    def upsert_snapshot(self, record: SnapshotRecord) -> None:
        """Create or overwrite the snapshot for (client, hash, depth)."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_snapshots (
                    client_id, snapshot_hash, depth, since_at, until_at, payload_json,
                    model_used, input_tokens, output_tokens, generated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(client_id, snapshot_hash, depth) DO UPDATE SET
                    since_at = excluded.since_at,
                    until_at = excluded.until_at,
                    payload_json = excluded.payload_json,
                    model_used = excluded.model_used,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    generated_at = excluded.generated_at
                """,
                (
                    record.client_id,
                    record.snapshot_hash,
                    record.depth.value,
                    _to_db(record.since_at),
                    _to_db(record.until_at),
                    json.dumps(record.payload, sort_keys=True),
                    record.model_used,
                    record.input_tokens,
                    record.output_tokens,
                    _to_db(record.generated_at),
                ),
            )

    def delete_snapshots_before(self, cutoff: datetime) -> int:
        """Delete snapshots generated before *cutoff*; return rows removed."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM continuity_snapshots WHERE generated_at < ?",
                (_to_db(cutoff),),
            )
            return cursor.rowcount

    def count_snapshots(self, client_id: str | None = None) -> int:
        with self._connect() as conn:
            if client_id is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM continuity_snapshots").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM continuity_snapshots WHERE client_id = ?",
                    (client_id,),
                ).fetchone()
        return int(row["n"])

    def get_usage(self, date: str) -> UsageRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT date, input_tokens, output_tokens, cost_cents, call_count
                FROM api_usage
                WHERE date = ?
                """,
                (date,),
            ).fetchone()
        if row is None:
            return None
        return UsageRecord(
            date=row["date"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cost_cents=row["cost_cents"],
            call_count=row["call_count"],
        )

    def add_usage(self, date: str, input_tokens: int, output_tokens: int, cost_cents: int) -> None:
        """Accumulate one generation call into the day's usage row."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_usage (date, input_tokens, output_tokens, cost_cents, call_count)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(date) DO UPDATE SET
                    input_tokens = input_tokens + excluded.input_tokens,
                    output_tokens = output_tokens + excluded.output_tokens,
                    cost_cents = cost_cents + excluded.cost_cents,
                    call_count = call_count + 1
                """,
                (date, input_tokens, output_tokens, cost_cents),
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._busy_timeout_seconds)
        except sqlite3.Error as exc:
            raise ContinuityStoreError(f"Cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise ContinuityStoreError(str(exc)) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


def _row_to_state(row: sqlite3.Row) -> ContinuityState:
    return ContinuityState(
        client_id=row["client_id"],
        last_seen_at=_from_db(row["last_seen_at"]) if row["last_seen_at"] else None,
        preferred_depth=parse_depth(row["preferred_depth"]) or Depth.SHALLOW,
        last_snapshot_hash=row["last_snapshot_hash"],
        last_snapshot_generated_at=(
            _from_db(row["last_snapshot_generated_at"])
            if row["last_snapshot_generated_at"]
            else None
        ),
    )


def _to_db(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def _from_db(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def _now_iso() -> str:
    return _to_db(datetime.now(UTC))

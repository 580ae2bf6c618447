"""Dead-letter files for model output that could not be used."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path


@dataclass(frozen=True)
class GenerationFailure:
    """A completion that was paid for but discarded."""

    snapshot_hash: str
    stage: str
    error: str
    model: str | None
    content: str


def save_dead_letter(
    failure_dir: Path, failure: GenerationFailure, *, now: datetime | None = None
) -> Path:
    """Write *failure* as JSON; one file per occurrence, never overwritten."""
    written_at = (now or datetime.now(UTC)).astimezone(UTC)
    failure_dir.mkdir(parents=True, exist_ok=True)
    stamp = written_at.strftime("%Y%m%dT%H%M%S%fZ")
    path = failure_dir / f"failure_{failure.snapshot_hash}_{failure.stage}_{stamp}.json"
    record = {**asdict(failure), "created_at": written_at.isoformat()}
    path.write_text(json.dumps(record, indent=2, sort_keys=True), encoding="utf-8")
    return path

"""JSON event logging keyed by client, depth, and snapshot."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from typing import Any

_LOGGER_NAME = "continuity_engine"


@dataclass(frozen=True)
class LogContext:
    """Request identity attached to every event of one engine call."""

    client_id: str | None = None
    depth: str | None = None
    snapshot_hash: str | None = None
    request_id: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def with_hash(self, snapshot_hash: str) -> LogContext:
        return replace(self, snapshot_hash=snapshot_hash)

    def with_depth(self, depth: str) -> LogContext:
        return replace(self, depth=depth)

    def as_fields(self) -> dict[str, Any]:
        values = {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if item.name != "extras" and getattr(self, item.name)
        }
        values.update(self.extras)
        return values


class StructuredLogger:
    """One JSON object per line, so a request can be replayed from its events."""

    def __init__(self, name: str = _LOGGER_NAME) -> None:
        self._logger = logging.getLogger(name)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)

    def info(self, event: str, *, context: LogContext | None = None, **extra: Any) -> None:
        self.log(logging.INFO, event, context=context, **extra)

    def warning(self, event: str, *, context: LogContext | None = None, **extra: Any) -> None:
        self.log(logging.WARNING, event, context=context, **extra)

    def error(self, event: str, *, context: LogContext | None = None, **extra: Any) -> None:
        self.log(logging.ERROR, event, context=context, **extra)

    def log(
        self, level: int, event: str, *, context: LogContext | None = None, **extra: Any
    ) -> None:
        record: dict[str, Any] = {
            "event": event,
            "level": logging.getLevelName(level).lower(),
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if context is not None:
            record.update(context.as_fields())
        record.update(extra)
        self._logger.log(level, json.dumps(record, sort_keys=True, default=str))


_default_logger: StructuredLogger | None = None


def get_logger() -> StructuredLogger:
    global _default_logger
    if _default_logger is None:
        _default_logger = StructuredLogger()
    return _default_logger

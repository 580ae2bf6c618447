"""JSON schemas for generated brief fields."""

from __future__ import annotations

_NON_EMPTY_STRING: dict[str, object] = {"type": "string", "minLength": 1, "pattern": r"\S"}

BRIEF_FIELD_SCHEMAS: dict[str, dict[str, object]] = {
    "headline": _NON_EMPTY_STRING,
    "summary": _NON_EMPTY_STRING,
    "changed": {"type": "array", "items": {"type": "string"}},
    "unchanged": {"type": "array", "items": {"type": "string"}},
    "watchNext": {"type": "array", "items": {"type": "string"}},
}

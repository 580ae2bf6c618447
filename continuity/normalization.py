"""Input normalization for client ids, depths, timestamps, and titles."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from urllib.parse import urlparse

from models import DEPTH_ALIASES, Depth

ANONYMOUS_CLIENT_ID = "anonymous"
MAX_CLIENT_ID_LENGTH = 120

_UNSAFE_CLIENT_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")

THREAD_KEY_TOKENS = 7

_TITLE_STOP_WORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "from",
        "that",
        "this",
        "into",
        "over",
        "after",
        "amid",
        "says",
        "said",
        "new",
        "how",
        "why",
        "what",
        "who",
        "are",
        "its",
        "has",
        "have",
        "will",
        "was",
        "not",
    }
)


def normalize_client_id(client_id: str | None) -> str:
    """Strip a caller-supplied client id to a safe, bounded identifier."""
    raw = (client_id or "").strip()
    if not raw:
        return ANONYMOUS_CLIENT_ID
    safe = _UNSAFE_CLIENT_CHARS.sub("", raw)[:MAX_CLIENT_ID_LENGTH]
    return safe or ANONYMOUS_CLIENT_ID


def parse_depth(depth: str | None) -> Depth | None:
    """Return the matching depth, or None for missing or unknown values."""
    if depth is None:
        return None
    normalized = depth.strip().lower()
    if normalized in DEPTH_ALIASES:
        return DEPTH_ALIASES[normalized]
    try:
        return Depth(normalized)
    except ValueError:
        return None


def normalize_depth(depth: str | None, default: Depth = Depth.SHALLOW) -> Depth:
    return parse_depth(depth) or default


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def clamp(value: float, minimum: float, maximum: float) -> float:
    return min(maximum, max(minimum, value))


def source_name_from_url(url: str | None) -> str:
    """Derive a short source label from a URL host."""
    if not url:
        return "Unknown"
    try:
        host = urlparse(url.strip()).netloc.lower()
    except ValueError:
        return "Unknown"
    if host.startswith("www."):
        host = host[4:]
    return host or "Unknown"


def title_thread_key(title: str) -> str:
    """Order-independent grouping key built from a title's significant tokens."""
    tokens = [
        token
        for token in _NON_ALNUM.sub(" ", title.lower()).split()
        if len(token) > 2 and token not in _TITLE_STOP_WORDS
    ]
    return " ".join(sorted(tokens[:THREAD_KEY_TOKENS]))


def normalize_title(title: str) -> str:
    return " ".join(title.strip().lower().split())

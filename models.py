"""Core typed models used across the continuity engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Depth(StrEnum):
    """Level of detail (and generation cost) requested for a report."""

    SHALLOW = "shallow"
    MEDIUM = "medium"
    DEEP = "deep"


# Wire values used by older clients.
DEPTH_ALIASES: dict[str, Depth] = {
    "2m": Depth.SHALLOW,
    "10m": Depth.MEDIUM,
}


class StoryType(StrEnum):
    """Editorial story classification supplied by the item store."""

    BREAKING = "breaking"
    DEVELOPING = "developing"
    ANALYSIS = "analysis"
    OPINION = "opinion"
    FEATURE = "feature"
    UPDATE = "update"


class Reaction(StrEnum):
    """Explicit reader feedback attached to an article."""

    USEFUL = "useful"
    SURPRISING = "surprising"
    ALREADY_KNEW = "already_knew"
    BAD_CONNECTION = "bad_connection"
    NOT_IMPORTANT = "not_important"


class EngineStage(StrEnum):
    """Request lifecycle stages of a since-last-read computation."""

    INIT = "init"
    STATE_RESOLVED = "state_resolved"
    CANDIDATES_FETCHED = "candidates_fetched"
    RANKED = "ranked"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    CONTEXT_BUILT = "context_built"
    BRIEF_GENERATED = "brief_generated"
    PERSISTED = "persisted"


@dataclass(frozen=True)
class DepthConfig:
    """Static per-depth limits for highlights, citations, and generation."""

    highlight_limit: int
    citation_limit: int
    max_tokens: int
    max_source_articles: int
    changed_bullet_limit: int
    watch_next_limit: int


DEPTH_CONFIGS: dict[Depth, DepthConfig] = {
    Depth.SHALLOW: DepthConfig(
        highlight_limit=4,
        citation_limit=4,
        max_tokens=600,
        max_source_articles=5,
        changed_bullet_limit=3,
        watch_next_limit=2,
    ),
    Depth.MEDIUM: DepthConfig(
        highlight_limit=8,
        citation_limit=8,
        max_tokens=1000,
        max_source_articles=10,
        changed_bullet_limit=5,
        watch_next_limit=3,
    ),
    Depth.DEEP: DepthConfig(
        highlight_limit=12,
        citation_limit=12,
        max_tokens=1600,
        max_source_articles=14,
        changed_bullet_limit=7,
        watch_next_limit=5,
    ),
}


@dataclass(frozen=True)
class ContinuityState:
    """Persistent per-client continuity row."""

    client_id: str
    last_seen_at: datetime | None
    preferred_depth: Depth
    last_snapshot_hash: str | None = None
    last_snapshot_generated_at: datetime | None = None


@dataclass(frozen=True)
class AcknowledgeResult:
    """Outcome of advancing a client's watermark."""

    client_id: str
    last_seen_at: datetime
    preferred_depth: Depth

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "lastSeenAt": self.last_seen_at.isoformat(),
            "preferredDepth": self.preferred_depth.value,
        }


@dataclass(frozen=True)
class SummaryRecord:
    """Precomputed article summary fields from the item store."""

    brief: str | None = None
    the_news: str | None = None
    why_it_matters: str | None = None
    the_context: str | None = None
    key_entities: tuple[str, ...] = ()


@dataclass(frozen=True)
class IntelligenceRecord:
    """Optional per-article intelligence fields from the item store."""

    significance_score: int | None = None
    story_type: str | None = None
    story_thread_id: str | None = None
    watch_for_next: str | None = None


@dataclass(frozen=True)
class ArticleRecord:
    """Raw article row as returned by the item store."""

    article_id: str
    title: str
    url: str | None
    topic: str
    content: str | None
    published_at: datetime | None
    summary: SummaryRecord | None = None
    intelligence: IntelligenceRecord | None = None


@dataclass(frozen=True)
class Candidate:
    """An article eligible for a continuity report."""

    article_id: str
    title: str
    source_url: str
    source: str
    topic: str
    published_at: datetime | None
    significance_score: int
    story_type: str
    summary_text: str
    search_text: str
    thread_key: str
    watch_for_next: str | None = None
    reactions: tuple[str, ...] = ()


@dataclass(frozen=True)
class RankedCandidate:
    """Candidate with computed relevance score and display reason."""

    candidate: Candidate
    watchlist_matches: tuple[str, ...]
    reason: str
    score: float


@dataclass(frozen=True)
class Highlight:
    """Externally visible projection of a ranked candidate."""

    article_id: str
    title: str
    source: str
    source_url: str
    topic: str
    published_at: str | None
    significance_score: int
    watchlist_matches: tuple[str, ...]
    reason: str
    watch_for_next: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "articleId": self.article_id,
            "title": self.title,
            "source": self.source,
            "sourceUrl": self.source_url,
            "topic": self.topic,
            "publishedAt": self.published_at,
            "significanceScore": self.significance_score,
            "watchlistMatches": list(self.watchlist_matches),
            "reason": self.reason,
        }
        if self.watch_for_next:
            payload["watchForNext"] = self.watch_for_next
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Highlight:
        return cls(
            article_id=str(data["articleId"]),
            title=str(data.get("title", "")),
            source=str(data.get("source", "")),
            source_url=str(data.get("sourceUrl", "")),
            topic=str(data.get("topic", "")),
            published_at=data.get("publishedAt"),
            significance_score=int(data.get("significanceScore", 5)),
            watchlist_matches=tuple(str(item) for item in data.get("watchlistMatches", [])),
            reason=str(data.get("reason", "")),
            watch_for_next=data.get("watchForNext") or None,
        )


@dataclass(frozen=True)
class Citation:
    """Source reference backing a brief."""

    article_id: str
    title: str
    source: str
    source_url: str
    published_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "articleId": self.article_id,
            "title": self.title,
            "source": self.source,
            "sourceUrl": self.source_url,
            "publishedAt": self.published_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Citation:
        return cls(
            article_id=str(data["articleId"]),
            title=str(data.get("title", "")),
            source=str(data.get("source", "")),
            source_url=str(data.get("sourceUrl", "")),
            published_at=data.get("publishedAt"),
        )


@dataclass(frozen=True)
class Brief:
    """Short structured narrative of what changed."""

    headline: str
    summary: str
    changed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    watch_next: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "headline": self.headline,
            "summary": self.summary,
            "changed": list(self.changed),
            "unchanged": list(self.unchanged),
            "watchNext": list(self.watch_next),
        }


@dataclass(frozen=True)
class SnapshotState:
    """State echo included in every snapshot response."""

    client_id: str
    depth: Depth
    last_seen_at: str | None
    since_at: str
    until_at: str
    is_first_visit: bool
    cached: bool
    snapshot_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "depth": self.depth.value,
            "lastSeenAt": self.last_seen_at,
            "sinceAt": self.since_at,
            "untilAt": self.until_at,
            "isFirstVisit": self.is_first_visit,
            "cached": self.cached,
            "snapshotHash": self.snapshot_hash,
        }


@dataclass(frozen=True)
class SnapshotCounts:
    """Aggregate counts for the delta window."""

    new_articles: int
    new_threads: int
    watchlist_hits: int

    def to_dict(self) -> dict[str, int]:
        return {
            "newArticles": self.new_articles,
            "newThreads": self.new_threads,
            "watchlistHits": self.watchlist_hits,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotCounts:
        return cls(
            new_articles=int(data.get("newArticles", 0)),
            new_threads=int(data.get("newThreads", 0)),
            watchlist_hits=int(data.get("watchlistHits", 0)),
        )


@dataclass(frozen=True)
class SnapshotPayload:
    """Full computed result for one client/depth/candidate-set combination."""

    state: SnapshotState
    counts: SnapshotCounts
    highlights: tuple[Highlight, ...]
    brief: Brief
    citations: tuple[Citation, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.to_dict(),
            "counts": self.counts.to_dict(),
            "highlights": [item.to_dict() for item in self.highlights],
            "brief": self.brief.to_dict(),
            "citations": [item.to_dict() for item in self.citations],
        }


@dataclass(frozen=True)
class GeneratedBrief:
    """Brief plus generation metadata persisted alongside snapshots."""

    brief: Brief
    model_used: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0

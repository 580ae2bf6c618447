"""Candidate fetching and derivation of ranking fields from raw article rows."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from bs4 import BeautifulSoup

from continuity.normalization import clamp, source_name_from_url, title_thread_key
from models import ArticleRecord, Candidate, StoryType, SummaryRecord

logger = logging.getLogger(__name__)

DELTA_ARTICLE_LIMIT = 220
REACTION_ROW_LIMIT = 2000
DEFAULT_SIGNIFICANCE = 5
_CONTENT_SUMMARY_CHARS = 500


class CandidateStoreError(RuntimeError):
    """Raised when the item store cannot supply any candidates at all."""


class ItemStore(Protocol):
    """Read interface of the article store consumed by the engine."""

    def fetch_articles_since(self, since_at: datetime, *, limit: int) -> list[ArticleRecord]: ...

    def fetch_articles_between(
        self, lower: datetime, upper: datetime, *, limit: int
    ) -> list[ArticleRecord]: ...

    def fetch_reactions(
        self, article_ids: Sequence[str], *, limit: int
    ) -> dict[str, list[str]]: ...


class WatchlistSource(Protocol):
    def load_watchlist_terms(self) -> list[str]: ...


class EngagementSource(Protocol):
    def load_topic_engagement(self) -> dict[str, float]: ...


class CandidateFetcher:
    """Turn the item store's delta window into ranked-ready candidates."""

    def __init__(self, item_store: ItemStore, *, limit: int = DELTA_ARTICLE_LIMIT) -> None:
        self._item_store = item_store
        self._limit = limit

    def fetch_delta(self, since_at: datetime) -> list[Candidate]:
        """Return candidates published at or after *since_at*, newest first."""
        try:
            records = self._item_store.fetch_articles_since(since_at, limit=self._limit)
        except CandidateStoreError:
            raise
        except Exception as exc:
            raise CandidateStoreError(f"Failed to fetch delta articles: {exc}") from exc

        if not records:
            return []

        reactions = self.fetch_reactions([record.article_id for record in records])
        return [
            build_candidate(record, reactions.get(record.article_id, ()))
            for record in records
        ]

    def fetch_reactions(self, article_ids: Sequence[str]) -> dict[str, list[str]]:
        """Reactions keyed by article id; a failed lookup degrades to none."""
        if not article_ids:
            return {}
        try:
            return self._item_store.fetch_reactions(article_ids, limit=REACTION_ROW_LIMIT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Reaction lookup failed for %d articles: %s", len(article_ids), exc)
            return {}


def build_candidate(record: ArticleRecord, reactions: Sequence[str] = ()) -> Candidate:
    """Derive summary/search text, significance, and thread key for one article."""
    intelligence = record.intelligence
    source = source_name_from_url(record.url)
    summary_text = build_summary_text(record.summary, record.content)

    raw_significance = intelligence.significance_score if intelligence else None
    significance = int(clamp(raw_significance or DEFAULT_SIGNIFICANCE, 1, 10))

    story_type = (intelligence.story_type if intelligence else None) or StoryType.UPDATE.value
    thread_key = (
        (intelligence.story_thread_id if intelligence else None)
        or title_thread_key(record.title)
        or record.article_id
    )

    return Candidate(
        article_id=record.article_id,
        title=record.title,
        source_url=record.url or "",
        source=source,
        topic=record.topic,
        published_at=record.published_at,
        significance_score=significance,
        story_type=story_type,
        summary_text=summary_text,
        search_text=build_search_text(record.title, source, record.content, record.summary),
        thread_key=thread_key,
        watch_for_next=(intelligence.watch_for_next if intelligence else None) or None,
        reactions=tuple(reactions),
    )


def build_summary_text(summary: SummaryRecord | None, content: str | None) -> str:
    """Joined summary fields, or the opening of the article body when absent."""
    if summary is not None:
        bits = [
            summary.brief or "",
            summary.the_news or "",
            summary.why_it_matters or "",
            summary.the_context or "",
        ]
        joined = " ".join(bit.strip() for bit in bits if bit and bit.strip())
        if joined:
            return joined
    return strip_markup(content)[:_CONTENT_SUMMARY_CHARS]


def build_search_text(
    title: str,
    source: str,
    content: str | None,
    summary: SummaryRecord | None,
) -> str:
    """Lower-cased haystack used for watchlist substring matching."""
    entities = " ".join(name for name in (summary.key_entities if summary else ()) if name)
    parts = [title, source, strip_markup(content), build_summary_text(summary, content), entities]
    return " ".join(parts).lower()


def strip_markup(content: str | None) -> str:
    """Plain text of scraped article content."""
    if not content:
        return ""
    if "<" not in content:
        return content.strip()
    text = BeautifulSoup(content, "html.parser").get_text(" ")
    return " ".join(text.split())

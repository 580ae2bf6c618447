"""Tests for candidate derivation and the delta fetcher."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import pytest

from continuity.candidates import (
    CandidateFetcher,
    CandidateStoreError,
    build_candidate,
    build_summary_text,
)
from models import ArticleRecord, IntelligenceRecord, SummaryRecord

PUBLISHED = datetime(2026, 3, 2, 11, 0, tzinfo=UTC)


def _record(article_id: str = "a1", **kwargs: object) -> ArticleRecord:
    values: dict[str, object] = {
        "article_id": article_id,
        "title": "Fed raises rates again",
        "url": "https://www.reuters.com/markets/fed",
        "topic": "economy",
        "content": "<p>The <b>Fed</b> raised rates.</p>",
        "published_at": PUBLISHED,
    }
    values.update(kwargs)
    return ArticleRecord(**values)  # type: ignore[arg-type]


class _FakeItemStore:
    def __init__(
        self,
        records: list[ArticleRecord],
        *,
        fail_articles: bool = False,
        fail_reactions: bool = False,
    ) -> None:
        self.records = records
        self.fail_articles = fail_articles
        self.fail_reactions = fail_reactions
        self.reaction_calls: list[list[str]] = []

    def fetch_articles_since(self, since_at: datetime, *, limit: int) -> list[ArticleRecord]:
        if self.fail_articles:
            raise RuntimeError("database is locked")
        return self.records[:limit]

    def fetch_articles_between(
        self, lower: datetime, upper: datetime, *, limit: int
    ) -> list[ArticleRecord]:
        return []

    def fetch_reactions(self, article_ids: Sequence[str], *, limit: int) -> dict[str, list[str]]:
        self.reaction_calls.append(list(article_ids))
        if self.fail_reactions:
            raise RuntimeError("reactions table missing")
        return {"a1": ["useful"]}


def test_build_candidate_defaults_without_intelligence() -> None:
    candidate = build_candidate(_record())

    assert candidate.source == "reuters.com"
    assert candidate.significance_score == 5
    assert candidate.story_type == "update"
    assert candidate.summary_text == "The Fed raised rates."
    assert candidate.thread_key == "again fed raises rates"
    assert "the fed raised rates." in candidate.search_text


def test_build_candidate_uses_intelligence_fields() -> None:
    record = _record(
        intelligence=IntelligenceRecord(
            significance_score=14,
            story_type="breaking",
            story_thread_id="thread-fed",
            watch_for_next="Minutes release next week",
        ),
        summary=SummaryRecord(brief="Rates up.", key_entities=("Jerome Powell",)),
    )

    candidate = build_candidate(record, ["surprising"])

    assert candidate.significance_score == 10
    assert candidate.story_type == "breaking"
    assert candidate.thread_key == "thread-fed"
    assert candidate.watch_for_next == "Minutes release next week"
    assert candidate.reactions == ("surprising",)
    assert candidate.summary_text == "Rates up."
    assert "jerome powell" in candidate.search_text


def test_thread_key_falls_back_to_article_id() -> None:
    candidate = build_candidate(_record(title="Q&A"))

    assert candidate.thread_key == "a1"


def test_summary_text_truncates_content() -> None:
    text = build_summary_text(None, "word " * 400)

    assert len(text) == 500


def test_fetcher_attaches_reactions() -> None:
    store = _FakeItemStore([_record("a1"), _record("a2")])

    candidates = CandidateFetcher(store).fetch_delta(PUBLISHED)

    assert [item.reactions for item in candidates] == [("useful",), ()]
    assert store.reaction_calls == [["a1", "a2"]]


def test_fetcher_skips_reaction_lookup_when_empty() -> None:
    store = _FakeItemStore([])

    assert CandidateFetcher(store).fetch_delta(PUBLISHED) == []
    assert store.reaction_calls == []


def test_reaction_failure_degrades_to_no_reactions() -> None:
    store = _FakeItemStore([_record("a1")], fail_reactions=True)

    candidates = CandidateFetcher(store).fetch_delta(PUBLISHED)

    assert candidates[0].reactions == ()


def test_article_failure_raises_candidate_store_error() -> None:
    store = _FakeItemStore([], fail_articles=True)

    with pytest.raises(CandidateStoreError, match="database is locked"):
        CandidateFetcher(store).fetch_delta(PUBLISHED)

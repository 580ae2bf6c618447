"""SQLite-backed item store, watchlist, and engagement sources."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from continuity.candidates import CandidateStoreError
from continuity.normalization import ensure_utc, parse_iso
from models import ArticleRecord, IntelligenceRecord, SummaryRecord

logger = logging.getLogger(__name__)

WATCHLIST_TERM_LIMIT = 200
ENGAGEMENT_ROW_LIMIT = 1200

ENGAGEMENT_WEIGHTS: dict[str, float] = {
    "click": 1,
    "expand": 2,
    "read": 3,
    "share": 4,
    "save": 5,
}

_ENRICHED_SELECT = """
    SELECT
        a.id, a.title, a.url, a.topic, a.content, a.published_at,
        s.brief, s.the_news, s.why_it_matters, s.the_context, s.key_entities,
        i.significance_score, i.story_type, i.story_thread_id, i.watch_for_next
    FROM articles a
    LEFT JOIN summaries s ON s.article_id = a.id
    LEFT JOIN article_intelligence i ON i.article_id = a.id
"""

_PLAIN_SELECT = """
    SELECT a.id, a.title, a.url, a.topic, a.content, a.published_at
    FROM articles a
"""


class SqliteItemStore:
    """Article, reaction, watchlist, and engagement reads over one SQLite file."""

    def __init__(self, db_path: Path, *, busy_timeout_seconds: float = 5.0) -> None:
        self.db_path = db_path
        self._busy_timeout_seconds = busy_timeout_seconds

    def initialize(self) -> None:
        """Create item tables if they do not exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS articles (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    url TEXT,
                    topic TEXT NOT NULL,
                    content TEXT,
                    published_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_articles_published
                    ON articles(published_at DESC);

                CREATE TABLE IF NOT EXISTS summaries (
                    article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
                    brief TEXT,
                    the_news TEXT,
                    why_it_matters TEXT,
                    the_context TEXT,
                    key_entities TEXT
                );

                CREATE TABLE IF NOT EXISTS article_intelligence (
                    article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
                    significance_score INTEGER,
                    story_type TEXT,
                    story_thread_id TEXT,
                    watch_for_next TEXT
                );

                CREATE TABLE IF NOT EXISTS article_reactions (
                    article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    reaction TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (article_id, reaction)
                );

                CREATE TABLE IF NOT EXISTS watchlist (
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'keyword',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS engagement (
                    article_id TEXT REFERENCES articles(id) ON DELETE CASCADE,
                    event_type TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )

    def fetch_articles_since(self, since_at: datetime, *, limit: int) -> list[ArticleRecord]:
        """Articles published at or after *since_at*, newest first."""
        return self._select_articles(
            "WHERE a.published_at >= ? ORDER BY a.published_at DESC LIMIT ?",
            (_sql_ts(since_at), limit),
        )

    def fetch_articles_between(
        self, lower: datetime, upper: datetime, *, limit: int
    ) -> list[ArticleRecord]:
        """Articles with ``lower <= published_at < upper``, newest first."""
        return self._select_articles(
            "WHERE a.published_at >= ? AND a.published_at < ? "
            "ORDER BY a.published_at DESC LIMIT ?",
            (_sql_ts(lower), _sql_ts(upper), limit),
        )

    def fetch_reactions(
        self, article_ids: Sequence[str], *, limit: int
    ) -> dict[str, list[str]]:
        if not article_ids:
            return {}
        placeholders = ", ".join("?" for _ in article_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT article_id, reaction
                FROM article_reactions
                WHERE article_id IN ({placeholders})
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (*article_ids, limit),
            ).fetchall()

        reactions: dict[str, list[str]] = {}
        for row in rows:
            reactions.setdefault(row["article_id"], []).append(row["reaction"])
        return reactions

    def load_watchlist_terms(self) -> list[str]:
        """Distinct (case-insensitive) watchlist names, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT name FROM watchlist ORDER BY created_at DESC LIMIT ?",
                (WATCHLIST_TERM_LIMIT,),
            ).fetchall()

        seen: set[str] = set()
        terms: list[str] = []
        for row in rows:
            name = str(row["name"] or "").strip()
            if not name or name.lower() in seen:
                continue
            seen.add(name.lower())
            terms.append(name)
        return terms

    def load_topic_engagement(self) -> dict[str, float]:
        """Weighted engagement totals per topic over recent events."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT e.event_type, a.topic
                FROM engagement e
                LEFT JOIN articles a ON a.id = e.article_id
                ORDER BY e.created_at DESC
                LIMIT ?
                """,
                (ENGAGEMENT_ROW_LIMIT,),
            ).fetchall()

        scores: dict[str, float] = {}
        for row in rows:
            topic = row["topic"] or "unknown"
            weight = ENGAGEMENT_WEIGHTS.get(row["event_type"], 1)
            scores[topic] = scores.get(topic, 0) + weight
        return scores

    def add_article(self, record: ArticleRecord) -> None:
        """Insert or replace an article with its optional summary and intelligence."""
        if record.published_at is None:
            raise ValueError(f"Article {record.article_id} requires published_at")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO articles (id, title, url, topic, content, published_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.article_id,
                    record.title,
                    record.url,
                    record.topic,
                    record.content,
                    _sql_ts(record.published_at),
                ),
            )
            if record.summary is not None:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO summaries (
                        article_id, brief, the_news, why_it_matters, the_context, key_entities
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.article_id,
                        record.summary.brief,
                        record.summary.the_news,
                        record.summary.why_it_matters,
                        record.summary.the_context,
                        json.dumps([{"name": name} for name in record.summary.key_entities]),
                    ),
                )
            if record.intelligence is not None:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO article_intelligence (
                        article_id, significance_score, story_type, story_thread_id, watch_for_next
                    )
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record.article_id,
                        record.intelligence.significance_score,
                        record.intelligence.story_type,
                        record.intelligence.story_thread_id,
                        record.intelligence.watch_for_next,
                    ),
                )

    def add_reaction(self, article_id: str, reaction: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO article_reactions (article_id, reaction, created_at)
                VALUES (?, ?, ?)
                """,
                (article_id, reaction, _now_iso()),
            )

    def add_watchlist_term(self, name: str, term_type: str = "keyword") -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO watchlist (name, type, created_at) VALUES (?, ?, ?)",
                (name, term_type, _now_iso()),
            )

    def record_engagement(self, article_id: str, event_type: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO engagement (article_id, event_type, created_at) VALUES (?, ?, ?)",
                (article_id, event_type, _now_iso()),
            )

    def _select_articles(self, clause: str, params: tuple[Any, ...]) -> list[ArticleRecord]:
        try:
            with self._connect() as conn:
                try:
                    rows = conn.execute(f"{_ENRICHED_SELECT} {clause}", params).fetchall()
                    enriched = True
                except sqlite3.OperationalError as exc:
                    if "no such table" not in str(exc):
                        raise
                    # Summary/intelligence tables are optional; degrade to bare articles.
                    logger.warning("Enriched article query unavailable (%s); using plain query", exc)
                    rows = conn.execute(f"{_PLAIN_SELECT} {clause}", params).fetchall()
                    enriched = False
        except sqlite3.Error as exc:
            raise CandidateStoreError(f"Article query failed: {exc}") from exc

        return [_row_to_record(row, enriched=enriched) for row in rows]

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self._busy_timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


def _row_to_record(row: sqlite3.Row, *, enriched: bool) -> ArticleRecord:
    summary: SummaryRecord | None = None
    intelligence: IntelligenceRecord | None = None

    if enriched:
        if any(row[key] is not None for key in ("brief", "the_news", "why_it_matters", "the_context")):
            summary = SummaryRecord(
                brief=row["brief"],
                the_news=row["the_news"],
                why_it_matters=row["why_it_matters"],
                the_context=row["the_context"],
                key_entities=_parse_entities(row["key_entities"]),
            )
        if any(
            row[key] is not None
            for key in ("significance_score", "story_type", "story_thread_id", "watch_for_next")
        ):
            intelligence = IntelligenceRecord(
                significance_score=row["significance_score"],
                story_type=row["story_type"],
                story_thread_id=row["story_thread_id"],
                watch_for_next=row["watch_for_next"],
            )

    return ArticleRecord(
        article_id=str(row["id"]),
        title=str(row["title"] or ""),
        url=row["url"],
        topic=str(row["topic"] or "unknown"),
        content=row["content"],
        published_at=parse_iso(row["published_at"]),
        summary=summary,
        intelligence=intelligence,
    )


def _parse_entities(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()
    names: list[str] = []
    for item in parsed:
        if isinstance(item, dict):
            name = str(item.get("name") or "").strip()
        else:
            name = str(item or "").strip()
        if name:
            names.append(name)
    return tuple(names)


def _now_iso() -> str:
    return _sql_ts(datetime.now(UTC))


def _sql_ts(value: datetime) -> str:
    # Fixed-width timestamps keep lexicographic order equal to time order.
    return ensure_utc(value).isoformat(timespec="microseconds")

"""Stories still in play that had no fresh update in the delta window."""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime, timedelta

from continuity.candidates import ItemStore
from continuity.normalization import normalize_title, title_thread_key
from models import StoryType

logger = logging.getLogger(__name__)

LOOKBACK_HOURS = 96
LOOKBACK_ROW_LIMIT = 80
MIN_SIGNIFICANCE = 7
MAX_UNCHANGED_THREADS = 5

LIVE_STORY_TYPES = frozenset(
    {
        StoryType.DEVELOPING.value,
        StoryType.BREAKING.value,
        StoryType.ANALYSIS.value,
        StoryType.UPDATE.value,
    }
)


class UnchangedContextBuilder:
    """Collect titles of significant live threads absent from the current delta."""

    def __init__(
        self,
        item_store: ItemStore,
        *,
        lookback_hours: int = LOOKBACK_HOURS,
        limit: int = MAX_UNCHANGED_THREADS,
    ) -> None:
        self._item_store = item_store
        self._lookback = timedelta(hours=lookback_hours)
        self._limit = limit

    def build(self, since_at: datetime, changed_thread_keys: Collection[str]) -> list[str]:
        try:
            records = self._item_store.fetch_articles_between(
                since_at - self._lookback,
                since_at,
                limit=LOOKBACK_ROW_LIMIT,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unchanged context lookup failed: %s", exc)
            return []

        titles: list[str] = []
        seen: set[str] = set()
        for record in records:
            intelligence = record.intelligence
            if intelligence is None:
                continue
            if (intelligence.significance_score or 0) < MIN_SIGNIFICANCE:
                continue
            if (intelligence.story_type or "") not in LIVE_STORY_TYPES:
                continue

            thread_key = intelligence.story_thread_id or title_thread_key(record.title)
            if thread_key in changed_thread_keys:
                continue

            title = record.title.strip()
            title_key = normalize_title(title)
            if not title or title_key in seen:
                continue

            seen.add(title_key)
            titles.append(title)
            if len(titles) >= self._limit:
                break

        return titles

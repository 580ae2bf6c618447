"""Since-last-read orchestration: state, candidates, ranking, cache, and brief."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from continuity.brief import BriefGenerator, build_fallback_brief
from continuity.candidates import CandidateFetcher, EngagementSource, WatchlistSource
from continuity.normalization import normalize_client_id, parse_depth, to_iso
from continuity.observability import LogContext, StructuredLogger, get_logger
from continuity.ranking import (
    DEFAULT_WEIGHTS,
    RankingWeights,
    rank_candidates,
    to_citations,
    to_highlights,
)
from continuity.resilience import result_or_default
from continuity.snapshot_cache import SnapshotCache, hydrate_snapshot, make_snapshot_hash
from continuity.state import StateResolver
from continuity.store import SnapshotRecord
from continuity.unchanged import UnchangedContextBuilder
from models import (
    DEPTH_CONFIGS,
    AcknowledgeResult,
    Depth,
    EngineStage,
    SnapshotCounts,
    SnapshotPayload,
    SnapshotState,
)

DEFAULT_LOOKBACK_HOURS = 24


class ContinuityEngine:
    """Answer "what changed since I last read" for one client per call."""

    def __init__(
        self,
        *,
        state_resolver: StateResolver,
        candidate_fetcher: CandidateFetcher,
        watchlist_source: WatchlistSource,
        engagement_source: EngagementSource,
        unchanged_builder: UnchangedContextBuilder,
        snapshot_cache: SnapshotCache,
        brief_generator: BriefGenerator,
        default_depth: Depth = Depth.SHALLOW,
        lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
        io_timeout_seconds: float = 5.0,
        weights: RankingWeights = DEFAULT_WEIGHTS,
        clock: Callable[[], datetime] | None = None,
        logger: StructuredLogger | None = None,
        max_workers: int = 4,
    ) -> None:
        self._state_resolver = state_resolver
        self._candidate_fetcher = candidate_fetcher
        self._watchlist_source = watchlist_source
        self._engagement_source = engagement_source
        self._unchanged_builder = unchanged_builder
        self._snapshot_cache = snapshot_cache
        self._brief_generator = brief_generator
        self._default_depth = default_depth
        self._lookback = timedelta(hours=lookback_hours)
        self._io_timeout_seconds = io_timeout_seconds
        self._weights = weights
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logger or get_logger()
        self._max_workers = max_workers

    def get_since_last_read(
        self,
        client_id: str | None,
        depth: str | None = None,
        *,
        request_id: str | None = None,
    ) -> SnapshotPayload:
        """Compute (or replay from cache) the client's since-last-read snapshot.

        Raises ``CandidateStoreError`` when the item store cannot be read; every
        other collaborator failure degrades to a safe default.
        """
        client = normalize_client_id(client_id)
        context = LogContext(client_id=client, request_id=request_id or uuid4().hex[:12])
        self._transition(EngineStage.INIT, context)

        state = self._state_resolver.resolve(client)
        resolved_depth = resolve_depth(depth, state.preferred_depth, self._default_depth)
        depth_config = DEPTH_CONFIGS[resolved_depth]
        context = context.with_depth(resolved_depth.value)
        self._transition(
            EngineStage.STATE_RESOLVED, context, first_visit=state.last_seen_at is None
        )

        now = self._clock()
        since_at = state.last_seen_at or (now - self._lookback)
        since_at_iso = to_iso(since_at) or ""

        pool = ThreadPoolExecutor(max_workers=self._max_workers)
        try:
            delta_future = pool.submit(self._candidate_fetcher.fetch_delta, since_at)
            watchlist_future = pool.submit(self._watchlist_source.load_watchlist_terms)
            engagement_future = pool.submit(self._engagement_source.load_topic_engagement)

            watchlist_terms: list[str] = result_or_default(
                watchlist_future,
                name="watchlist",
                timeout_seconds=self._io_timeout_seconds,
                default=[],
            )
            topic_engagement: dict[str, float] = result_or_default(
                engagement_future,
                name="engagement",
                timeout_seconds=self._io_timeout_seconds,
                default={},
            )
            candidates = delta_future.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        self._transition(
            EngineStage.CANDIDATES_FETCHED,
            context,
            candidates=len(candidates),
            watchlist_terms=len(watchlist_terms),
        )

        ranked = rank_candidates(
            candidates,
            watchlist_terms,
            topic_engagement,
            now=now,
            weights=self._weights,
        )
        highlights = to_highlights(ranked, depth_config.highlight_limit)
        snapshot_hash = make_snapshot_hash(
            client,
            resolved_depth,
            since_at_iso,
            [item.candidate.article_id for item in ranked],
        )
        context = context.with_hash(snapshot_hash)
        self._transition(EngineStage.RANKED, context, highlights=len(highlights))

        snapshot_state = SnapshotState(
            client_id=client,
            depth=resolved_depth,
            last_seen_at=to_iso(state.last_seen_at),
            since_at=since_at_iso,
            until_at=to_iso(now) or "",
            is_first_visit=state.last_seen_at is None,
            cached=False,
            snapshot_hash=snapshot_hash,
        )

        cached = self._snapshot_cache.lookup(client, snapshot_hash, resolved_depth, now=now)
        if cached is not None:
            payload = hydrate_snapshot(
                cached,
                state=snapshot_state,
                depth_config=depth_config,
                fallback_brief=lambda items: build_fallback_brief(
                    items, [], depth_config, len(items), state.last_seen_at
                ),
            )
            self._state_resolver.touch(client, resolved_depth, snapshot_hash)
            self._transition(EngineStage.CACHE_HIT, context)
            return payload

        self._transition(EngineStage.CACHE_MISS, context)

        changed_thread_keys = {item.candidate.thread_key for item in ranked}
        unchanged_titles = self._unchanged_builder.build(since_at, changed_thread_keys)
        self._transition(EngineStage.CONTEXT_BUILT, context, unchanged=len(unchanged_titles))

        fallback = build_fallback_brief(
            highlights,
            unchanged_titles,
            depth_config,
            len(candidates),
            state.last_seen_at,
        )
        generated = self._brief_generator.generate(
            depth=resolved_depth,
            highlights=highlights,
            unchanged_titles=unchanged_titles,
            fallback=fallback,
            last_seen_at=state.last_seen_at,
            snapshot_hash=snapshot_hash,
        )
        self._transition(
            EngineStage.BRIEF_GENERATED,
            context,
            model_used=generated.model_used,
            generated=generated.model_used is not None,
        )

        payload = SnapshotPayload(
            state=snapshot_state,
            counts=SnapshotCounts(
                new_articles=len(candidates),
                new_threads=len(changed_thread_keys),
                watchlist_hits=sum(1 for item in ranked if item.watchlist_matches),
            ),
            highlights=tuple(highlights),
            brief=generated.brief,
            citations=tuple(to_citations(highlights, depth_config.citation_limit)),
        )

        record = SnapshotRecord(
            client_id=client,
            snapshot_hash=snapshot_hash,
            depth=resolved_depth,
            since_at=since_at,
            until_at=now,
            payload=payload.to_dict(),
            model_used=generated.model_used,
            input_tokens=generated.input_tokens,
            output_tokens=generated.output_tokens,
            generated_at=now,
        )
        self._persist_side_effects(record, context, now=now)
        self._transition(EngineStage.PERSISTED, context)
        return payload

    def acknowledge(
        self,
        client_id: str | None,
        depth: str | None = None,
        until_at: str | datetime | None = None,
    ) -> AcknowledgeResult:
        """Advance the client's watermark; never moves it past the current time."""
        client = normalize_client_id(client_id)
        result = self._state_resolver.acknowledge(client, depth, until_at, now=self._clock())
        self._logger.info(
            "acknowledged",
            context=LogContext(client_id=client, depth=result.preferred_depth.value),
            last_seen_at=result.last_seen_at.isoformat(),
        )
        return result

    def _persist_side_effects(
        self, record: SnapshotRecord, context: LogContext, *, now: datetime
    ) -> None:
        """Write the snapshot, touch state, and maybe sweep; failures only log."""
        pool = ThreadPoolExecutor(max_workers=3)
        try:
            futures: dict[str, Future[Any]] = {
                "snapshot_store": pool.submit(self._snapshot_cache.store, record),
                "state_touch": pool.submit(
                    self._state_resolver.touch,
                    record.client_id,
                    record.depth,
                    record.snapshot_hash,
                ),
                "snapshot_cleanup": pool.submit(self._snapshot_cache.maybe_cleanup, now=now),
            }
            for name, future in futures.items():
                result_or_default(
                    future,
                    name=name,
                    timeout_seconds=self._io_timeout_seconds,
                    default=None,
                )
        finally:
            pool.shutdown(wait=False)

    def _transition(self, stage: EngineStage, context: LogContext, **fields: Any) -> None:
        self._logger.info("stage_transition", context=context, stage=stage.value, **fields)


def resolve_depth(requested: str | None, preferred: Depth | None, default: Depth) -> Depth:
    """Explicit valid depth, else the stored preference, else the default."""
    return parse_depth(requested) or preferred or default

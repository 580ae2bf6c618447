"""Relevance scoring and ordering of delta candidates."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from continuity.normalization import to_iso
from models import Candidate, Citation, Highlight, RankedCandidate, Reaction

# Short terms ("AI", "GM") must match as whole words or they hit inside "said".
SHORT_TERM_LENGTH = 4

_RECENCY_TIERS: tuple[tuple[float, float], ...] = (
    (1, 3.0),
    (6, 2.4),
    (12, 1.8),
    (24, 1.2),
    (72, 0.8),
)
_RECENCY_FLOOR = 0.3


@dataclass(frozen=True)
class RankingWeights:
    """Score coefficients. Magnitudes are tunable; relative ordering is not."""

    significance_max: float = 6.0
    watchlist_per_match: float = 2.25
    watchlist_cap: float = 7.0
    topic_max: float = 2.5
    summary_bonus: float = 0.6
    reaction_weights: Mapping[str, float] = field(
        default_factory=lambda: {
            Reaction.USEFUL.value: 1.25,
            Reaction.SURPRISING.value: 1.5,
            Reaction.ALREADY_KNEW.value: -0.4,
            Reaction.BAD_CONNECTION.value: -1.0,
            Reaction.NOT_IMPORTANT.value: -2.0,
        }
    )
    high_significance: int = 8
    reaction_reason_threshold: float = 1.0
    topic_reason_threshold: float = 1.2


DEFAULT_WEIGHTS = RankingWeights()


@dataclass(frozen=True)
class ScoreBreakdown:
    """Individual score terms for one candidate."""

    significance: float
    recency: float
    watchlist: float
    topic: float
    summary: float
    reaction: float

    @property
    def total(self) -> float:
        return (
            self.significance
            + self.recency
            + self.watchlist
            + self.topic
            + self.summary
            + self.reaction
        )


def rank_candidates(
    candidates: Sequence[Candidate],
    watchlist_terms: Sequence[str],
    topic_engagement: Mapping[str, float],
    *,
    now: datetime | None = None,
    weights: RankingWeights = DEFAULT_WEIGHTS,
) -> list[RankedCandidate]:
    """Score every candidate and return them highest-first.

    The sort is stable, so equal scores keep the item store's fetch order.
    Negative reaction totals lower a candidate but never remove it.
    """
    now_utc = now.astimezone(UTC) if now else datetime.now(UTC)
    max_engagement = max([*topic_engagement.values(), 1])
    terms = _dedupe_terms(watchlist_terms)

    ranked: list[RankedCandidate] = []
    for candidate in candidates:
        matches = find_watchlist_matches(candidate.search_text, terms)
        breakdown = score_candidate(
            candidate,
            watchlist_matches=len(matches),
            topic_engagement=topic_engagement.get(candidate.topic, 0),
            max_topic_engagement=max_engagement,
            now=now_utc,
            weights=weights,
        )
        ranked.append(
            RankedCandidate(
                candidate=candidate,
                watchlist_matches=tuple(matches),
                reason=pick_reason(candidate, matches, breakdown, weights),
                score=breakdown.total,
            )
        )

    ranked.sort(key=lambda item: item.score, reverse=True)
    return ranked


def score_candidate(
    candidate: Candidate,
    *,
    watchlist_matches: int,
    topic_engagement: float,
    max_topic_engagement: float,
    now: datetime,
    weights: RankingWeights = DEFAULT_WEIGHTS,
) -> ScoreBreakdown:
    return ScoreBreakdown(
        significance=(candidate.significance_score / 10) * weights.significance_max,
        recency=recency_score(candidate.published_at, now=now),
        watchlist=min(watchlist_matches * weights.watchlist_per_match, weights.watchlist_cap),
        topic=(topic_engagement / max(max_topic_engagement, 1)) * weights.topic_max,
        summary=weights.summary_bonus if candidate.summary_text else 0.0,
        reaction=sum(weights.reaction_weights.get(r, 0.0) for r in candidate.reactions),
    )


def recency_score(published_at: datetime | None, *, now: datetime) -> float:
    """Step function over article age; sharper "is this from today" cutoffs than decay."""
    if published_at is None:
        return 0.0
    age_hours = (now - published_at).total_seconds() / 3600
    for limit_hours, score in _RECENCY_TIERS:
        if age_hours <= limit_hours:
            return score
    return _RECENCY_FLOOR


def find_watchlist_matches(search_text: str, watchlist_terms: Sequence[str]) -> list[str]:
    """Watchlist terms present in *search_text*, in watchlist order."""
    if not watchlist_terms:
        return []

    haystack = search_text.lower()
    matches: list[str] = []
    for term in watchlist_terms:
        needle = term.strip().lower()
        if not needle:
            continue
        if len(needle) < SHORT_TERM_LENGTH:
            if re.search(rf"\b{re.escape(needle)}\b", haystack):
                matches.append(term)
            continue
        if needle in haystack:
            matches.append(term)
    return matches


def pick_reason(
    candidate: Candidate,
    watchlist_matches: Sequence[str],
    breakdown: ScoreBreakdown,
    weights: RankingWeights = DEFAULT_WEIGHTS,
) -> str:
    if watchlist_matches:
        return f"Tracks your watchlist: {watchlist_matches[0]}"
    if candidate.significance_score >= weights.high_significance:
        return "High-significance development"
    if breakdown.reaction >= weights.reaction_reason_threshold:
        return "Similar stories were marked useful"
    if breakdown.topic >= weights.topic_reason_threshold:
        return f"Aligned with your reading focus in {candidate.topic}"
    return "Important recent update"


def to_highlights(ranked: Sequence[RankedCandidate], limit: int) -> list[Highlight]:
    return [
        Highlight(
            article_id=item.candidate.article_id,
            title=item.candidate.title,
            source=item.candidate.source,
            source_url=item.candidate.source_url,
            topic=item.candidate.topic,
            published_at=to_iso(item.candidate.published_at),
            significance_score=item.candidate.significance_score,
            watchlist_matches=item.watchlist_matches,
            reason=item.reason,
            watch_for_next=item.candidate.watch_for_next,
        )
        for item in ranked[:limit]
    ]


def to_citations(highlights: Sequence[Highlight], limit: int) -> list[Citation]:
    return [
        Citation(
            article_id=item.article_id,
            title=item.title,
            source=item.source,
            source_url=item.source_url,
            published_at=item.published_at,
        )
        for item in highlights[:limit]
    ]


def _dedupe_terms(terms: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for term in terms:
        key = term.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(term.strip())
    return unique

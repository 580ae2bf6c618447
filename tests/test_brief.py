"""Tests for fallback briefs, model output parsing, and the generator."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from continuity.brief import (
    BriefGenerator,
    BriefParseError,
    build_brief_prompt,
    build_fallback_brief,
    merge_brief_fields,
    parse_json_object,
)
from continuity.budget import BudgetStatus
from continuity.llm import FULL_MODEL, SMALL_MODEL, LLMResult
from models import DEPTH_CONFIGS, Brief, Depth, Highlight

LAST_SEEN = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)
SHALLOW = DEPTH_CONFIGS[Depth.SHALLOW]


def _highlight(index: int, *, source: str = "example.com", watch: str | None = None) -> Highlight:
    return Highlight(
        article_id=f"a{index}",
        title=f"Story {index}",
        source=source,
        source_url=f"https://{source}/{index}",
        topic="tech",
        published_at="2026-03-02T10:00:00+00:00",
        significance_score=6,
        watchlist_matches=("Acme",) if index == 0 else (),
        reason="Important recent update",
        watch_for_next=watch,
    )


class _FakeClient:
    def __init__(self, content: str = "", *, error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def chat(self, **kwargs: Any) -> LLMResult:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return LLMResult(
            model=kwargs["model"],
            content=self.content,
            input_tokens=1200,
            output_tokens=300,
            raw_response={},
        )


class _FakeBudget:
    def __init__(self, *, allowed: bool = True) -> None:
        self.allowed = allowed
        self.recorded: list[tuple[int, int]] = []

    def check_budget(self) -> BudgetStatus:
        return BudgetStatus(allowed=self.allowed, spent_cents=0, budget_cents=500)

    def record_usage(self, input_tokens: int, output_tokens: int) -> int:
        self.recorded.append((input_tokens, output_tokens))
        return 1


def test_fallback_brief_with_highlights() -> None:
    highlights = [
        _highlight(0, watch="Earnings call Tuesday"),
        _highlight(1, source="reuters.com", watch="Regulator ruling"),
        _highlight(2, source="apnews.com", watch="Vote count"),
        _highlight(3, source="bbc.co.uk"),
    ]

    brief = build_fallback_brief(highlights, ["Old thread"], SHALLOW, 7, LAST_SEEN)

    assert brief.headline == "7 new stories since 2026-03-02 08:30 UTC"
    assert brief.summary == (
        "Story 0 leads the change set, followed by reuters.com, apnews.com."
    )
    assert brief.changed == (
        "1. Story 0 (example.com)",
        "2. Story 1 (reuters.com)",
        "3. Story 2 (apnews.com)",
    )
    assert brief.unchanged == ("Still in play: Old thread",)
    assert brief.watch_next == ("Earnings call Tuesday", "Regulator ruling")


def test_fallback_brief_single_story_first_visit() -> None:
    brief = build_fallback_brief([_highlight(0)], [], SHALLOW, 1, None)

    assert brief.headline == "1 new story in the last 24 hours"
    assert brief.summary == "Story 0 leads the change set, followed by broader coverage shifts."
    assert brief.watch_next == ()


def test_fallback_brief_when_caught_up() -> None:
    brief = build_fallback_brief([], ["A", "B", "C", "D"], SHALLOW, 0, None)

    assert brief.headline == "No major new updates in the last 24 hours"
    assert brief.summary.startswith("You are caught up.")
    assert brief.changed == ()
    assert len(brief.unchanged) == 3


def test_parse_json_object_strict_and_embedded() -> None:
    assert parse_json_object('{"headline": "h"}') == {"headline": "h"}
    assert parse_json_object('Sure! ```json\n{"headline": "h"}\n``` Done.') == {"headline": "h"}


@pytest.mark.parametrize("raw", ["", "no json here", "[1, 2]", "{broken"])
def test_parse_json_object_rejects_unusable_output(raw: str) -> None:
    with pytest.raises(BriefParseError):
        parse_json_object(raw)


def test_merge_brief_fields_falls_back_per_field_and_clips() -> None:
    fallback = Brief(
        headline="Fallback headline",
        summary="Fallback summary",
        changed=("1. fallback",),
        unchanged=("Still in play: x",),
        watch_next=("fallback watch",),
    )
    parsed = {
        "headline": "  Model headline  ",
        "summary": "   ",
        "changed": [f"[A{index}] bullet" for index in range(1, 7)],
        "unchanged": ["", "  "],
        "watchNext": "not a list",
    }

    merged = merge_brief_fields(parsed, fallback, SHALLOW)

    assert merged.headline == "Model headline"
    assert merged.summary == "Fallback summary"
    assert merged.changed == ("[A1] bullet", "[A2] bullet", "[A3] bullet")
    assert merged.unchanged == ("Still in play: x",)
    assert merged.watch_next == ("fallback watch",)


def test_prompt_tags_sources_and_limits_rows() -> None:
    highlights = [_highlight(index, watch="Next step") for index in range(8)]

    prompt = build_brief_prompt(highlights, [], SHALLOW, LAST_SEEN)

    assert "[A5]" in prompt
    assert "[A6]\n" not in prompt
    assert "Watchlist hits: Acme" in prompt
    assert "Watch next: Next step" in prompt
    assert "last opened the app at: 2026-03-02T08:30:00+00:00" in prompt
    assert "Potential ongoing threads without fresh updates:\nNone" in prompt


def test_generator_without_client_returns_fallback() -> None:
    fallback = build_fallback_brief([], [], SHALLOW, 0, None)

    result = BriefGenerator(None, None).generate(
        depth=Depth.SHALLOW,
        highlights=[],
        unchanged_titles=[],
        fallback=fallback,
        last_seen_at=None,
    )

    assert result.brief == fallback
    assert result.model_used is None


def test_generator_skips_client_when_budget_exhausted() -> None:
    client = _FakeClient('{"headline": "h"}')
    fallback = build_fallback_brief([_highlight(0)], [], SHALLOW, 1, None)

    result = BriefGenerator(client, _FakeBudget(allowed=False)).generate(  # type: ignore[arg-type]
        depth=Depth.SHALLOW,
        highlights=[_highlight(0)],
        unchanged_titles=[],
        fallback=fallback,
        last_seen_at=None,
    )

    assert result.brief == fallback
    assert client.calls == []


def test_generator_merges_model_output_and_records_usage() -> None:
    content = json.dumps(
        {
            "headline": "Acme deal lands",
            "summary": "Acme signed. Markets moved.",
            "changed": ["Acme signs [A1]"],
            "unchanged": [],
            "watchNext": ["Regulator review [A1]"],
        }
    )
    client = _FakeClient(content)
    budget = _FakeBudget()
    fallback = build_fallback_brief(
        [_highlight(0)], ["Old thread"], DEPTH_CONFIGS[Depth.DEEP], 1, None
    )

    result = BriefGenerator(client, budget).generate(  # type: ignore[arg-type]
        depth=Depth.DEEP,
        highlights=[_highlight(0)],
        unchanged_titles=["Old thread"],
        fallback=fallback,
        last_seen_at=None,
    )

    assert result.brief.headline == "Acme deal lands"
    assert result.brief.unchanged == ("Still in play: Old thread",)
    assert result.model_used == FULL_MODEL
    assert (result.input_tokens, result.output_tokens) == (1200, 300)
    assert budget.recorded == [(1200, 300)]
    assert client.calls[0]["max_tokens"] == 1600


def test_generator_uses_small_model_for_shallow() -> None:
    client = _FakeClient('{"headline": "h", "summary": "s"}')

    BriefGenerator(client, _FakeBudget()).generate(  # type: ignore[arg-type]
        depth=Depth.SHALLOW,
        highlights=[],
        unchanged_titles=[],
        fallback=Brief(headline="f", summary="f"),
        last_seen_at=None,
    )

    assert client.calls[0]["model"] == SMALL_MODEL


def test_generator_dead_letters_unparseable_output(tmp_path: Path) -> None:
    client = _FakeClient("I cannot help with that.")
    fallback = Brief(headline="fallback", summary="fallback")

    generator = BriefGenerator(client, _FakeBudget(), failure_dir=tmp_path)  # type: ignore[arg-type]
    result = generator.generate(
        depth=Depth.MEDIUM,
        highlights=[],
        unchanged_titles=[],
        fallback=fallback,
        last_seen_at=None,
        snapshot_hash="hash-1",
    )

    assert result.brief == fallback
    dead_letters = list(tmp_path.glob("failure_hash-1_brief_parse_*.json"))
    assert len(dead_letters) == 1
    body = json.loads(dead_letters[0].read_text(encoding="utf-8"))
    assert body["content"] == "I cannot help with that."
    assert body["stage"] == "brief_parse"


def test_generator_falls_back_when_client_raises() -> None:
    client = _FakeClient(error=RuntimeError("upstream 503"))
    fallback = Brief(headline="fallback", summary="fallback")

    result = BriefGenerator(client, _FakeBudget()).generate(  # type: ignore[arg-type]
        depth=Depth.SHALLOW,
        highlights=[],
        unchanged_titles=[],
        fallback=fallback,
        last_seen_at=None,
    )

    assert result.brief == fallback
    assert result.model_used is None

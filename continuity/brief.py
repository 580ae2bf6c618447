"""Narrative brief generation with a deterministic fallback."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from jsonschema import ValidationError, validate

from continuity.budget import BudgetGatekeeper
from continuity.failures import GenerationFailure, save_dead_letter
from continuity.llm import LLMResult, model_for_depth
from continuity.normalization import ensure_utc
from continuity.schemas import BRIEF_FIELD_SCHEMAS
from models import DEPTH_CONFIGS, Brief, Depth, DepthConfig, GeneratedBrief, Highlight

logger = logging.getLogger(__name__)

MAX_UNCHANGED_BULLETS = 3
RUNNER_UP_SOURCES = 2
FIRST_VISIT_LABEL = "in the last 24 hours"
CAUGHT_UP_SUMMARY = "You are caught up. No meaningful deltas were detected in your tracked feed."

SYSTEM_PROMPT = (
    "You write short, factual catch-up briefs for a personal news reader. "
    "You only use the sources you are given and you answer with JSON only."
)


class BriefParseError(ValueError):
    """Raised when model output does not contain a usable JSON object."""


class NarrativeClient(Protocol):
    def chat(
        self,
        *,
        model: str,
        system_prompt: str | None,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 1000,
    ) -> LLMResult: ...


def citation_token(index: int) -> str:
    return f"[A{index + 1}]"


def build_fallback_brief(
    highlights: Sequence[Highlight],
    unchanged_titles: Sequence[str],
    depth_config: DepthConfig,
    new_articles: int,
    last_seen_at: datetime | None,
) -> Brief:
    """Brief assembled purely from highlights; always complete."""
    since_label = (
        f"since {ensure_utc(last_seen_at).strftime('%Y-%m-%d %H:%M UTC')}"
        if last_seen_at
        else FIRST_VISIT_LABEL
    )

    if new_articles > 0:
        noun = "story" if new_articles == 1 else "stories"
        headline = f"{new_articles} new {noun} {since_label}"
    else:
        headline = f"No major new updates {since_label}"

    if highlights:
        top = highlights[0]
        runners_up = ", ".join(
            item.source for item in highlights[1 : 1 + RUNNER_UP_SOURCES]
        )
        summary = (
            f"{top.title} leads the change set, followed by "
            f"{runners_up or 'broader coverage shifts'}."
        )
    else:
        summary = CAUGHT_UP_SUMMARY

    changed = tuple(
        f"{index + 1}. {item.title} ({item.source})"
        for index, item in enumerate(highlights[: depth_config.changed_bullet_limit])
    )
    unchanged = tuple(
        f"Still in play: {title}" for title in unchanged_titles[:MAX_UNCHANGED_BULLETS]
    )
    watch_next = tuple(
        item.watch_for_next for item in highlights if item.watch_for_next
    )[: depth_config.watch_next_limit]

    return Brief(
        headline=headline,
        summary=summary,
        changed=changed,
        unchanged=unchanged,
        watch_next=watch_next,
    )


def build_brief_prompt(
    highlights: Sequence[Highlight],
    unchanged_titles: Sequence[str],
    depth_config: DepthConfig,
    last_seen_at: datetime | None,
) -> str:
    rows: list[str] = []
    for index, item in enumerate(highlights[: depth_config.max_source_articles]):
        lines = [
            citation_token(index),
            f"Title: {item.title}",
            f"Source: {item.source}",
            f"Published: {item.published_at or 'unknown'}",
            f"Topic: {item.topic}",
            f"Reason: {item.reason}",
        ]
        if item.watchlist_matches:
            lines.append(f"Watchlist hits: {', '.join(item.watchlist_matches)}")
        if item.watch_for_next:
            lines.append(f"Watch next: {item.watch_for_next}")
        rows.append("\n".join(lines))

    source_block = "\n\n".join(rows) if rows else "None"
    unchanged_context = (
        "\n".join(f"{index + 1}. {title}" for index, title in enumerate(unchanged_titles))
        if unchanged_titles
        else "None"
    )

    if last_seen_at:
        last_seen_instruction = (
            f"The reader last opened the app at: {ensure_utc(last_seen_at).isoformat()}."
        )
    else:
        last_seen_instruction = (
            "This looks like the reader's first visit, so summarize the last 24 hours."
        )

    return f"""You are generating a "Since You Last Read" catch-up for a returning user.
{last_seen_instruction}

Use only the provided source set. Do not invent facts.

Source updates:
{source_block}

Potential ongoing threads without fresh updates:
{unchanged_context}

Return EXACTLY valid JSON (no markdown, no code fences):
{{
  "headline": "One sentence. Mention what changed since last read.",
  "summary": "Two concise sentences with concrete context.",
  "changed": ["Up to {depth_config.changed_bullet_limit} bullets. Every bullet must include at least one citation token like [A1]."],
  "unchanged": ["0-{MAX_UNCHANGED_BULLETS} bullets describing still-open threads."],
  "watchNext": ["Up to {depth_config.watch_next_limit} bullets with specific follow-ups and a citation token when supported."]
}}

Keep bullets short and scannable. Preserve citation tokens exactly as [A#]."""


def parse_json_object(raw_text: str) -> dict[str, Any]:
    """Parse model output as a JSON object.

    Tries the whole text first, then the span from the first ``{`` to the
    last ``}`` to get past prose or code fences around the payload.
    """
    text = raw_text.strip()
    if not text:
        raise BriefParseError("Model returned empty response")

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise BriefParseError("No JSON object found in model output")

    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise BriefParseError("Invalid JSON in model output") from exc

    if not isinstance(parsed, dict):
        raise BriefParseError("Top-level JSON payload must be an object")
    return parsed


def merge_brief_fields(
    parsed: dict[str, Any], fallback: Brief, depth_config: DepthConfig
) -> Brief:
    """Take each valid model field, keeping the fallback's value for the rest."""
    return Brief(
        headline=_valid_text(parsed, "headline", fallback.headline),
        summary=_valid_text(parsed, "summary", fallback.summary),
        changed=_valid_list(parsed, "changed", fallback.changed)[
            : depth_config.changed_bullet_limit
        ],
        unchanged=_valid_list(parsed, "unchanged", fallback.unchanged)[:MAX_UNCHANGED_BULLETS],
        watch_next=_valid_list(parsed, "watchNext", fallback.watch_next)[
            : depth_config.watch_next_limit
        ],
    )


def _valid_text(parsed: dict[str, Any], key: str, fallback: str) -> str:
    value = parsed.get(key)
    try:
        validate(value, BRIEF_FIELD_SCHEMAS[key])
    except ValidationError:
        return fallback
    return str(value).strip()


def _valid_list(parsed: dict[str, Any], key: str, fallback: tuple[str, ...]) -> tuple[str, ...]:
    value = parsed.get(key)
    try:
        validate(value, BRIEF_FIELD_SCHEMAS[key])
    except ValidationError:
        return fallback
    cleaned = tuple(item.strip() for item in value if item.strip())
    return cleaned or fallback


class BriefGenerator:
    """Generate a brief through the narrative client when allowed, else fall back.

    Any failure on the generation path yields the fallback brief; the caller
    never sees an exception from here.
    """

    def __init__(
        self,
        client: NarrativeClient | None,
        budget: BudgetGatekeeper | None,
        *,
        failure_dir: Path | None = None,
        temperature: float = 0.2,
    ) -> None:
        self._client = client
        self._budget = budget
        self._failure_dir = failure_dir
        self._temperature = temperature

    def generate(
        self,
        *,
        depth: Depth,
        highlights: Sequence[Highlight],
        unchanged_titles: Sequence[str],
        fallback: Brief,
        last_seen_at: datetime | None,
        snapshot_hash: str = "unknown",
    ) -> GeneratedBrief:
        if self._client is None:
            return GeneratedBrief(brief=fallback)

        if self._budget is not None:
            status = self._budget.check_budget()
            if not status.allowed:
                logger.info(
                    "Daily generation budget reached (%d/%d cents); using fallback brief",
                    status.spent_cents,
                    status.budget_cents,
                )
                return GeneratedBrief(brief=fallback)

        depth_config = DEPTH_CONFIGS[depth]
        model = model_for_depth(depth)
        prompt = build_brief_prompt(highlights, unchanged_titles, depth_config, last_seen_at)

        try:
            result = self._client.chat(
                model=model,
                system_prompt=SYSTEM_PROMPT,
                user_prompt=prompt,
                temperature=self._temperature,
                max_tokens=depth_config.max_tokens,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Brief generation failed for %s: %s", snapshot_hash, exc)
            return GeneratedBrief(brief=fallback)

        if self._budget is not None:
            self._budget.record_usage(result.input_tokens, result.output_tokens)

        try:
            parsed = parse_json_object(result.content)
        except BriefParseError as exc:
            logger.warning("Unparseable brief from %s: %s", result.model, exc)
            self._record_failure(snapshot_hash, str(exc), result)
            return GeneratedBrief(
                brief=fallback,
                model_used=result.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            )

        return GeneratedBrief(
            brief=merge_brief_fields(parsed, fallback, depth_config),
            model_used=result.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

    def _record_failure(self, snapshot_hash: str, error: str, result: LLMResult) -> None:
        if self._failure_dir is None:
            return
        try:
            save_dead_letter(
                self._failure_dir,
                GenerationFailure(
                    snapshot_hash=snapshot_hash,
                    stage="brief_parse",
                    error=error,
                    model=result.model,
                    content=result.content,
                ),
            )
        except OSError as exc:
            logger.warning("Failed to write dead letter for %s: %s", snapshot_hash, exc)

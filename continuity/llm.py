"""Chat completions against OpenRouter for brief generation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any

from openai import APIConnectionError, OpenAI, RateLimitError

from config import AppConfig
from continuity.resilience import TRANSIENT_EXCEPTIONS, ResiliencePolicy
from models import Depth

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_APP_TITLE = "Continuity Engine"
SMALL_MODEL = "anthropic/claude-3.5-haiku"
FULL_MODEL = "anthropic/claude-sonnet-4"

# APITimeoutError subclasses APIConnectionError.
RETRYABLE_SDK_ERRORS = TRANSIENT_EXCEPTIONS + (APIConnectionError, RateLimitError)


def model_for_depth(depth: Depth) -> str:
    """Shallow reports use the cheap model; anything deeper uses the full one."""
    return SMALL_MODEL if depth == Depth.SHALLOW else FULL_MODEL


@dataclass(frozen=True)
class LLMResult:
    """Text and token accounting for one completion."""

    model: str
    content: str
    input_tokens: int
    output_tokens: int
    raw_response: dict[str, Any]

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_response(cls, response: Any, *, requested_model: str) -> LLMResult:
        input_tokens, output_tokens = _usage_counts(response)
        return cls(
            model=str(getattr(response, "model", None) or requested_model),
            content=_message_text(response),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            raw_response=response.model_dump() if hasattr(response, "model_dump") else {},
        )


def build_messages(system_prompt: str | None, user_prompt: str) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
    messages.append({"role": "user", "content": user_prompt})
    return messages


class OpenRouterClient:
    """OpenAI SDK pointed at OpenRouter, wrapped in retry and breaker policy.

    The request timeout comes from ``GENERATION_TIMEOUT_SECONDS`` unless
    overridden; ``client`` lets tests substitute the SDK object. The SDK's own
    retries are disabled so ``MAX_EXTERNAL_RETRIES`` bounds the attempts.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        timeout_seconds: float | None = None,
        client: Any = None,
    ) -> None:
        self._client = client or OpenAI(
            api_key=config.openrouter_api_key,
            base_url=OPENROUTER_BASE_URL,
            timeout=timeout_seconds or config.generation_timeout_seconds,
            max_retries=0,
            default_headers={"X-Title": OPENROUTER_APP_TITLE},
        )
        self._resilience = ResiliencePolicy(
            name="openrouter_chat",
            max_attempts=config.max_external_retries,
            retry_on=RETRYABLE_SDK_ERRORS,
        )

    def chat(
        self,
        *,
        model: str,
        system_prompt: str | None,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 1000,
    ) -> LLMResult:
        request = partial(
            self._client.chat.completions.create,
            model=model,
            messages=build_messages(system_prompt, user_prompt),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        result = LLMResult.from_response(
            self._resilience.execute(request), requested_model=model
        )
        if not result.content:
            logger.warning("Empty completion from %s (%d output tokens)", model, result.output_tokens)
        return result


def _message_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if content is None:
        return ""
    return content if isinstance(content, str) else str(content)


def _usage_counts(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return 0, 0
    return (
        int(getattr(usage, "prompt_tokens", 0) or 0),
        int(getattr(usage, "completion_tokens", 0) or 0),
    )

"""Retry, circuit-breaker, and bounded-call helpers for collaborator I/O."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ValueError / TypeError / KeyError are programming or payload errors and
# must not be retried.
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    OSError,
    ConnectionError,
    TimeoutError,
)


class ExternalServiceError(RuntimeError):
    """Raised when a collaborator call fails after retries."""


class CircuitBreakerOpenError(ExternalServiceError):
    """Raised when the breaker short-circuits a call."""


class BreakerState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Thread-safe breaker that stops calling a service that keeps failing."""

    name: str
    failure_threshold: int = 3
    cooldown_seconds: float = 120.0

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    def allow(self) -> bool:
        """Return whether a call may proceed, moving OPEN to HALF_OPEN after cooldown."""
        with self._lock:
            if self._state != BreakerState.OPEN:
                return True
            if time.monotonic() - self._opened_at >= self.cooldown_seconds:
                self._state = BreakerState.HALF_OPEN
                return True
            return False

    def on_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._state = BreakerState.CLOSED
            self._opened_at = 0.0

    def on_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if (
                self._state == BreakerState.HALF_OPEN
                or self._consecutive_failures >= self.failure_threshold
            ):
                self._state = BreakerState.OPEN
                self._opened_at = time.monotonic()

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state


class ResiliencePolicy:
    """Retry transient failures and trip a breaker on repeated exhaustion."""

    def __init__(
        self,
        *,
        name: str,
        max_attempts: int,
        failure_threshold: int = 3,
        cooldown_seconds: float = 120.0,
        max_backoff_seconds: float = 2.0,
        retry_on: tuple[type[BaseException], ...] = TRANSIENT_EXCEPTIONS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.name = name
        self.max_attempts = max_attempts
        self._max_backoff_seconds = max_backoff_seconds
        self._retry_on = retry_on
        self.breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
        )

    def execute(self, operation: Callable[[], T]) -> T:
        """Run *operation* under the retry policy, guarded by the breaker."""
        if not self.breaker.allow():
            raise CircuitBreakerOpenError(f"{self.name} circuit is open; skipping call")

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.2, max=self._max_backoff_seconds)
            + wait_random(0, 0.1),
            retry=retry_if_exception_type(self._retry_on),
            reraise=True,
        )

        try:
            result = retryer(operation)
        except Exception as exc:
            self.breaker.on_failure()
            raise ExternalServiceError(f"{self.name} failed: {exc}") from exc

        self.breaker.on_success()
        return result


def result_or_default(
    future: Future[T],
    *,
    name: str,
    timeout_seconds: float,
    default: T,
) -> T:
    """Wait on an optional enrichment; any failure or timeout yields *default*."""
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        logger.warning("%s timed out after %.1fs; using default", name, timeout_seconds)
    except Exception as exc:  # noqa: BLE001
        logger.warning("%s failed: %s; using default", name, exc)
    return default

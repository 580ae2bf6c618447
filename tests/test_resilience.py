"""Tests for resilience policies and bounded waits."""

from __future__ import annotations

import threading
import warnings
from concurrent.futures import Future, ThreadPoolExecutor

import pytest

from continuity.resilience import (
    BreakerState,
    CircuitBreakerOpenError,
    ExternalServiceError,
    ResiliencePolicy,
    result_or_default,
)


def _raise(exc: Exception) -> None:
    raise exc


def test_resilience_policy_retries_transient_then_succeeds() -> None:
    attempts = {"count": 0}

    def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ConnectionError("transient")
        return "ok"

    policy = ResiliencePolicy(name="test", max_attempts=3, max_backoff_seconds=0.01)
    result = policy.execute(flaky)

    assert result == "ok"
    assert attempts["count"] == 3
    assert policy.breaker.state == BreakerState.CLOSED


def test_programming_errors_are_not_retried() -> None:
    attempts = {"count": 0}

    def broken() -> None:
        attempts["count"] += 1
        raise ValueError("bad payload")

    policy = ResiliencePolicy(name="test", max_attempts=3)

    with pytest.raises(ExternalServiceError):
        policy.execute(broken)

    assert attempts["count"] == 1


def test_circuit_breaker_opens_after_failed_calls() -> None:
    policy = ResiliencePolicy(
        name="test",
        max_attempts=1,
        failure_threshold=2,
        cooldown_seconds=60,
    )

    with pytest.raises(ExternalServiceError):
        policy.execute(lambda: _raise(RuntimeError("fail1")))
    with pytest.raises(ExternalServiceError):
        policy.execute(lambda: _raise(RuntimeError("fail2")))

    assert policy.breaker.state == BreakerState.OPEN

    with pytest.raises(CircuitBreakerOpenError):
        policy.execute(lambda: "should not run")


def test_result_or_default_returns_value() -> None:
    future: Future[int] = Future()
    future.set_result(7)

    assert result_or_default(future, name="value", timeout_seconds=0.1, default=0) == 7


def test_result_or_default_on_exception() -> None:
    future: Future[list[str]] = Future()
    future.set_exception(OSError("disk gone"))

    assert result_or_default(future, name="watchlist", timeout_seconds=0.1, default=[]) == []


def test_result_or_default_on_timeout() -> None:
    release = threading.Event()
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(lambda: release.wait(5) and "late")

        value = result_or_default(
            future, name="engagement", timeout_seconds=0.05, default="default"
        )
    finally:
        release.set()
        pool.shutdown(wait=True)

    assert value == "default"


class _ServiceBusy(Exception):
    pass


def test_custom_retry_on_errors_are_retried_without_warnings() -> None:
    attempts = {"count": 0}

    def busy() -> str:
        attempts["count"] += 1
        if attempts["count"] < 2:
            raise _ServiceBusy("try later")
        return "ok"

    policy = ResiliencePolicy(
        name="test",
        max_attempts=2,
        max_backoff_seconds=0.01,
        retry_on=(_ServiceBusy,),
    )
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert policy.execute(busy) == "ok"

    assert attempts["count"] == 2


def test_breaker_half_opens_after_cooldown() -> None:
    policy = ResiliencePolicy(
        name="test", max_attempts=1, failure_threshold=1, cooldown_seconds=0
    )

    with pytest.raises(ExternalServiceError):
        policy.execute(lambda: _raise(RuntimeError("down")))

    assert policy.breaker.allow() is True
    assert policy.breaker.state == BreakerState.HALF_OPEN

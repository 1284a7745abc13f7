from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from cinevault.core.config import get_settings
from cinevault.core.errors import IntegrationUnavailableError
from cinevault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BREAKER_CLOSED = "closed"
BREAKER_OPEN = "open"
BREAKER_HALF_OPEN = "half_open"


def is_transient(exc: Exception) -> bool:
    # Timeouts, socket errors and upstream 5xx; everything else is the caller's problem.
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_for(self, attempt: int) -> float:
        # Exponential backoff in seconds with +/-50% jitter.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy(*, timeout_ms: int | None = None) -> RetryPolicy:
    settings = get_settings()
    ceiling = settings.ext_call_timeout_ms
    return RetryPolicy(
        timeout_ms=ceiling if timeout_ms is None else min(timeout_ms, ceiling),
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def single_attempt_policy(*, timeout_ms: int | None = None) -> RetryPolicy:
    # Non-idempotent gateway writes get a deadline but never a silent retry.
    return RetryPolicy(
        timeout_ms=default_retry_policy(timeout_ms=timeout_ms).timeout_ms,
        max_attempts=1,
        backoff_ms=0,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Await ``func`` under the policy's per-attempt deadline.

    Failures that ``retryable`` accepts are retried with backoff until the
    attempts run out; the last error is re-raised unchanged.
    """
    policy = policy or default_retry_policy()
    should_retry = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:
            if attempt == attempts or not should_retry(exc):
                raise
            increment_counter("external_retries_total")
            logger.info("external_retry attempt=%s error=%s", attempt, type(exc).__name__)
            await asyncio.sleep(policy.delay_for(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


class CircuitBreaker:
    """In-process breaker for one gateway.

    Opens after ``failure_threshold`` consecutive failures and rejects calls
    with ``IntegrationUnavailableError`` for ``open_seconds``. After that at
    most ``half_open_trials`` calls go through; a success closes the breaker
    and a failure opens it again.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self._config = config or CircuitBreakerConfig.from_settings()
        self._clock = clock or time.monotonic
        self._state = BREAKER_CLOSED
        self._failures = 0
        self._trials = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        return self._state

    def _move_to(self, target: str) -> None:
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, self._state, target)
        increment_counter(f"circuit_breaker_transition_total.{self.name}.{target}")
        self._state = target
        self._failures = 0
        self._trials = 0
        if target == BREAKER_OPEN:
            self._opened_at = self._clock()

    def before_call(self) -> None:
        if self._state == BREAKER_OPEN:
            if self._clock() - self._opened_at < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            self._move_to(BREAKER_HALF_OPEN)
        if self._state == BREAKER_HALF_OPEN:
            if self._trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            self._trials += 1

    def record_success(self) -> None:
        if self._state != BREAKER_CLOSED:
            self._move_to(BREAKER_CLOSED)
        self._failures = 0

    def record_failure(self) -> None:
        if self._state == BREAKER_OPEN:
            return
        if self._state == BREAKER_HALF_OPEN:
            self._move_to(BREAKER_OPEN)
            return
        self._failures += 1
        if self._failures >= self._config.failure_threshold:
            self._move_to(BREAKER_OPEN)

"""Bounded retry with exponential backoff for outbound gateway calls."""
from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Any, TypeVar

from app.config import settings
from app.exceptions import TransientGatewayError
from app.metrics import GATEWAY_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(
    max_jitter_ms: int = 100,
    rng: Callable[[], float] = random.random,
) -> Callable[[int], float]:
    """delay(attempt) = 2**attempt seconds + uniform jitter in [0, max_jitter_ms]."""

    def delay(attempt: int) -> float:
        return float(2**attempt) + rng() * max_jitter_ms / 1000.0

    return delay


def is_transient_gateway_error(exc: BaseException) -> bool:
    return isinstance(exc, TransientGatewayError)


class RetryPolicy:
    """Retry a callable on errors the predicate accepts.

    ``max_attempts`` counts retries, so a call runs at most
    ``max_attempts + 1`` times. ``sleep`` is injectable so tests run
    without real delays.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient_gateway_error,
        backoff: Callable[[int], float] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Callable[[BaseException, int, float], None] | None = None,
        name: str = "gateway",
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.max_attempts = max_attempts
        self.is_retryable = is_retryable
        self.backoff = backoff or exponential_backoff()
        self.sleep = sleep
        self.on_retry = on_retry
        self.name = name

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                attempt += 1
                delay = self.backoff(attempt)
                logger.warning(
                    "Retry %d/%d for %s after %.3fs: %s",
                    attempt,
                    self.max_attempts,
                    self.name,
                    delay,
                    exc,
                    extra={"attempt": attempt, "delay_seconds": round(delay, 3)},
                )
                GATEWAY_RETRIES.labels(self.name).inc()
                if self.on_retry is not None:
                    self.on_retry(exc, attempt, delay)
                self.sleep(delay)


def gateway_retry_policy(
    sleep: Callable[[float], None] = time.sleep,
    name: str = "gateway",
) -> RetryPolicy:
    """Default policy for payment gateway calls, built from settings."""
    return RetryPolicy(
        settings.gateway_retry_attempts,
        is_retryable=is_transient_gateway_error,
        backoff=exponential_backoff(settings.gateway_retry_max_jitter_ms),
        sleep=sleep,
        name=name,
    )

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from skillmint.core.config import get_settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def admission_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.request_deadline_ms,
        max_attempts=settings.install_max_attempts,
        backoff_ms=settings.install_retry_backoff_ms,
    )


def reasoner_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.reasoner_timeout_ms,
        max_attempts=settings.reasoner_max_attempts,
        backoff_ms=settings.reasoner_backoff_ms,
    )


def backoff_seconds(policy: RetryPolicy, attempt: int) -> float:
    # Exponential backoff with jitter spreads out retries from racing writers.
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "call",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            logger.warning(
                "retry_scheduled operation=%s attempt=%s error=%s",
                operation,
                attempt,
                type(exc).__name__,
            )
            await asyncio.sleep(backoff_seconds(policy, attempt))
            attempt += 1

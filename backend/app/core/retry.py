"""
Retry helper — bounded exponential back-off with jitter.

Retry policy:
  RateLimited / NetworkError / ProviderTimeout → wait, then retry
  anything else (InvalidCredentials, EmbeddingFailed, ...) → raise immediately

Delay for attempt n (1-based):
  min(base_delay × 2^(n-1), max_delay) ± jitter × delay
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from app.core.config import RetryPolicy
from app.core.errors import RETRYABLE_ERRORS, classify_provider_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before retry `attempt` (1-based), jitter included."""
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    if policy.jitter and delay:
        delay += random.uniform(-policy.jitter, policy.jitter) * delay
    return max(0.0, delay)


async def call_with_retry(
    fn:     Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label:  str,
) -> T:
    """
    Await `fn()` until it succeeds, a non-retryable error occurs, or
    `policy.max_retries` retries are spent.

    Provider exceptions are translated with classify_provider_error(), so the
    caller always sees a typed RAGServiceError.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            error = classify_provider_error(exc)
            if not isinstance(error, RETRYABLE_ERRORS) or attempt >= policy.max_retries:
                if error is not exc:
                    raise error from exc
                raise

            attempt += 1
            delay = backoff_delay(policy, attempt)
            logger.warning(
                "Retry | call=%s attempt=%d/%d delay=%.1fs error=%s",
                label, attempt, policy.max_retries, delay, type(error).__name__,
            )
            await asyncio.sleep(delay)

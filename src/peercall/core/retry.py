"""Publish retry with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from peercall.models.config import RetryPolicy

logger = logging.getLogger("peercall.retry")

__all__ = ["RetryPolicy", "backoff_delay", "retry_with_backoff"]

T = TypeVar("T")


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before retry number ``attempt + 1`` (0-based), capped by the policy."""
    return min(
        policy.base_delay_seconds * (policy.exponential_base**attempt),
        policy.max_delay_seconds,
    )


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    policy: RetryPolicy,
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await *fn* until it succeeds or ``policy.max_retries`` retries are spent.

    The last exception is re-raised once retries are exhausted.
    """
    last_exc: Exception | None = None
    attempts = 1 + policy.max_retries
    for attempt in range(attempts):
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            last_exc = exc
            if attempt + 1 >= attempts:
                break
            delay = backoff_delay(policy, attempt)
            logger.warning(
                "Send attempt %d/%d failed (%s), retrying in %.1fs",
                attempt + 1,
                attempts,
                exc,
                delay,
                extra={"attempt": attempt + 1, "delay": delay},
            )
            await asyncio.sleep(delay)

    assert last_exc is not None
    raise last_exc

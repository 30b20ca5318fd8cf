"""Retry policy for calls to long-running external collaborators.

The infrastructure automation client wraps its outbound calls in
:func:`async_retry_with_backoff` so the backoff policy lives here and
never leaks into the onboarding state machine.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    """Await *fn* with retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument callable returning an awaitable.  It is invoked from
        scratch on every attempt, so it must be safe to call repeatedly.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only exceptions whose type appears in this tuple are considered for
        retry.  All other exceptions propagate immediately.
    should_retry:
        Optional predicate for finer control, e.g. retrying an HTTP 503 but
        not an HTTP 400 carried by the same exception type.

    Returns
    -------
    T
        The result of *fn* on the first successful attempt.

    Raises
    ------
    Exception
        The last exception raised by *fn* after all retry attempts are
        exhausted, or the first non-retryable one.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception

"""Bounded exponential backoff for transient billing failures.

Used by the webhook processor and the batch processor around whole units
of work (one transaction per attempt).  Only transient infrastructure
errors are retried; validation and business errors propagate on the first
attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError

from billing_engine.errors import TransientBillingError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Datastore timeouts, dropped connections, and explicit transient errors.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    TimeoutError,
    ConnectionError,
    TransientBillingError,
)


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=0.5,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` if *exc* is worth retrying."""
    return isinstance(exc, TRANSIENT_ERRORS)


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
    *,
    operation: str = "operation",
) -> T:
    """Await ``fn()`` with retry and exponential backoff.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory.  Each attempt calls it afresh, so it
        must open its own transaction and be safe to repeat.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Exception types that trigger a retry.  Anything else propagates
        immediately.
    operation:
        Label used in log lines.

    Returns
    -------
    T
        The result of the first successful attempt.

    Raises
    ------
    Exception
        The last retryable exception once attempts are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d of %s after %.2fs: %s",
                attempt + 1,
                config.max_retries,
                operation,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception

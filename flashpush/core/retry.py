"""Retry helpers for storage reads.

Only storage reads are retried, once, with a short pause. Gateway sends are
never retried here; that belongs to the gateway's own transport.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError

from flashpush.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 2
    backoff_base: float = 0.5
    backoff_max: float = 5.0
    jitter: bool = False
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (SQLAlchemyError,)
    )


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
) -> T:
    """
    Execute async function with exponential backoff retry.

    Each retry waits min(backoff_base * 2^attempt, backoff_max) seconds,
    with random jitter applied if enabled.

    Args:
        fn: Async function to execute (no arguments)
        config: Retry configuration, uses defaults if not provided
        operation_name: Name for logging purposes

    Returns:
        Result of fn()

    Raises:
        Exception: The last exception if all attempts are exhausted
    """
    config = config or RetryConfig()

    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except config.retryable_exceptions as e:
            if attempt + 1 == config.max_attempts:
                logger.bind(
                    operation=operation_name,
                    attempts=config.max_attempts,
                    error=str(e),
                ).error("retry_exhausted")
                raise

            delay = min(config.backoff_base * (2**attempt), config.backoff_max)
            if config.jitter:
                delay *= 0.5 + random.random()

            logger.bind(
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
            ).warning("retry_attempt")
            await asyncio.sleep(delay)

    raise RuntimeError(f"{operation_name}: retry loop exited without a result")


def storage_read_retry(delay_seconds: float = 0.5) -> RetryConfig:
    """Retry policy for storage reads: one extra attempt after a short pause."""
    return RetryConfig(max_attempts=2, backoff_base=delay_seconds, jitter=False)

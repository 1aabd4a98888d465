"""Retry with exponential backoff for transient backend failures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel

from ..errors import TransientFetchError

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Configuration for retry behavior."""

    max_retries: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0


async def with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    logger=None,
) -> T:
    """Execute an async function, retrying transient failures.

    Only TransientFetchError is retried; anything else propagates at once.

    Args:
        func: Async function to execute
        config: Retry configuration
        logger: Optional logger for retry messages

    Returns:
        Function result

    Raises:
        TransientFetchError: If all retries are exhausted
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except TransientFetchError as e:
            if attempt >= config.max_retries:
                if logger:
                    logger.error(f"All {config.max_retries + 1} attempts failed")
                raise

            delay = min(
                config.base_delay * (config.exponential_base ** attempt),
                config.max_delay,
            )
            if logger:
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s"
                )
            await asyncio.sleep(delay)

"""
Bounded exponential backoff for awaitable operations.

Used by the embedding providers to ride out slow or flaky model servers.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Attributes:
        max_attempts: Maximum number of attempts (including first try)
        initial_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound for any single delay
        backoff_multiplier: Multiplier applied per attempt
        jitter: Whether to add +/-25% random variation
    """

    max_attempts: int = 3
    initial_delay_ms: float = 250.0
    max_delay_ms: float = 4000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Return the delay in seconds to wait after the given 0-based attempt."""
    delay_ms = min(
        config.initial_delay_ms * (config.backoff_multiplier ** attempt),
        config.max_delay_ms,
    )
    if config.jitter:
        delay_ms *= 0.75 + random.random() * 0.5
    return delay_ms / 1000.0


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation_name: str = "operation",
) -> T:
    """
    Await ``operation`` until it succeeds or ``config.max_attempts`` is reached.

    Exceptions outside ``retry_on`` propagate immediately. When attempts are
    exhausted the last retryable exception is re-raised.
    """
    attempts = max(1, config.max_attempts)
    for attempt in range(attempts):
        try:
            result = await operation()
        except retry_on as exc:
            logger.warning(
                "%s failed on attempt %d/%d: %s", operation_name, attempt + 1, attempts, exc
            )
            if attempt == attempts - 1:
                logger.error("%s exhausted all %d attempts", operation_name, attempts)
                raise
            delay = calculate_delay(attempt, config)
            logger.debug("Backing off for %.3fs before retry", delay)
            await asyncio.sleep(delay)
        else:
            if attempt > 0:
                logger.info("%s succeeded after %d attempts", operation_name, attempt + 1)
            return result
    raise RuntimeError("unreachable")  # pragma: no cover


__all__ = ["RetryConfig", "calculate_delay", "retry_async"]

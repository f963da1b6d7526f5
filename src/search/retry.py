"""
Bounded retry with exponential backoff for external calls.

Clients translate transport / HTTP failures into ExternalServiceError with
``retryable`` set for 429 and 5xx (and connection errors). Only those
are retried; everything else propagates on the first failure.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from core.exceptions import ExternalServiceError
from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code <= 599


def calculate_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.2,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    Formula: min(base * 2^(attempt-1), max) +/- jitter
    """
    if attempt <= 0 or base_delay <= 0:
        return 0.0
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    return max(0.0, delay * (1 + random.uniform(-jitter, jitter)))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    service: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the attempt budget is spent.

    Cancellation is never retried.

    Raises:
        ExternalServiceError: Non-retryable failure, or the last retryable one.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ExternalServiceError as e:
            if not e.retryable or attempt >= policy.max_attempts:
                if e.retryable:
                    logger.error(
                        "External call failed after retries",
                        service=service,
                        attempts=attempt,
                        status_code=e.status_code,
                        error=str(e),
                    )
                raise

            delay = calculate_backoff_delay(attempt, policy.base_delay, policy.max_delay)
            logger.warning(
                "Retrying external call",
                service=service,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                status_code=e.status_code,
                delay_seconds=round(delay, 2),
            )
            await sleep(delay)
            attempt += 1

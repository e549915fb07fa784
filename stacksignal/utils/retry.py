"""
Retry with exponential backoff for calls to the classification service
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to retry and how long to wait in between

    max_retries counts retries after the first attempt, so max_retries=3
    allows up to four calls. Delays grow as base_delay * backoff_factor**n,
    capped at max_delay.
    """

    max_retries: int = 3
    base_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: bool = False

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry number retry_number (1-based)"""
        delay = min(self.base_delay * (self.backoff_factor ** (retry_number - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retryable: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Any] = time.sleep,
    description: str = "call",
) -> T:
    """
    Call fn, retrying on retryable exceptions per policy

    Raises:
        The last retryable exception once attempts are exhausted. Exceptions
        outside retryable propagate immediately.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except retryable as exc:
            if attempt == policy.max_attempts:
                logger.warning(f"{description} failed after {policy.max_attempts} attempts: {exc}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} attempt {attempt}/{policy.max_attempts} failed ({exc}), "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover

"""Bounded retry with backoff for fallible external operations."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import RetryExhausted

logger = logging.getLogger("offline.retry")

T = TypeVar("T")


def linear_backoff(attempt: int) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    return attempt * 2


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = linear_backoff

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


DEFAULT_POLICY = RetryPolicy()


class RetryExecutor:
    """Runs an operation until it succeeds or the policy's attempts are used up.

    The executor provides no rollback, so operations must be safe to re-run.
    Exhaustion is always raised as RetryExhausted; whether that is fatal is
    the caller's decision.
    """

    def __init__(self, policy: RetryPolicy = DEFAULT_POLICY, sleep: Callable[[float], None] = time.sleep):
        self.policy = policy
        self._sleep = sleep

    def run(self, operation: Callable[[], T], description: Optional[str] = None) -> T:
        description = description or getattr(operation, "__name__", "operation")
        max_attempts = self.policy.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            logger.debug(f"{description} (attempt {attempt}/{max_attempts})")
            try:
                return operation()
            except Exception as e:
                last_error = e
                logger.warning(f"{description} failed (attempt {attempt}/{max_attempts}): {e}")
                if attempt < max_attempts:
                    delay = self.policy.backoff(attempt)
                    logger.debug(f"Retrying {description} in {delay}s")
                    self._sleep(delay)

        logger.error(f"❌ {description} failed after {max_attempts} attempt(s)")
        raise RetryExhausted(description, max_attempts, last_error) from last_error

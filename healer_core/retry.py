import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from .exceptions import HealerError

logger = logging.getLogger("healer-core.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry budget for work inside one phase."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.PHASE_RETRY_ATTEMPTS,
            base_delay=settings.PHASE_RETRY_BASE_DELAY,
            max_delay=settings.PHASE_RETRY_MAX_DELAY,
        )


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff for the given 0-based attempt, with +/-25% jitter."""
    delay = min(policy.base_delay * (policy.exponential_base ** attempt), policy.max_delay)
    if policy.jitter:
        delay *= 0.75 + random.random() * 0.5
    return max(0.0, delay)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, HealerError) and exc.retryable


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    retry_on: Tuple[Type[BaseException], ...] = (HealerError,),
) -> T:
    """
    Run fn until it succeeds, a non-retryable error is raised, or the
    attempt budget is spent. The last error propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as e:
            attempt += 1
            if not is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = calculate_backoff(attempt - 1, policy)
            logger.warning(
                f"{description} failed ({type(e).__name__}: {e}); "
                f"retry {attempt}/{policy.max_attempts - 1} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

"""
Retry policy and cancellation primitives for pipeline work.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from config.logging_config import get_logger
from core.constants import RETRY_BACKOFF_MODES
from core.exceptions import OperationCancelledError

logger = get_logger(__name__)

T = TypeVar('T')


class CancellationToken:
    """Cooperative cancellation flag whose waits return early once cancelled."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelledError("Operation was cancelled")

    async def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``.

        Returns:
            True if the token was cancelled during (or before) the wait
        """
        if self.is_cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class RetryPolicy:
    """How many times to retry and how long to wait between attempts."""
    max_retries: int = 3
    delay: float = 2.0
    backoff: str = "fixed"  # fixed | exponential
    max_delay: float = 30.0

    def __post_init__(self):
        if self.backoff not in RETRY_BACKOFF_MODES:
            raise ValueError(
                f"Unknown retry backoff '{self.backoff}', expected one of {RETRY_BACKOFF_MODES}"
            )
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.backoff == "exponential":
            return min(self.max_delay, self.delay * (2 ** (attempt - 1)))
        return min(self.max_delay, self.delay)

    @property
    def enabled(self) -> bool:
        return self.max_retries > 0

    @classmethod
    def from_config(cls, config: dict) -> "RetryPolicy":
        return cls(
            max_retries=config.get('max_retries', 3),
            delay=config.get('retry_delay', 2.0),
            backoff=config.get('retry_backoff', 'fixed'),
            max_delay=config.get('max_retry_delay', 30.0)
        )


# Used when an outer loop already retries the whole operation
NO_RETRY = RetryPolicy(max_retries=0, delay=0.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> T:
    """
    Run ``operation`` with retries.

    Args:
        operation: Zero-argument coroutine factory
        policy: Retry policy
        should_retry: Predicate deciding whether an exception is retryable;
            every exception is retried when omitted
        token: Cancellation token checked before each attempt and during waits
        on_retry: Called with (attempt, exception) before each retry wait

    Returns:
        Result of the first successful attempt

    Raises:
        The last exception once retries are exhausted or it is not retryable,
        or OperationCancelledError if the token is cancelled
    """
    attempt = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation()
        except OperationCancelledError:
            raise
        except Exception as e:
            attempt += 1
            retryable = should_retry(e) if should_retry else True
            if not retryable or attempt > policy.max_retries:
                raise
            wait = policy.delay_for(attempt)
            logger.info(
                "Attempt %d failed (%s); retrying in %.2fs", attempt, e, wait
            )
            if on_retry is not None:
                on_retry(attempt, e)
            if token is not None:
                if await token.wait(wait):
                    raise OperationCancelledError("Operation was cancelled") from e
            else:
                await asyncio.sleep(wait)

"""
Retry Strategies

Exponential backoff around a transaction operation, driven by the error
classifier, with cooperative cancellation between attempts.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, TypeVar, Union

from .errors import ClassifiedError, RetryCancelledError, classify_error

T = TypeVar("T")

logger = logging.getLogger(__name__)

RetryObserver = Callable[[int], Union[None, Awaitable[None]]]


@dataclass
class RetryPolicy:
    """
    How many times to retry and how long to wait in between.

    Retry number k (1-based) waits initial_delay_seconds * backoff_multiplier ** (k - 1),
    capped at max_delay_seconds when set. At most max_retries + 1 attempts run.
    """

    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: Optional[float] = None
    on_retry: Optional[RetryObserver] = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.backoff_multiplier < 0:
            raise ValueError("backoff_multiplier must be >= 0")
        if self.max_delay_seconds is not None and self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt`."""
        if attempt < 1:
            raise ValueError("retry numbers start at 1")
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    @classmethod
    def from_settings(cls, on_retry: Optional[RetryObserver] = None) -> "RetryPolicy":
        from ...config import settings

        return cls(
            max_retries=settings.tx_max_retries,
            initial_delay_seconds=settings.tx_initial_delay_seconds,
            backoff_multiplier=settings.tx_backoff_multiplier,
            max_delay_seconds=settings.tx_max_delay_seconds,
            on_retry=on_retry,
        )


class CancellationToken:
    """
    Cooperative cancellation for a retry loop.

    Cancelling never interrupts an attempt already in flight; the loop
    notices before its next attempt or while waiting out a backoff delay.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def _notify_retry(observer: Optional[RetryObserver], attempt: int, operation_name: str) -> None:
    if observer is None:
        return
    try:
        result = observer(attempt)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Retry observer failed for {operation_name} (attempt {attempt}): {e}")


async def _wait_backoff(
    delay: float,
    sleep: Callable[[float], Awaitable[Any]],
    cancel_token: Optional[CancellationToken],
) -> bool:
    """Sleep for the backoff delay. Returns False if cancelled first."""
    if cancel_token is None:
        await sleep(delay)
        return True
    if cancel_token.cancelled:
        return False

    sleeper = asyncio.ensure_future(sleep(delay))
    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, waiter, return_exceptions=True)

    return not cancel_token.cancelled


async def retry_with_backoff(
    operation: Callable[[], Coroutine[Any, Any, T]],
    policy: Optional[RetryPolicy] = None,
    *,
    classify: Callable[[Any], ClassifiedError] = classify_error,
    cancel_token: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds, fails terminally, or attempts run out.

    The failure is re-raised unchanged when it is not retryable or
    the last attempt fails. A cancelled token raises RetryCancelledError.
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"{operation_name} cancelled after {attempt} attempt(s)")
            raise RetryCancelledError(attempts=attempt)

        attempt += 1
        try:
            return await operation()
        except Exception as e:
            classified = classify(e)

            if not classified.retryable:
                logger.warning(
                    f"{operation_name} attempt {attempt}/{policy.max_attempts} failed "
                    f"({classified.kind.value}/{classified.code}), not retryable: {e}"
                )
                raise

            if attempt >= policy.max_attempts:
                logger.warning(
                    f"{operation_name} attempt {attempt}/{policy.max_attempts} failed "
                    f"({classified.kind.value}/{classified.code}), retries exhausted: {e}"
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation_name} attempt {attempt}/{policy.max_attempts} failed "
                f"({classified.kind.value}/{classified.code}): {e}. Retrying in {delay:.1f}s"
            )

        await _notify_retry(policy.on_retry, attempt, operation_name)

        if not await _wait_backoff(delay, sleep, cancel_token):
            logger.info(f"{operation_name} cancelled during backoff after {attempt} attempt(s)")
            raise RetryCancelledError(attempts=attempt)

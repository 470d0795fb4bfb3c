"""Retry policies for remote engine calls.

Every call into an attachment store is bound by a RetryStrategy handed in by
the caller. The store itself never retries on its own.
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    retry,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    retry_if_exception,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Common network exceptions to retry on during connection setup
RETRYABLE_EXCEPTIONS = (
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
    OSError,
    EOFError,
)


def is_transient(exc: BaseException) -> bool:
    """True for failures worth another attempt."""
    if isinstance(exc, asyncio.TimeoutError):
        return True
    return bool(getattr(exc, "transient", False))


@dataclass(frozen=True)
class RetryStrategy:
    """Bounded retry/backoff policy for a single remote call.

    Attributes:
        max_attempts: Attempts per call (1 disables retrying)
        min_wait: Minimum backoff between attempts (seconds)
        max_wait: Maximum backoff between attempts (seconds)
        max_delay: Give up retrying once this much time has passed (seconds)
        timeout: Per-attempt timeout (seconds), None for no timeout
    """
    max_attempts: int = 3
    min_wait: float = 1
    max_wait: float = 10
    max_delay: Optional[float] = None
    timeout: Optional[float] = None

    @classmethod
    def none(cls) -> "RetryStrategy":
        """Single attempt, no timeout."""
        return cls(max_attempts=1, min_wait=0, max_wait=0)

    @classmethod
    def from_config(cls, config: Any) -> "RetryStrategy":
        """Build a strategy from a StoreConfig-like object."""
        return cls(
            max_attempts=max(1, int(getattr(config, "retries", 3))),
            min_wait=float(getattr(config, "retry_min_wait", 1)),
            max_wait=float(getattr(config, "retry_max_wait", 10)),
            timeout=getattr(config, "timeout", None),
        )

    def _stop(self):
        stop = stop_after_attempt(self.max_attempts)
        if self.max_delay is not None:
            stop = stop | stop_after_delay(self.max_delay)
        return stop

    async def run(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run an async call under this policy.

        Only transient failures are retried. The last failure is re-raised
        unchanged. Cancellation is never retried.
        """
        retrying = AsyncRetrying(
            stop=self._stop(),
            wait=wait_exponential(multiplier=1, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if self.timeout is None:
                    return await func(*args, **kwargs)
                return await asyncio.wait_for(func(*args, **kwargs), self.timeout)
        raise AssertionError("unreachable")  # pragma: no cover


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retry logic with exponential backoff.

    Used for async connection setup, which happens outside any
    reconciliation pass.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"with_retry requires an async function, got {func.__name__}")

        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await func(*args, **kwargs)

        return wrapper

    return decorator

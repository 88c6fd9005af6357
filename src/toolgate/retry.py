"""
Bounded Exponential-Backoff Retry

Wraps fallible asynchronous operations (model client calls, tool
execution) and retries them when the classified error kind is retryable.

Retry Rules:
- At most max_attempts calls are made in total
- Delay before attempt n+1 is base_delay * multiplier^(n-1), capped at max_delay
- Rate limit errors are retried here, with the delay widened to at least
  their retry_after, although they are not retryable for the caller
- Non-retryable kinds stop immediately and are re-raised
- The cancellation event is checked before every sleep
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import CancelledError, RateLimitError, ToolGateError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy; delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")


def compute_delay(
    config: RetryConfig, attempt: int, error: ToolGateError | None = None
) -> float:
    """
    Compute the sleep before the next attempt.

    Args:
        config: Retry policy
        attempt: The attempt that just failed (1-based)
        error: The classified error from that attempt

    Returns:
        float: Delay in seconds
    """
    delay = min(config.base_delay * (config.multiplier ** (attempt - 1)), config.max_delay)
    if isinstance(error, RateLimitError):
        delay = max(delay, float(error.retry_after))
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    description: str = "operation",
    on_retry: Callable[[int, ToolGateError, float], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """
    Run an async operation, retrying retryable failures with backoff.

    Args:
        operation: Zero-argument coroutine factory
        config: Retry policy (defaults to RetryConfig())
        description: Name used in log messages
        on_retry: Callback invoked with (attempt, error, delay) before sleeping
        sleep: Awaitable sleeper, injectable for tests
        cancel_event: Cooperative cancellation token

    Returns:
        The operation's result

    Raises:
        ToolGateError: The classified error of the last failed attempt
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc)

            if not (error.retryable or isinstance(error, RateLimitError)):
                logger.debug(
                    f"{description} failed with non-retryable {error.kind.value} error"
                )
                if error is exc:
                    raise
                raise error from exc

            if attempt == config.max_attempts:
                logger.warning(
                    f"{description} failed after {attempt} attempts "
                    f"(correlation_id={error.correlation_id})"
                )
                if error is exc:
                    raise
                raise error from exc

            delay = compute_delay(config, attempt, error)
            logger.info(
                f"{description} attempt {attempt}/{config.max_attempts} failed "
                f"({error.kind.value}); retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, error, delay)

            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError(f"{description} cancelled before retry") from exc
            await sleep(delay)

    # range() above always returns or raises
    raise AssertionError("unreachable")  # pragma: no cover

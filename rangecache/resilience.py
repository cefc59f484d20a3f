"""
Resilience patterns for upstream fetches.

Provides:
- Exponential backoff retry with a capped delay table
- Server retry hints (Retry-After) taking precedence over the table
"""
import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

from rangecache.observability import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 6  # total calls: the first plus 5 retries
    base_delay: float = 1.0  # seconds
    max_delay: float = 16.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.0  # random jitter factor


def compute_delay(
    config: RetryConfig,
    attempt: int,
    retry_after: Optional[float] = None,
) -> float:
    """
    Delay before the retry that follows failed attempt number ``attempt``.

    With the defaults the table is 1s, 2s, 4s, 8s, 16s. A positive
    server hint replaces the table value.
    """
    if retry_after is not None and retry_after > 0:
        return float(retry_after)

    delay = min(
        config.base_delay * (config.exponential_base ** (attempt - 1)),
        config.max_delay
    )
    if config.jitter:
        delay += delay * config.jitter * random.random()
    return delay


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header value into seconds.

    Accepts delta-seconds ("2") or an HTTP-date. Returns None when the
    header is absent or unreadable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        seconds = (when - now).total_seconds()

    return max(seconds, 0.0)


async def retry_with_backoff(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: tuple = (Exception,),
    sleep: Sleep = asyncio.sleep,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    **kwargs
) -> Any:
    """
    Execute function with exponential backoff retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        retryable_exceptions: Exceptions to retry on
        sleep: Awaitable sleep used between attempts
        on_retry: Called with (attempt, delay, error) before each sleep
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        Last exception if all retries fail; non-retryable exceptions at once
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    f"All {config.max_attempts} retry attempts failed",
                    extra={"error": str(e)}
                )
                raise

            delay = compute_delay(config, attempt, getattr(e, "retry_after", None))

            logger.warning(
                f"Attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": delay, "error": str(e)}
            )

            if on_retry is not None:
                on_retry(attempt, delay, e)

            await sleep(delay)

    raise RuntimeError("retry_with_backoff called with max_attempts < 1")

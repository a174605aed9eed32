"""Retry utilities for registry and release API calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

import httpx

from docked.config import RATE_LIMIT_BASE_DELAY
from docked.exceptions import (
    RateLimitExceededError,
    RegistryRateLimitError,
    RegistryUnavailableError,
)
from docked.services.registry_rate_limiter import RateLimitTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth another attempt with the generic backoff
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    httpx.TransportError,
    RegistryUnavailableError,
)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    *,
    tracker: RateLimitTracker,
    rate_limit_base_delay: float = RATE_LIMIT_BASE_DELAY,
) -> T:
    """Call fn, retrying transient failures with exponential backoff.

    A 429 (RegistryRateLimitError) backs off from rate_limit_base_delay
    (5s, 10s, 20s...) and is counted on the tracker. Once the tracker's
    consecutive threshold is reached, RateLimitExceededError is raised
    without further attempts. Other retryable errors back off from
    base_delay. Any success resets the tracker.

    Args:
        fn: Zero-argument coroutine function performing one attempt
        max_retries: Total number of attempts
        base_delay: Base delay in seconds for non-429 failures
        tracker: Consecutive 429 counter shared across registry calls
        rate_limit_base_delay: Base delay in seconds after a 429

    Returns:
        Result of the first successful attempt

    Raises:
        RateLimitExceededError: If the consecutive 429 threshold is reached
        Exception: The last error once attempts are exhausted
    """
    for attempt in range(max_retries):
        try:
            result = await fn()
        except RateLimitExceededError:
            raise
        except RegistryRateLimitError as e:
            if tracker.record_rate_limit_error():
                raise RateLimitExceededError(
                    f"Rate limit exceeded after {tracker.error_count} consecutive 429 responses",
                    registry=e.registry,
                    image=e.image,
                    tag=e.tag,
                    retry_after=e.retry_after,
                ) from e

            if attempt == max_retries - 1:
                raise

            delay = rate_limit_base_delay * (2 ** attempt)
            logger.warning(
                f"Rate limited ({e.describe()}), attempt {attempt + 1}/{max_retries}. "
                f"Retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)
        except RETRYABLE_ERRORS as e:
            if attempt == max_retries - 1:
                logger.error(f"Request failed after {max_retries} attempts: {e}")
                raise

            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"Request attempt {attempt + 1}/{max_retries} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)
        else:
            tracker.record_success()
            return result

    raise ValueError("max_retries must be at least 1")


def async_retry(
    max_attempts: int = 3,
    backoff_base: float = 2.0,
    backoff_max: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (httpx.TransportError,),
):
    """Decorator for retrying async functions on transient errors.

    Waits backoff_base ** (attempt - 1) seconds between attempts, capped at
    backoff_max.

    Example:
        @async_retry(max_attempts=3, exceptions=(httpx.ConnectError,))
        async def fetch_release(client, url):
            return await client.get(url)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise

                    backoff = min(backoff_base ** (attempt - 1), backoff_max)
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {backoff:.1f}s..."
                    )
                    await asyncio.sleep(backoff)

        return wrapper

    return decorator

"""Rate limiting primitives for outbound registry traffic.

Three layers work together:
- ``rate_limit_delay`` pauses before each outbound call, using a delay
  chosen by the provider from its credential tier
- ``RateLimitTracker`` counts consecutive HTTP 429 answers so a run can
  give up once a registry is clearly throttling us
- ``RegistryRateLimiter`` bounds how many lookups a batch run keeps in
  flight per provider, with a sliding one-minute request window
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from docked.config import RATE_LIMIT_ERROR_THRESHOLD, RATE_LIMIT_ERROR_WINDOW

logger = logging.getLogger(__name__)


async def rate_limit_delay(seconds: float) -> None:
    """Sleep before an outbound registry call.

    Args:
        seconds: Provider- and credential-dependent delay; 0 skips the wait
    """
    if seconds > 0:
        await asyncio.sleep(seconds)


class RateLimitTracker:
    """Counts consecutive 429 responses across every registry call.

    A single success anywhere resets the counter. If the last 429 is older
    than the window, the count starts over.
    """

    def __init__(
        self,
        threshold: int = RATE_LIMIT_ERROR_THRESHOLD,
        window_seconds: float = RATE_LIMIT_ERROR_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._count = 0
        self._last_error_at: float | None = None

    @property
    def error_count(self) -> int:
        return self._count

    def record_rate_limit_error(self) -> bool:
        """Record one 429.

        Returns:
            True once the consecutive count has reached the threshold
        """
        now = self._clock()
        if self._last_error_at is not None and now - self._last_error_at > self.window_seconds:
            self._count = 0
        self._count += 1
        self._last_error_at = now

        if self._count >= self.threshold:
            logger.warning(
                f"Rate limit threshold reached: {self._count} consecutive 429 responses"
            )
            return True
        return False

    def record_success(self) -> None:
        if self._count:
            logger.debug(f"Registry call succeeded, clearing {self._count} rate limit errors")
        self.reset()

    def reset(self) -> None:
        self._count = 0
        self._last_error_at = None


@dataclass
class ProviderRateLimits:
    """Concurrency and request-rate budget for one provider.

    Attributes:
        requests_per_minute: Maximum requests in a sliding one-minute window
        concurrent_limit: Maximum lookups in flight at once
    """

    requests_per_minute: int
    concurrent_limit: int


# Conservative budgets. Docker Hub allows 100 anonymous pulls per 6 hours,
# GitHub's REST API 60 anonymous requests per hour.
PROVIDER_RATE_LIMITS: dict[str, ProviderRateLimits] = {
    "dockerhub": ProviderRateLimits(requests_per_minute=30, concurrent_limit=5),
    "ghcr": ProviderRateLimits(requests_per_minute=60, concurrent_limit=10),
    "gitlab": ProviderRateLimits(requests_per_minute=60, concurrent_limit=5),
    "gcr": ProviderRateLimits(requests_per_minute=60, concurrent_limit=10),
    "github-releases": ProviderRateLimits(requests_per_minute=30, concurrent_limit=5),
}

DEFAULT_RATE_LIMITS = ProviderRateLimits(requests_per_minute=30, concurrent_limit=5)


@dataclass
class _ProviderState:
    semaphore: asyncio.Semaphore
    limits: ProviderRateLimits
    request_times: list[float] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RegistryRateLimiter:
    """Bounds concurrent registry lookups during a batch run.

    Example:
        limiter = RegistryRateLimiter(global_concurrency=5)
        async with RateLimitedRequest(limiter, "dockerhub"):
            result = await manager.get_latest_digest("library/nginx", "latest")
    """

    def __init__(self, global_concurrency: int = 5, window_seconds: float = 60.0):
        self._global_semaphore = asyncio.Semaphore(global_concurrency)
        self._window = window_seconds
        self._states: dict[str, _ProviderState] = {}
        self._wait_count: dict[str, int] = {}
        self._total_requests: dict[str, int] = {}

    def _state_for(self, provider: str) -> _ProviderState:
        state = self._states.get(provider)
        if state is None:
            limits = PROVIDER_RATE_LIMITS.get(provider, DEFAULT_RATE_LIMITS)
            state = _ProviderState(
                semaphore=asyncio.Semaphore(limits.concurrent_limit), limits=limits
            )
            self._states[provider] = state
        return state

    async def acquire(self, provider: str) -> float:
        """Wait for a slot for one lookup against provider.

        Returns:
            Seconds spent waiting on the request window (0 if none)
        """
        state = self._state_for(provider)
        self._total_requests[provider] = self._total_requests.get(provider, 0) + 1

        await self._global_semaphore.acquire()
        await state.semaphore.acquire()

        waited = 0.0
        async with state.lock:
            now = time.monotonic()
            state.request_times = [t for t in state.request_times if t > now - self._window]

            if len(state.request_times) >= state.limits.requests_per_minute:
                waited = (state.request_times[0] + self._window) - now
                if waited > 0:
                    logger.debug(
                        f"Throttling {provider}: waiting {waited:.2f}s "
                        f"({len(state.request_times)} requests in window)"
                    )
                    self._wait_count[provider] = self._wait_count.get(provider, 0) + 1
                    await asyncio.sleep(waited)
                    now = time.monotonic()
                    state.request_times = [
                        t for t in state.request_times if t > now - self._window
                    ]
                else:
                    waited = 0.0

            state.request_times.append(time.monotonic())

        return waited

    def release(self, provider: str) -> None:
        self._state_for(provider).semaphore.release()
        self._global_semaphore.release()

    def get_metrics(self) -> dict[str, dict[str, int]]:
        """Per-provider request and wait counts for this run."""
        return {
            provider: {
                "total_requests": self._total_requests.get(provider, 0),
                "wait_count": self._wait_count.get(provider, 0),
            }
            for provider in set(self._total_requests) | set(self._wait_count)
        }


class RateLimitedRequest:
    """Async context manager holding a RegistryRateLimiter slot."""

    def __init__(self, limiter: RegistryRateLimiter, provider: str):
        self._limiter = limiter
        self._provider = provider
        self.wait_time: float = 0.0

    async def __aenter__(self) -> "RateLimitedRequest":
        self.wait_time = await self._limiter.acquire(self._provider)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self._limiter.release(self._provider)
        return False

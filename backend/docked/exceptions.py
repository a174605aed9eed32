"""Custom exceptions for Docked."""

from typing import Optional


class RegistryError(Exception):
    """Base class for failed registry or release lookups.

    Carries enough context (registry, image, tag, status code) for the
    failure to be diagnosed from a log line alone.
    """

    def __init__(
        self,
        message: str,
        registry: Optional[str] = None,
        image: Optional[str] = None,
        tag: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.registry = registry
        self.image = image
        self.tag = tag
        self.status_code = status_code
        super().__init__(message)

    def describe(self) -> str:
        """Render the error with its lookup context."""
        parts = [str(self)]
        if self.registry:
            parts.append(f"registry={self.registry}")
        if self.image:
            target = f"{self.image}:{self.tag}" if self.tag else self.image
            parts.append(f"image={target}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        return " ".join(parts)


class RegistryRateLimitError(RegistryError):
    """Raised when a registry answers with HTTP 429."""

    is_rate_limit_exceeded = False

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RateLimitExceededError(RegistryRateLimitError):
    """Raised once consecutive 429s cross the configured threshold.

    Not retryable. Batch jobs stop issuing registry lookups when they
    see it, rather than hammering the registry for every remaining image.
    """

    is_rate_limit_exceeded = True


class RegistryAuthError(RegistryError):
    """Raised when a registry rejects the request with 401 or 403."""
    pass


class RegistryUnavailableError(RegistryError):
    """Raised on 5xx responses or malformed registry payloads."""
    pass


class BatchRunNotFoundError(Exception):
    """Raised when a batch run id does not exist."""

    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"Batch run {run_id} not found")


class BatchRunStateError(Exception):
    """Raised on an invalid lifecycle transition of a batch run."""
    pass


class UnknownJobTypeError(ValueError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")

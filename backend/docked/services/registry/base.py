"""Registry provider contract shared by every registry family.

A provider resolves the current manifest digest of ``image_repo:tag`` for
one registry family. Providers own their auth flow, their rate-limit
delay and a TTL cache of digest results.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import httpx

from docked.config import DIGEST_CACHE_TTL, REGISTRY_HTTP_TIMEOUT, USER_AGENT
from docked.exceptions import (
    RegistryAuthError,
    RegistryError,
    RegistryRateLimitError,
    RegistryUnavailableError,
)
from docked.services import metrics
from docked.services.registry_rate_limiter import RateLimitTracker
from docked.services.update_comparator import normalize_digest
from docked.utils.retry import retry_with_backoff
from docked.utils.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

# Multi-arch indexes first, single-arch manifests as fallback
MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
    ]
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass
class DigestResult:
    """Outcome of a digest lookup.

    A result with digest None but provider_name set means the provider was
    identified and reachable but had no digest for the tag.
    """

    digest: Optional[str]
    tag: str
    provider_name: str = ""
    is_fallback: bool = False
    method: str = "registry-api"
    version: Optional[str] = None
    published_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.digest:
            self.digest = normalize_digest(self.digest)


@dataclass(frozen=True)
class Credentials:
    """Registry credentials; both fields None means anonymous access."""

    username: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False)

    @property
    def is_anonymous(self) -> bool:
        return not self.token

    @property
    def has_basic_auth(self) -> bool:
        return bool(self.username and self.token)

    def basic_auth(self) -> Optional[httpx.BasicAuth]:
        if self.has_basic_auth:
            return httpx.BasicAuth(self.username, self.token)
        return None


class ErrorKind(Enum):
    """Classification of a failed primary lookup."""

    NONE = "none"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    UNAVAILABLE = "unavailable"

    @property
    def allows_fallback(self) -> bool:
        return self is not ErrorKind.NONE


@dataclass
class LookupOutcome:
    """Result of ``RegistryProvider.lookup``: a result or a classified error."""

    result: Optional[DigestResult] = None
    error: Optional[RegistryError] = None

    @property
    def error_kind(self) -> ErrorKind:
        if self.error is None:
            return ErrorKind.NONE
        if isinstance(self.error, RegistryRateLimitError):
            return ErrorKind.RATE_LIMITED
        if isinstance(self.error, RegistryAuthError):
            return ErrorKind.AUTH
        return ErrorKind.UNAVAILABLE


# (user_id, provider_name, image_repo) -> repository access token, if any
CredentialLookup = Callable[[Optional[int], str, Optional[str]], Awaitable[Optional[Credentials]]]


def parse_bearer_challenge(header: Optional[str]) -> Optional[dict[str, str]]:
    """Parse a ``WWW-Authenticate: Bearer realm=...,service=...`` header."""
    if not header or not header.lower().startswith("bearer "):
        return None
    params = dict(_CHALLENGE_PARAM.findall(header))
    if "realm" not in params:
        return None
    return params


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value and value.isdigit():
        return float(value)
    return None


class RegistryProvider(ABC):
    """Base class for registry providers.

    Subclasses set ``name`` and the credential environment variables, and
    implement ``can_handle`` and ``get_latest_digest``.
    """

    name: str = ""
    display_name: str = ""
    supports_digest_comparison: bool = True

    TOKEN_ENV: Optional[str] = None
    USERNAME_ENV: Optional[str] = None
    DEFAULT_USERNAME: Optional[str] = None

    AUTHENTICATED_DELAY: float = 0.5
    ANONYMOUS_DELAY: float = 1.0

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tracker: RateLimitTracker,
        credential_lookup: Optional[CredentialLookup] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        """Initialize provider.

        Args:
            http_client: Shared HTTP client, owned by the registry manager
            tracker: Consecutive 429 tracker shared by all providers
            credential_lookup: Optional resolver for repository access tokens
            cache: Digest cache (a new DIGEST_CACHE_TTL cache if omitted)
        """
        self.client = http_client
        self.tracker = tracker
        self._credential_lookup = credential_lookup
        self.cache: TTLCache = cache or TTLCache(DIGEST_CACHE_TTL)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name})>"

    @abstractmethod
    def can_handle(self, image_repo: str) -> bool:
        """Whether this provider serves image_repo. Pure host/path check."""

    @abstractmethod
    async def get_latest_digest(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[DigestResult]:
        """Resolve the digest currently published for image_repo:tag.

        Returns:
            DigestResult, or None when the image or tag does not exist

        Raises:
            RegistryRateLimitError: On HTTP 429 (RateLimitExceededError once
                the consecutive threshold is reached)
            RegistryAuthError: If the registry rejects our credentials
        """

    async def get_tag_publish_date(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[datetime]:
        """Best-effort publish date of a tag. None when unknown."""
        return None

    async def image_exists(
        self,
        image_repo: str,
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> bool:
        """Best-effort existence check via the "latest" tag."""
        return await self._tag_exists(image_repo, "latest", user_id=user_id, github_repo=github_repo)

    async def _tag_exists(
        self,
        image_repo: str,
        tag: str,
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> bool:
        try:
            result = await self.get_latest_digest(
                image_repo, tag, user_id=user_id, github_repo=github_repo
            )
        except (RegistryError, httpx.HTTPError) as e:
            logger.debug(f"{self.name}: existence check for {image_repo}:{tag} failed: {e}")
            return False
        return result is not None and (result.digest is not None or result.version is not None)

    # Credentials

    def env_credentials(self) -> Optional[Credentials]:
        """Credentials from this provider's environment variables, if set."""
        token = os.getenv(self.TOKEN_ENV) if self.TOKEN_ENV else None
        if not token:
            return None
        username = os.getenv(self.USERNAME_ENV) if self.USERNAME_ENV else None
        return Credentials(username=username or self.DEFAULT_USERNAME, token=token)

    async def get_credentials(
        self, user_id: Optional[int] = None, image_repo: Optional[str] = None
    ) -> Credentials:
        """Resolve credentials for one call.

        Order: repository access token, environment variables, anonymous.
        Never cached, since the answer differs per user and repository.
        """
        if self._credential_lookup is not None:
            credentials = await self._credential_lookup(user_id, self.name, image_repo)
            if credentials is not None and not credentials.is_anonymous:
                return credentials

        return self.env_credentials() or Credentials()

    def rate_limit_delay(self, credentials: Credentials) -> float:
        """Seconds to wait before each outbound call for this credential tier."""
        if credentials.is_anonymous:
            return self.ANONYMOUS_DELAY
        return self.AUTHENTICATED_DELAY

    # Cache

    def _cache_repo(self, image_repo: str) -> str:
        """Canonical repository name used in cache keys."""
        return image_repo

    def _cache_key(self, image_repo: str, tag: str) -> str:
        return f"{self._cache_repo(image_repo)}:{tag}"

    def _get_cached(self, image_repo: str, tag: str) -> Optional[DigestResult]:
        cached = self.cache.get(self._cache_key(image_repo, tag))
        if cached is not None:
            metrics.registry_cache_hits.labels(provider=self.name).inc()
        return cached

    def _store(self, image_repo: str, result: DigestResult) -> DigestResult:
        self.cache.set(self._cache_key(image_repo, result.tag), result)
        return result

    def clear_cache(self, image_repo: str, tag: str) -> None:
        self.cache.delete(self._cache_key(image_repo, tag))

    def clear_all_cache(self) -> None:
        self.cache.clear()

    # Lookup with typed outcome

    async def lookup(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> LookupOutcome:
        """Run get_latest_digest and capture registry errors as an outcome.

        Only RegistryError subclasses are captured; anything else is a bug
        and propagates.
        """
        try:
            result = await self.get_latest_digest(
                image_repo, tag, user_id=user_id, github_repo=github_repo
            )
        except RegistryError as e:
            outcome = LookupOutcome(error=e)
            logger.warning(f"{self.name} lookup failed ({outcome.error_kind.value}): {e.describe()}")
            metrics.registry_lookups_total.labels(
                provider=self.name, outcome=outcome.error_kind.value
            ).inc()
            return outcome

        metrics.registry_lookups_total.labels(
            provider=self.name, outcome="found" if result and result.digest else "empty"
        ).inc()
        return LookupOutcome(result=result)

    # HTTP helpers

    async def _request(
        self,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
        auth: Optional[httpx.Auth] = None,
        image_repo: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> httpx.Response:
        """GET with backoff. 429 and 5xx raise; other statuses are returned."""
        request_headers = {"User-Agent": USER_AGENT}
        if headers:
            request_headers.update(headers)

        async def attempt() -> httpx.Response:
            response = await self.client.get(
                url,
                headers=request_headers,
                params=params,
                auth=auth,
                timeout=REGISTRY_HTTP_TIMEOUT,
            )
            if response.status_code == 429:
                metrics.registry_rate_limit_errors.labels(provider=self.name).inc()
                raise RegistryRateLimitError(
                    f"{self.display_name} rate limit exceeded",
                    retry_after=_retry_after(response),
                    registry=self.name,
                    image=image_repo,
                    tag=tag,
                )
            if response.status_code >= 500:
                raise RegistryUnavailableError(
                    f"{self.display_name} returned HTTP {response.status_code}",
                    registry=self.name,
                    image=image_repo,
                    tag=tag,
                    status_code=response.status_code,
                )
            return response

        return await retry_with_backoff(attempt, max_retries=3, base_delay=1.0, tracker=self.tracker)

    async def _fetch_token(
        self,
        url: str,
        params: dict[str, str],
        credentials: Credentials,
        image_repo: str,
    ) -> Optional[str]:
        """Exchange credentials (or nothing) for a registry bearer token."""
        try:
            response = await self._request(
                url, params=params, auth=credentials.basic_auth(), image_repo=image_repo
            )
        except (httpx.TransportError, RegistryUnavailableError) as e:
            logger.error(f"{self.display_name}: token request for {image_repo} failed: {e}")
            return None

        if response.status_code != 200:
            logger.warning(
                f"{self.display_name}: token request for {image_repo} returned "
                f"HTTP {response.status_code}"
            )
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{self.display_name}: invalid token response for {image_repo}: {e}")
            return None

        token = data.get("token") or data.get("access_token")
        if not token:
            logger.warning(f"{self.display_name}: token response for {image_repo} had no token")
        return token

    async def _fetch_manifest(
        self, url: str, token: Optional[str], image_repo: str, tag: str
    ) -> httpx.Response:
        headers = {"Accept": MANIFEST_ACCEPT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self._request(url, headers=headers, image_repo=image_repo, tag=tag)

    def _digest_from_response(
        self, response: httpx.Response, image_repo: str, tag: str
    ) -> Optional[str]:
        """Read the manifest digest from the Docker-Content-Digest header.

        Returns None for 404. Raises RegistryAuthError for 401/403.
        """
        status = response.status_code
        if status == 404:
            logger.debug(f"{self.display_name}: {image_repo}:{tag} not found")
            return None
        if status in (401, 403):
            raise RegistryAuthError(
                f"{self.display_name} denied access",
                registry=self.name,
                image=image_repo,
                tag=tag,
                status_code=status,
            )
        if status != 200:
            logger.warning(
                f"{self.display_name}: unexpected HTTP {status} for {image_repo}:{tag}"
            )
            return None

        digest = response.headers.get("docker-content-digest")
        if not digest:
            logger.warning(
                f"{self.display_name}: no Docker-Content-Digest header for {image_repo}:{tag}"
            )
            return None
        return digest

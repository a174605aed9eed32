"""Default registry provider (Docker Hub and generic OCI registries)."""

import logging
from datetime import datetime
from typing import Optional

import httpx

from docked.config import DIGEST_CACHE_TTL, REGISTRY_HTTP_TIMEOUT
from docked.services.registry.base import (
    Credentials,
    DigestResult,
    RegistryProvider,
    parse_bearer_challenge,
)
from docked.services.registry_rate_limiter import rate_limit_delay
from docked.utils.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

AUTH_URL = "https://auth.docker.io/token"
AUTH_SERVICE = "registry.docker.io"
REGISTRY_URL = "https://registry-1.docker.io"
HUB_API_URL = "https://hub.docker.com"

# Prefixes served by Docker Hub. lscr.io images are mirrored there under
# the same name.
HUB_PREFIXES = (
    "docker.io/",
    "registry-1.docker.io/",
    "registry.docker.io/",
    "index.docker.io/",
    "lscr.io/",
)

LSCR_EXTRA_TAGS = ("develop", "nightly", "beta", "stable")


class DockerHubProvider(RegistryProvider):
    """Docker Hub Registry API v2 client, also the catch-all provider.

    Images on a host we have no dedicated provider for (quay.io, private
    registries) are resolved with the standard OCI bearer-challenge flow.
    """

    name = "dockerhub"
    display_name = "Docker Hub"

    TOKEN_ENV = "DOCKERHUB_TOKEN"
    USERNAME_ENV = "DOCKERHUB_USERNAME"

    AUTHENTICATED_DELAY = 0.5
    ANONYMOUS_DELAY = 1.0

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._publish_dates: TTLCache = TTLCache(DIGEST_CACHE_TTL)

    def can_handle(self, image_repo: str) -> bool:
        if image_repo.startswith(HUB_PREFIXES):
            return True
        # A namespaced path without a host is a Docker Hub repository
        return "/" in image_repo and "." not in image_repo and not image_repo.startswith("ghcr.io/")

    def rate_limit_delay(self, credentials: Credentials) -> float:
        # Docker Hub only raises the pull limit for username + token
        return self.AUTHENTICATED_DELAY if credentials.has_basic_auth else self.ANONYMOUS_DELAY

    @staticmethod
    def split_host(image_repo: str) -> tuple[Optional[str], str]:
        """Split image_repo into (foreign registry host, repository path).

        The host is None for Docker Hub; its path always has a namespace
        ("nginx" becomes "library/nginx").
        """
        for prefix in HUB_PREFIXES:
            if image_repo.startswith(prefix):
                image_repo = image_repo[len(prefix):]
                break
        else:
            first, sep, rest = image_repo.partition("/")
            if sep and ("." in first or ":" in first or first == "localhost"):
                return first, rest

        if "/" not in image_repo:
            image_repo = f"library/{image_repo}"
        return None, image_repo

    def normalize_repo(self, image_repo: str) -> str:
        host, path = self.split_host(image_repo)
        return f"{host}/{path}" if host else path

    def _cache_repo(self, image_repo: str) -> str:
        return self.normalize_repo(image_repo)

    async def _get_hub_token(self, repo: str, credentials: Credentials, image_repo: str) -> Optional[str]:
        params = {"service": AUTH_SERVICE, "scope": f"repository:{repo}:pull"}
        if credentials.has_basic_auth:
            logger.debug(f"Docker Hub: authenticated token request for {repo}")
        return await self._fetch_token(AUTH_URL, params, credentials, image_repo)

    async def _fetch_foreign_manifest(
        self,
        host: str,
        repo: str,
        tag: str,
        credentials: Credentials,
        image_repo: str,
    ) -> httpx.Response:
        """Fetch a manifest from an arbitrary OCI registry.

        Tries anonymously first. If the registry answers 401 with a Bearer
        challenge, obtains a token from the advertised realm and retries.
        """
        url = f"https://{host}/v2/{repo}/manifests/{tag}"
        response = await self._fetch_manifest(url, None, image_repo, tag)
        if response.status_code != 401:
            return response

        challenge = parse_bearer_challenge(response.headers.get("www-authenticate"))
        if not challenge:
            return response

        params = {
            "service": challenge.get("service", host),
            "scope": challenge.get("scope", f"repository:{repo}:pull"),
        }
        token = await self._fetch_token(challenge["realm"], params, credentials, image_repo)
        if not token:
            return response
        return await self._fetch_manifest(url, token, image_repo, tag)

    async def get_latest_digest(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[DigestResult]:
        if "@sha256" in tag:
            logger.debug(f"Skipping digest-pinned tag {image_repo}:{tag}")
            return None

        cached = self._get_cached(image_repo, tag)
        if cached is not None:
            return cached

        host, repo = self.split_host(image_repo)
        credentials = await self.get_credentials(user_id, image_repo)
        await rate_limit_delay(self.rate_limit_delay(credentials))

        try:
            if host is None:
                token = await self._get_hub_token(repo, credentials, image_repo)
                if not token:
                    return None
                response = await self._fetch_manifest(
                    f"{REGISTRY_URL}/v2/{repo}/manifests/{tag}", token, image_repo, tag
                )
            else:
                response = await self._fetch_foreign_manifest(host, repo, tag, credentials, image_repo)
        except httpx.TransportError as e:
            logger.error(f"{self.display_name}: request for {image_repo}:{tag} failed: {e}")
            return None

        digest = self._digest_from_response(response, image_repo, tag)
        if not digest:
            return None

        return self._store(
            image_repo,
            DigestResult(digest=digest, tag=tag, provider_name=self.name, method="registry-api"),
        )

    async def get_tag_publish_date(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[datetime]:
        """Read tag_last_pushed (or last_updated) from the Docker Hub API."""
        host, repo = self.split_host(image_repo)
        if host is not None:
            return None

        cache_key = f"{repo}:{tag}"
        cached = self._publish_dates.get(cache_key)
        if cached is not None:
            return cached

        credentials = await self.get_credentials(user_id, image_repo)
        await rate_limit_delay(self.rate_limit_delay(credentials))

        url = f"{HUB_API_URL}/v2/repositories/{repo}/tags/{tag}/"
        try:
            response = await self.client.get(url, timeout=REGISTRY_HTTP_TIMEOUT)
        except httpx.HTTPError as e:
            logger.debug(f"Docker Hub: publish date request for {repo}:{tag} failed: {e}")
            return None

        if response.status_code != 200:
            logger.debug(f"Docker Hub: no tag metadata for {repo}:{tag} (HTTP {response.status_code})")
            return None

        try:
            data = response.json()
        except ValueError:
            return None

        raw = data.get("tag_last_pushed") or data.get("last_updated")
        if not raw:
            return None
        try:
            published = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Docker Hub: unparseable timestamp {raw!r} for {repo}:{tag}")
            return None

        self._publish_dates.set(cache_key, published)
        return published

    async def image_exists(
        self,
        image_repo: str,
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> bool:
        tags = ["latest"]
        if image_repo.startswith("lscr.io/"):
            tags.extend(LSCR_EXTRA_TAGS)

        for tag in tags:
            if await self._tag_exists(image_repo, tag, user_id=user_id):
                return True
        return False

    def clear_all_cache(self) -> None:
        super().clear_all_cache()
        self._publish_dates.clear()

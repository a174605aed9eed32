"""Registry manager: provider selection, fallback and cache invalidation."""

import dataclasses
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from docked.config import REGISTRY_HTTP_TIMEOUT, USER_AGENT
from docked.exceptions import RegistryError
from docked.services import metrics
from docked.services.github_service import GitHubReleasesClient
from docked.services.registry.base import (
    CredentialLookup,
    DigestResult,
    ErrorKind,
    RegistryProvider,
)
from docked.services.registry.dockerhub import DockerHubProvider
from docked.services.registry.gcr import GCRProvider
from docked.services.registry.ghcr import GHCRProvider
from docked.services.registry.github_releases import GitHubReleasesProvider
from docked.services.registry.gitlab import GitLabProvider
from docked.services.registry_rate_limiter import RateLimitTracker
from docked.services.update_comparator import has_update
from docked.utils.digest_tools import DigestTool

logger = logging.getLogger(__name__)


class RegistryManager:
    """Resolves image digests across every supported registry.

    Owns the providers, their caches, the provider-selection memo, the
    shared HTTP client and the consecutive 429 tracker. Create one per
    process and close it with ``aclose()`` at shutdown.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        digest_tool: Optional[DigestTool] = None,
        github: Optional[GitHubReleasesClient] = None,
        credential_lookup: Optional[CredentialLookup] = None,
        tracker: Optional[RateLimitTracker] = None,
    ) -> None:
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=REGISTRY_HTTP_TIMEOUT, headers={"User-Agent": USER_AGENT}
        )
        self.tracker = tracker or RateLimitTracker()
        self.digest_tool = digest_tool or DigestTool()
        self.github = github or GitHubReleasesClient(http_client=self.client)

        common = {"credential_lookup": credential_lookup}
        self.default_provider = DockerHubProvider(self.client, self.tracker, **common)

        # Most specific host first, Docker Hub as catch-all
        self.providers: list[RegistryProvider] = [
            GHCRProvider(self.client, self.tracker, digest_tool=self.digest_tool, **common),
            GitLabProvider(self.client, self.tracker, **common),
            GCRProvider(
                self.client,
                self.tracker,
                dockerhub=self.default_provider,
                digest_tool=self.digest_tool,
                **common,
            ),
            self.default_provider,
        ]
        self.fallback_provider = GitHubReleasesProvider(
            self.client,
            self.tracker,
            github=self.github,
            digest_tool=self.digest_tool,
            **common,
        )
        self._provider_memo: dict[str, RegistryProvider] = {}

    def get_provider(self, image_repo: str) -> RegistryProvider:
        """Return the provider serving image_repo (memoized per string)."""
        provider = self._provider_memo.get(image_repo)
        if provider is not None:
            return provider

        for candidate in self.providers:
            if candidate.can_handle(image_repo):
                provider = candidate
                break
        else:
            provider = self.default_provider

        self._provider_memo[image_repo] = provider
        logger.debug(f"Selected {provider.name} for {image_repo}")
        return provider

    async def get_latest_digest(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
        use_fallback: bool = True,
    ) -> Optional[DigestResult]:
        """Resolve the latest digest for image_repo:tag.

        Args:
            image_repo: Repository as stored for the deployed image
            tag: Tag to resolve
            user_id: Owner, for repository access token lookup
            github_repo: Explicit owner/repo for the releases fallback
            use_fallback: Consult GitHub releases when the registry fails

        Returns:
            DigestResult (digest None when the provider had nothing), or
            None when the fallback was needed and came back empty

        Raises:
            RegistryError: When the primary lookup failed and no fallback
                was possible
        """
        provider = self.get_provider(image_repo)
        outcome = await provider.lookup(image_repo, tag, user_id=user_id, github_repo=github_repo)

        if outcome.error_kind is ErrorKind.NONE:
            result = outcome.result
            if result is None:
                return DigestResult(
                    digest=None, tag=tag, provider_name=provider.name, method="none"
                )
            # Copy: result may be a provider cache entry
            return dataclasses.replace(result, provider_name=provider.name, is_fallback=False)

        error = outcome.error
        if not (use_fallback and outcome.error_kind.allows_fallback):
            raise error

        if not self.fallback_provider.can_handle(image_repo, github_repo):
            logger.warning(
                f"{provider.name} lookup for {image_repo}:{tag} failed and no GitHub "
                f"repository is known for a fallback"
            )
            raise error

        logger.info(
            f"{provider.name} lookup for {image_repo}:{tag} failed "
            f"({outcome.error_kind.value}), trying GitHub releases"
        )
        return await self._fallback_lookup(image_repo, tag, user_id=user_id, github_repo=github_repo)

    async def _fallback_lookup(
        self,
        image_repo: str,
        tag: str,
        *,
        user_id: Optional[int],
        github_repo: Optional[str],
    ) -> Optional[DigestResult]:
        try:
            result = await self.fallback_provider.get_latest_digest(
                image_repo, tag, user_id=user_id, github_repo=github_repo
            )
        except (RegistryError, httpx.HTTPError) as e:
            logger.error(f"GitHub releases fallback for {image_repo} failed: {e}")
            metrics.fallback_lookups_total.labels(outcome="error").inc()
            return None

        if result is None:
            metrics.fallback_lookups_total.labels(outcome="empty").inc()
            return None

        metrics.fallback_lookups_total.labels(outcome="found").inc()
        return dataclasses.replace(result, provider_name=self.fallback_provider.name, is_fallback=True)

    async def get_tag_publish_date(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[datetime]:
        """Best-effort publish date: the registry first, then GitHub releases."""
        provider = self.get_provider(image_repo)
        try:
            published = await provider.get_tag_publish_date(
                image_repo, tag, user_id=user_id, github_repo=github_repo
            )
        except (RegistryError, httpx.HTTPError) as e:
            logger.debug(f"Publish date lookup via {provider.name} failed: {e}")
            published = None

        if published is None and self.fallback_provider.can_handle(image_repo, github_repo):
            published = await self.fallback_provider.get_tag_publish_date(
                image_repo, tag, user_id=user_id, github_repo=github_repo
            )
        return published

    async def image_exists(
        self,
        image_repo: str,
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> bool:
        provider = self.get_provider(image_repo)
        return await provider.image_exists(image_repo, user_id=user_id, github_repo=github_repo)

    @staticmethod
    def has_update(
        current_digest: Optional[str],
        current_tag: Optional[str],
        latest_info: Optional[DigestResult],
    ) -> bool:
        return has_update(current_digest, current_tag, latest_info)

    def clear_cache(self, image_repo: str, tag: str = "latest") -> None:
        """Drop the cached digest of image_repo:tag, e.g. after an upgrade."""
        self.get_provider(image_repo).clear_cache(image_repo, tag)

    def clear_all_caches(self) -> None:
        for provider in self.providers:
            provider.clear_all_cache()
        self.fallback_provider.clear_all_cache()
        self._provider_memo.clear()
        logger.info("Cleared all registry caches")

    def get_provider_info(self, image_repo: str, github_repo: Optional[str] = None) -> dict[str, Any]:
        provider = self.get_provider(image_repo)
        return {
            "name": provider.name,
            "display_name": provider.display_name,
            "supports_digest_comparison": provider.supports_digest_comparison,
            "has_fallback": self.fallback_provider.can_handle(image_repo, github_repo),
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

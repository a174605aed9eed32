"""GitHub Releases fallback provider.

Used when the primary registry is rate limiting or refusing us. It cannot
compare digests; it reports the latest release tag as a version and the
manager compares it against the running tag.
"""

import logging
from datetime import datetime
from typing import Optional

import httpx

from docked.exceptions import RegistryError
from docked.services.github_service import GitHubReleasesClient, parse_github_repo
from docked.services.registry.base import DigestResult, RegistryProvider
from docked.services.registry_rate_limiter import rate_limit_delay
from docked.services.update_comparator import version_has_update
from docked.utils.digest_tools import DigestTool

logger = logging.getLogger(__name__)

GHCR_PREFIX = "ghcr.io/"


class GitHubReleasesProvider(RegistryProvider):
    """Fallback-only provider backed by the GitHub releases API."""

    name = "github-releases"
    display_name = "GitHub Releases"
    supports_digest_comparison = False

    TOKEN_ENV = "GITHUB_TOKEN"

    AUTHENTICATED_DELAY = 0.0
    ANONYMOUS_DELAY = 1.0

    def __init__(
        self,
        *args,
        github: GitHubReleasesClient,
        digest_tool: Optional[DigestTool] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.github = github
        self.digest_tool = digest_tool or DigestTool()

    @staticmethod
    def _extract_github_repo(image_repo: str) -> Optional[str]:
        """Derive owner/repo from a ghcr.io/<owner>/<repo> image path."""
        if not image_repo.startswith(GHCR_PREFIX):
            return None
        parsed = parse_github_repo(image_repo[len(GHCR_PREFIX):])
        if not parsed:
            return None
        return f"{parsed[0]}/{parsed[1]}"

    def resolve_repo(self, image_repo: str, github_repo: Optional[str] = None) -> Optional[str]:
        if github_repo:
            parsed = parse_github_repo(github_repo)
            if parsed:
                return f"{parsed[0]}/{parsed[1]}"
            logger.warning(f"Ignoring invalid GitHub repository mapping {github_repo!r}")
        return self._extract_github_repo(image_repo)

    def can_handle(self, image_repo: str, github_repo: Optional[str] = None) -> bool:
        return self.resolve_repo(image_repo, github_repo) is not None

    async def get_latest_digest(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[DigestResult]:
        """Report the latest stable release as a version result.

        The returned tag is the release tag, not the requested one. For GHCR
        images the digest of that tag is resolved too when a digest tool is
        installed.
        """
        repo = self.resolve_repo(image_repo, github_repo)
        if not repo:
            logger.debug(f"No GitHub repository known for {image_repo}")
            return None

        cache_repo = f"{image_repo}@{repo}"
        cached = self._get_cached(cache_repo, tag)
        if cached is not None:
            return cached

        credentials = await self.get_credentials(user_id, image_repo)
        await rate_limit_delay(self.rate_limit_delay(credentials))

        release = await self.github.get_latest_release(repo)
        if release is None:
            logger.info(f"No GitHub release found for {repo}")
            return None

        digest = None
        if image_repo.startswith(GHCR_PREFIX):
            digest = await self.digest_tool.get_digest(f"{image_repo}:{release.tag_name}")

        result = DigestResult(
            digest=digest,
            tag=release.tag_name,
            provider_name=self.name,
            is_fallback=True,
            method="github-release",
            version=release.tag_name,
            published_at=release.published_at,
        )
        # Cached under the requested tag, the result carries the release tag
        self.cache.set(self._cache_key(cache_repo, tag), result)
        return result

    def has_update(self, current_tag: Optional[str], latest_tag: Optional[str]) -> bool:
        return version_has_update(current_tag, latest_tag)

    async def get_tag_publish_date(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[datetime]:
        repo = self.resolve_repo(image_repo, github_repo)
        if not repo:
            return None
        try:
            release = await self.github.get_release_by_tag(repo, tag)
            if release is None and not tag.startswith("v"):
                release = await self.github.get_release_by_tag(repo, f"v{tag}")
        except (RegistryError, httpx.HTTPError, ValueError) as e:
            logger.debug(f"GitHub release date lookup for {repo}@{tag} failed: {e}")
            return None
        return release.published_at if release else None

    async def image_exists(
        self,
        image_repo: str,
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> bool:
        repo = self.resolve_repo(image_repo, github_repo)
        if not repo:
            return False
        return await self._tag_exists(image_repo, "latest", user_id=user_id, github_repo=repo)

    def clear_all_cache(self) -> None:
        super().clear_all_cache()
        self.github.clear_cache()

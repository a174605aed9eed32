"""GitHub releases API client."""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from docked.config import REGISTRY_HTTP_TIMEOUT, RELEASE_CACHE_TTL, USER_AGENT
from docked.exceptions import (
    RegistryAuthError,
    RegistryRateLimitError,
    RegistryUnavailableError,
)
from docked.utils.retry import async_retry
from docked.utils.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def parse_github_repo(value: Optional[str]) -> Optional[tuple[str, str]]:
    """Parse a GitHub repository reference.

    Accepts "owner/repo", "https://github.com/owner/repo[/...]" and
    "git@github.com:owner/repo.git".

    Returns:
        (owner, repo) or None if the value is not a repository reference
    """
    if not value or not isinstance(value, str):
        return None

    trimmed = value.strip()
    if trimmed.startswith("https://github.com/"):
        rest = trimmed[len("https://github.com/"):]
    elif trimmed.startswith("git@github.com:"):
        rest = trimmed[len("git@github.com:"):]
    elif "/" in trimmed and "://" not in trimmed:
        rest = trimmed
    else:
        return None

    parts = [part for part in rest.split("/") if part]
    if len(parts) < 2:
        return None

    owner = parts[0].strip()
    repo = parts[1].strip()
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]

    if not (_NAME_PATTERN.match(owner) and _NAME_PATTERN.match(repo)):
        return None
    return owner, repo


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class GitHubRelease:
    """Subset of a GitHub release payload."""

    tag_name: str
    name: Optional[str] = None
    published_at: Optional[datetime] = None
    html_url: Optional[str] = None
    prerelease: bool = False
    draft: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GitHubRelease":
        return cls(
            tag_name=data["tag_name"],
            name=data.get("name"),
            published_at=_parse_timestamp(data.get("published_at")),
            html_url=data.get("html_url"),
            prerelease=bool(data.get("prerelease", False)),
            draft=bool(data.get("draft", False)),
        )


class GitHubReleasesClient:
    """Fetch release information for GitHub repositories.

    Lookups are cached for RELEASE_CACHE_TTL. GITHUB_TOKEN is read on each
    request so a token added at runtime takes effect without a restart.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(timeout=REGISTRY_HTTP_TIMEOUT)
        self._cache: TTLCache = cache or TTLCache(RELEASE_CACHE_TTL)

    @property
    def is_authenticated(self) -> bool:
        return bool(os.getenv("GITHUB_TOKEN"))

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }
        token = os.getenv("GITHUB_TOKEN")
        if token:
            headers["Authorization"] = f"token {token}"
        return headers

    @staticmethod
    def _require_repo(repo_input: str) -> tuple[str, str]:
        parsed = parse_github_repo(repo_input)
        if not parsed:
            raise ValueError(
                f"Invalid GitHub repository format: {repo_input!r}. "
                "Use owner/repo or a full GitHub URL."
            )
        return parsed

    @async_retry(max_attempts=3, backoff_base=2.0, exceptions=(httpx.TransportError,))
    async def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        return await self._client.get(
            url, params=params, headers=self._headers(), timeout=REGISTRY_HTTP_TIMEOUT
        )

    def _raise_for_status(self, response: httpx.Response, repo: str) -> None:
        """Map GitHub error responses onto registry errors. 404 is not handled here."""
        status = response.status_code
        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            reset = response.headers.get("x-ratelimit-reset")
            retry_after = response.headers.get("retry-after")
            logger.warning(
                f"GitHub API rate limit exceeded for {repo} (status {status}, reset {reset}). "
                "Consider setting GITHUB_TOKEN."
            )
            raise RegistryRateLimitError(
                "GitHub API rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                registry="github-releases",
                image=repo,
                status_code=status,
            )
        if status in (401, 403):
            raise RegistryAuthError(
                "GitHub API rejected the request",
                registry="github-releases",
                image=repo,
                status_code=status,
            )
        if status >= 500:
            raise RegistryUnavailableError(
                "GitHub API unavailable",
                registry="github-releases",
                image=repo,
                status_code=status,
            )

    def _malformed(self, repo: str, detail: str) -> RegistryUnavailableError:
        logger.warning(f"Malformed GitHub API response for {repo}: {detail}")
        return RegistryUnavailableError(
            f"GitHub API returned a malformed response: {detail}",
            registry="github-releases",
            image=repo,
        )

    def _json(self, response: httpx.Response, repo: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise self._malformed(repo, f"invalid JSON ({e})") from e

    def _parse_release(self, data: Any, repo: str) -> GitHubRelease:
        if not isinstance(data, dict):
            raise self._malformed(repo, f"expected a release object, got {type(data).__name__}")
        tag_name = data.get("tag_name")
        if not isinstance(tag_name, str) or not tag_name:
            raise self._malformed(repo, "release without tag_name")
        try:
            return GitHubRelease.from_api(data)
        except (TypeError, AttributeError) as e:
            raise self._malformed(repo, str(e)) from e

    async def _list_releases(self, owner: str, repo: str, per_page: int) -> list[GitHubRelease]:
        response = await self._get(
            f"{API_URL}/repos/{owner}/{repo}/releases", params={"per_page": per_page}
        )
        if response.status_code == 404:
            return []
        self._raise_for_status(response, f"{owner}/{repo}")
        if response.status_code != 200:
            return []

        payload = self._json(response, f"{owner}/{repo}")
        if not isinstance(payload, list):
            raise self._malformed(f"{owner}/{repo}", f"expected a release list, got {type(payload).__name__}")
        releases = [
            self._parse_release(item, f"{owner}/{repo}")
            for item in payload
            if not (isinstance(item, dict) and (item.get("prerelease") or item.get("draft")))
        ]
        releases.sort(
            key=lambda r: r.published_at.timestamp() if r.published_at else 0.0,
            reverse=True,
        )
        return releases

    async def get_latest_release(self, repo_input: str) -> Optional[GitHubRelease]:
        """Get the latest stable release of a repository.

        Uses /releases/latest and, when that 404s, the newest non-draft,
        non-prerelease entry of the release list.

        Args:
            repo_input: owner/repo or GitHub URL

        Returns:
            GitHubRelease or None if the repository has no releases

        Raises:
            ValueError: If repo_input is not a repository reference
            RegistryRateLimitError: If the GitHub API is rate limiting us
        """
        owner, repo = self._require_repo(repo_input)
        cache_key = f"latest:{owner}/{repo}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        response = await self._get(f"{API_URL}/repos/{owner}/{repo}/releases/latest")
        if response.status_code == 404:
            logger.debug(f"No /releases/latest for {owner}/{repo}, listing releases")
            releases = await self._list_releases(owner, repo, per_page=10)
            release = releases[0] if releases else None
        else:
            self._raise_for_status(response, f"{owner}/{repo}")
            release = None
            if response.status_code == 200:
                release = self._parse_release(self._json(response, f"{owner}/{repo}"), f"{owner}/{repo}")

        if release is not None:
            self._cache.set(cache_key, release)
        else:
            logger.info(f"Repository {owner}/{repo} not found or has no releases")
        return release

    async def get_all_releases(self, repo_input: str, limit: int = 10) -> list[GitHubRelease]:
        """Get up to limit stable releases, newest first."""
        owner, repo = self._require_repo(repo_input)
        cache_key = f"all:{owner}/{repo}:{limit}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        releases = (await self._list_releases(owner, repo, per_page=limit))[:limit]
        self._cache.set(cache_key, releases)
        return releases

    async def get_release_by_tag(self, repo_input: str, tag: str) -> Optional[GitHubRelease]:
        """Get the release published for a specific tag, or None."""
        owner, repo = self._require_repo(repo_input)
        cache_key = f"tag:{owner}/{repo}:{tag}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        response = await self._get(f"{API_URL}/repos/{owner}/{repo}/releases/tags/{tag}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"{owner}/{repo}")
        if response.status_code != 200:
            return None

        release = self._parse_release(self._json(response, f"{owner}/{repo}"), f"{owner}/{repo}")
        self._cache.set(cache_key, release)
        return release

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        await self._client.aclose()

"""GitHub Container Registry provider."""

import logging
import os
from typing import Optional

import httpx

from docked.services.registry.base import Credentials, DigestResult, RegistryProvider
from docked.services.registry_rate_limiter import rate_limit_delay
from docked.utils.digest_tools import DigestTool

logger = logging.getLogger(__name__)

BASE_URL = "https://ghcr.io"
TOKEN_URL = "https://ghcr.io/token"
PREFIX = "ghcr.io/"


class GHCRProvider(RegistryProvider):
    """ghcr.io images.

    Prefers crane/skopeo, which handle GHCR auth on their own, then falls
    back to the registry API with a token from ghcr.io/token.
    """

    name = "ghcr"
    display_name = "GHCR"

    TOKEN_ENV = "GHCR_TOKEN"
    USERNAME_ENV = "GHCR_USERNAME"

    AUTHENTICATED_DELAY = 0.25
    ANONYMOUS_DELAY = 1.0

    def __init__(self, *args, digest_tool: Optional[DigestTool] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.digest_tool = digest_tool or DigestTool()

    def can_handle(self, image_repo: str) -> bool:
        return image_repo.startswith(PREFIX)

    def env_credentials(self) -> Optional[Credentials]:
        credentials = super().env_credentials()
        if credentials is not None:
            return credentials
        # A GitHub token with read:packages works for GHCR too
        token = os.getenv("GITHUB_TOKEN")
        if token:
            return Credentials(username=os.getenv(self.USERNAME_ENV) or "token", token=token)
        return None

    @staticmethod
    def repo_path(image_repo: str) -> str:
        return image_repo[len(PREFIX):] if image_repo.startswith(PREFIX) else image_repo

    async def _get_bearer_token(self, path: str, credentials: Credentials, image_repo: str) -> Optional[str]:
        params = {"scope": f"repository:{path}:pull", "service": "ghcr.io"}
        if credentials.has_basic_auth:
            logger.debug(f"GHCR: basic auth token request for {path} (token length {len(credentials.token)})")
        else:
            logger.debug(f"GHCR: anonymous token request for {path}")
        return await self._fetch_token(TOKEN_URL, params, credentials, image_repo)

    async def get_latest_digest(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[DigestResult]:
        if "@sha256" in tag:
            return None

        cached = self._get_cached(image_repo, tag)
        if cached is not None:
            return cached

        digest = await self.digest_tool.get_digest(f"{image_repo}:{tag}")
        if digest:
            logger.info(f"GHCR: resolved {image_repo}:{tag} via digest tool - {digest[:19]}...")
            return self._store(
                image_repo,
                DigestResult(digest=digest, tag=tag, provider_name=self.name, method="digest-tool"),
            )

        path = self.repo_path(image_repo)
        if "/" not in path:
            logger.warning(f"GHCR: {image_repo} is not an owner/repo path")
            return None

        credentials = await self.get_credentials(user_id, image_repo)
        await rate_limit_delay(self.rate_limit_delay(credentials))

        try:
            token = await self._get_bearer_token(path, credentials, image_repo)
            response = await self._fetch_manifest(
                f"{BASE_URL}/v2/{path}/manifests/{tag}", token, image_repo, tag
            )
        except httpx.TransportError as e:
            logger.error(f"GHCR: request for {image_repo}:{tag} failed: {e}")
            return None

        digest = self._digest_from_response(response, image_repo, tag)
        if not digest:
            return None

        return self._store(
            image_repo,
            DigestResult(digest=digest, tag=tag, provider_name=self.name, method="registry-api"),
        )

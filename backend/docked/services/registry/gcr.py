"""Google Container Registry provider."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import httpx

from docked.exceptions import RegistryAuthError, RegistryRateLimitError
from docked.services.registry.base import Credentials, DigestResult, RegistryProvider
from docked.services.registry_rate_limiter import rate_limit_delay
from docked.utils.digest_tools import DigestTool

if TYPE_CHECKING:
    from docked.services.registry.dockerhub import DockerHubProvider

logger = logging.getLogger(__name__)

BASE_URL = "https://gcr.io"
TOKEN_URL = "https://gcr.io/v2/token"
PREFIX = "gcr.io/"


class GCRProvider(RegistryProvider):
    """gcr.io images.

    Many GCR images are mirrored on Docker Hub under the same path, so when
    GCR refuses or does not know the image, the lookup is retried through the
    Docker Hub provider. Results are always attributed to "gcr".
    """

    name = "gcr"
    display_name = "GCR"

    AUTHENTICATED_DELAY = 1.0
    ANONYMOUS_DELAY = 1.0

    def __init__(
        self,
        *args,
        dockerhub: "DockerHubProvider",
        digest_tool: Optional[DigestTool] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.dockerhub = dockerhub
        self.digest_tool = digest_tool or DigestTool()

    def can_handle(self, image_repo: str) -> bool:
        return image_repo.startswith(PREFIX)

    @staticmethod
    def repo_path(image_repo: str) -> str:
        """Strip the gcr.io host, leaving "<project>/<repository>"."""
        return image_repo[len(PREFIX):] if image_repo.startswith(PREFIX) else image_repo

    async def _get_token(self, path: str, image_repo: str) -> Optional[str]:
        params = {"service": "gcr.io", "scope": f"repository:{path}:pull"}
        return await self._fetch_token(TOKEN_URL, params, Credentials(), image_repo)

    async def _registry_digest(self, path: str, image_repo: str, tag: str) -> Optional[str]:
        """Query gcr.io directly. None means try the mirror."""
        await rate_limit_delay(self.rate_limit_delay(Credentials()))
        try:
            token = await self._get_token(path, image_repo)
            response = await self._fetch_manifest(
                f"{BASE_URL}/v2/{path}/manifests/{tag}", token, image_repo, tag
            )
        except httpx.TransportError as e:
            logger.warning(f"GCR: request for {image_repo}:{tag} failed: {e}")
            return None

        if response.status_code in (401, 403, 404):
            logger.info(
                f"GCR: HTTP {response.status_code} for {image_repo}:{tag}, trying Docker Hub mirror"
            )
            return None
        return self._digest_from_response(response, image_repo, tag)

    async def _mirror_digest(
        self, path: str, tag: str, user_id: Optional[int]
    ) -> Optional[DigestResult]:
        try:
            return await self.dockerhub.get_latest_digest(path, tag, user_id=user_id)
        except RegistryRateLimitError:
            raise
        except RegistryAuthError as e:
            logger.info(f"GCR: Docker Hub mirror denied {path}:{tag}: {e.describe()}")
            return None

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

        path = self.repo_path(image_repo)
        if "/" not in path:
            logger.warning(f"GCR: {image_repo} must be gcr.io/<project>/<repository>")
            return None

        digest = await self.digest_tool.get_digest(f"{image_repo}:{tag}")
        if digest:
            return self._store(
                image_repo,
                DigestResult(digest=digest, tag=tag, provider_name=self.name, method="digest-tool"),
            )

        digest = await self._registry_digest(path, image_repo, tag)
        if digest:
            return self._store(
                image_repo,
                DigestResult(digest=digest, tag=tag, provider_name=self.name, method="registry-api"),
            )

        mirrored = await self._mirror_digest(path, tag, user_id)
        if mirrored is not None and mirrored.digest:
            logger.info(f"GCR: resolved {image_repo}:{tag} through Docker Hub mirror")
            return self._store(
                image_repo,
                DigestResult(
                    digest=mirrored.digest,
                    tag=tag,
                    provider_name=self.name,
                    method="dockerhub-mirror",
                ),
            )

        logger.warning(f"GCR: no digest available for {image_repo}:{tag}")
        return DigestResult(digest=None, tag=tag, provider_name=self.name, method="none")

    async def get_tag_publish_date(
        self,
        image_repo: str,
        tag: str = "latest",
        *,
        user_id: Optional[int] = None,
        github_repo: Optional[str] = None,
    ) -> Optional[datetime]:
        return await self.dockerhub.get_tag_publish_date(
            self.repo_path(image_repo), tag, user_id=user_id
        )

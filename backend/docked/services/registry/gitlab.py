"""GitLab Container Registry provider."""

import logging
from typing import Optional

import httpx

from docked.services.registry.base import Credentials, DigestResult, RegistryProvider
from docked.services.registry_rate_limiter import rate_limit_delay

logger = logging.getLogger(__name__)

REGISTRY_URL = "https://registry.gitlab.com"
JWT_URL = "https://gitlab.com/jwt/auth"
PREFIX = "registry.gitlab.com/"


class GitLabProvider(RegistryProvider):
    """registry.gitlab.com images, authenticated with a GitLab JWT."""

    name = "gitlab"
    display_name = "GitLab Registry"

    TOKEN_ENV = "GITLAB_TOKEN"
    DEFAULT_USERNAME = "gitlab-ci-token"

    AUTHENTICATED_DELAY = 0.5
    ANONYMOUS_DELAY = 1.0

    def can_handle(self, image_repo: str) -> bool:
        return image_repo.startswith(PREFIX)

    @staticmethod
    def repo_path(image_repo: str) -> str:
        return image_repo[len(PREFIX):] if image_repo.startswith(PREFIX) else image_repo

    async def _get_jwt(self, path: str, credentials: Credentials, image_repo: str) -> Optional[str]:
        params = {
            "service": "container_registry",
            "scope": f"repository:{path}:pull",
        }
        if not credentials.is_anonymous and not credentials.username:
            credentials = Credentials(username=self.DEFAULT_USERNAME, token=credentials.token)
        return await self._fetch_token(JWT_URL, params, credentials, image_repo)

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
            logger.warning(f"GitLab: {image_repo} must be registry.gitlab.com/<group>/<project>")
            return None

        credentials = await self.get_credentials(user_id, image_repo)
        await rate_limit_delay(self.rate_limit_delay(credentials))

        try:
            token = await self._get_jwt(path, credentials, image_repo)
            response = await self._fetch_manifest(
                f"{REGISTRY_URL}/v2/{path}/manifests/{tag}", token, image_repo, tag
            )
        except httpx.TransportError as e:
            logger.error(f"GitLab: request for {image_repo}:{tag} failed: {e}")
            return None

        digest = self._digest_from_response(response, image_repo, tag)
        if not digest:
            return None

        return self._store(
            image_repo,
            DigestResult(digest=digest, tag=tag, provider_name=self.name, method="registry-api"),
        )

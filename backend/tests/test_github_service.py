"""Tests for the GitHub releases client (docked/services/github_service.py)."""

from datetime import UTC, datetime

import httpx
import pytest

from docked.exceptions import RegistryRateLimitError, RegistryUnavailableError
from docked.services.github_service import GitHubReleasesClient, parse_github_repo


class TestParseGitHubRepo:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("owner/repo", ("owner", "repo")),
            ("https://github.com/owner/repo", ("owner", "repo")),
            ("https://github.com/owner/repo/releases", ("owner", "repo")),
            ("git@github.com:owner/repo.git", ("owner", "repo")),
            ("  owner/repo.name  ", ("owner", "repo.name")),
        ],
    )
    def test_valid_references(self, value, expected):
        assert parse_github_repo(value) == expected

    @pytest.mark.parametrize(
        "value",
        [None, "", "repo", "https://gitlab.com/owner/repo", "owner/re po", "owner/"],
    )
    def test_invalid_references(self, value):
        assert parse_github_repo(value) is None


class TestGitHubReleasesClient:
    @pytest.mark.asyncio
    async def test_latest_release(self, http_client_factory):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(
                200,
                json={
                    "tag_name": "v1.4.0",
                    "name": "1.4.0",
                    "published_at": "2024-04-04T10:00:00Z",
                    "html_url": "https://github.com/owner/repo/releases/tag/v1.4.0",
                },
            )

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        release = await client.get_latest_release("https://github.com/owner/repo")

        assert release.tag_name == "v1.4.0"
        assert release.published_at == datetime(2024, 4, 4, 10, 0, tzinfo=UTC)
        assert calls[0].url.path == "/repos/owner/repo/releases/latest"
        assert "authorization" not in calls[0].headers

        # Cached
        await client.get_latest_release("owner/repo")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_token_sent_when_configured(self, monkeypatch, http_client_factory):
        monkeypatch.setenv("GITHUB_TOKEN", "gh-secret")
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"tag_name": "v1"})

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        await client.get_latest_release("owner/repo")

        assert calls[0].headers["authorization"] == "token gh-secret"
        assert client.is_authenticated is True

    @pytest.mark.asyncio
    async def test_latest_falls_back_to_release_list(self, http_client_factory):
        def handler(request):
            if request.url.path.endswith("/releases/latest"):
                return httpx.Response(404)
            return httpx.Response(
                200,
                json=[
                    {"tag_name": "v3.0.0-rc1", "prerelease": True, "published_at": "2024-03-01T00:00:00Z"},
                    {"tag_name": "v2.1.0", "published_at": "2024-02-01T00:00:00Z"},
                    {"tag_name": "v2.0.0", "published_at": "2024-01-01T00:00:00Z"},
                    {"tag_name": "draft", "draft": True},
                ],
            )

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        release = await client.get_latest_release("owner/repo")
        assert release.tag_name == "v2.1.0"

    @pytest.mark.asyncio
    async def test_no_releases_returns_none(self, http_client_factory):
        client = GitHubReleasesClient(http_client=http_client_factory(lambda r: httpx.Response(404)))
        assert await client.get_latest_release("owner/repo") is None

    @pytest.mark.asyncio
    async def test_invalid_repository_raises(self, http_client_factory):
        client = GitHubReleasesClient(http_client=http_client_factory(lambda r: httpx.Response(200)))
        with pytest.raises(ValueError, match="Invalid GitHub repository format"):
            await client.get_latest_release("not-a-repo")

    @pytest.mark.asyncio
    async def test_rate_limit_raises(self, http_client_factory):
        def handler(request):
            return httpx.Response(
                403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"}
            )

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        with pytest.raises(RegistryRateLimitError) as exc_info:
            await client.get_latest_release("owner/repo")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_server_error_raises_unavailable(self, http_client_factory):
        client = GitHubReleasesClient(http_client=http_client_factory(lambda r: httpx.Response(502)))
        with pytest.raises(RegistryUnavailableError):
            await client.get_latest_release("owner/repo")

    @pytest.mark.asyncio
    async def test_all_releases_limited_and_sorted(self, http_client_factory):
        def handler(request):
            assert request.url.params["per_page"] == "2"
            return httpx.Response(
                200,
                json=[
                    {"tag_name": "v1.0.0", "published_at": "2024-01-01T00:00:00Z"},
                    {"tag_name": "v1.1.0", "published_at": "2024-02-01T00:00:00Z"},
                ],
            )

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        releases = await client.get_all_releases("owner/repo", limit=2)
        assert [r.tag_name for r in releases] == ["v1.1.0", "v1.0.0"]

    @pytest.mark.asyncio
    async def test_release_by_tag(self, http_client_factory):
        def handler(request):
            if request.url.path == "/repos/owner/repo/releases/tags/v1.0.0":
                return httpx.Response(200, json={"tag_name": "v1.0.0"})
            return httpx.Response(404)

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        assert (await client.get_release_by_tag("owner/repo", "v1.0.0")).tag_name == "v1.0.0"
        assert await client.get_release_by_tag("owner/repo", "v9.9.9") is None


class TestMalformedResponses:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>proxy error</html>"),
            httpx.Response(200, json={"name": "no tag"}),
            httpx.Response(200, json=["not", "an", "object"]),
            httpx.Response(200, json={"tag_name": 12}),
        ],
        ids=["html", "missing-tag", "list", "numeric-tag"],
    )
    async def test_latest_release_raises_unavailable(self, http_client_factory, response):
        client = GitHubReleasesClient(http_client=http_client_factory(lambda r: response))
        with pytest.raises(RegistryUnavailableError, match="malformed"):
            await client.get_latest_release("owner/repo")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [{"message": "not a list"}, ["v1.0.0", "v1.1.0"], [{"name": "no tag"}]],
        ids=["object", "strings", "missing-tag"],
    )
    async def test_release_list_raises_unavailable(self, http_client_factory, payload):
        def handler(request):
            if request.url.path.endswith("/releases/latest"):
                return httpx.Response(404)
            return httpx.Response(200, json=payload)

        client = GitHubReleasesClient(http_client=http_client_factory(handler))
        with pytest.raises(RegistryUnavailableError):
            await client.get_latest_release("owner/repo")

    @pytest.mark.asyncio
    async def test_release_by_tag_non_json(self, http_client_factory):
        client = GitHubReleasesClient(
            http_client=http_client_factory(lambda r: httpx.Response(200, text="oops"))
        )
        with pytest.raises(RegistryUnavailableError):
            await client.get_release_by_tag("owner/repo", "v1")

    @pytest.mark.asyncio
    async def test_malformed_response_not_cached(self, http_client_factory):
        responses = [
            httpx.Response(200, text="<html>proxy error</html>"),
            httpx.Response(200, json={"tag_name": "v2.0.0"}),
        ]
        client = GitHubReleasesClient(http_client=http_client_factory(lambda r: responses.pop(0)))

        with pytest.raises(RegistryUnavailableError):
            await client.get_latest_release("owner/repo")
        assert (await client.get_latest_release("owner/repo")).tag_name == "v2.0.0"

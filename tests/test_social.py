"""Provider redirect, callback exchange and the temporal-token handoff."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from gatehouse.app import create_app
from gatehouse.config import AuthConfig, OAuthClient
from gatehouse.service.errors import AuthenticationError, ValidationError
from gatehouse.service.runtime import get_runtime
from gatehouse.service.sessions import SessionManager
from gatehouse.service.social import SocialAuthService, parse_userinfo
from gatehouse.storage.memory import MemoryStore

GITHUB_IDENTITY = {"provider_user_id": "1", "email": "octo@example.com", "name": "Octo"}


@pytest.fixture
def social_client(configure):
    configure(OAUTH_GITHUB_CLIENT_ID="gh-id", OAUTH_GITHUB_CLIENT_SECRET="gh-secret")
    return TestClient(create_app())


def _start(client):
    response = client.get("/auth/github/redirect", follow_redirects=False)
    return response, parse_qs(urlparse(response.headers["location"]).query)


def _github_api(userinfo, emails=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "provider-token"})
        if request.url.path == "/user":
            assert request.headers["Authorization"] == "Bearer provider-token"
            return httpx.Response(200, json=userinfo)
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=emails or [])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class TestParseUserinfo:
    def test_github_falls_back_to_login(self):
        parsed = parse_userinfo("github", {"id": 42, "login": "octo", "email": None})

        assert parsed == {"provider_user_id": "42", "email": None, "name": "octo"}

    def test_microsoft_uses_principal_name(self):
        parsed = parse_userinfo(
            "microsoft", {"id": "m-1", "userPrincipalName": "ms@example.com", "displayName": "M"}
        )

        assert parsed["email"] == "ms@example.com"
        assert parsed["name"] == "M"


class TestCodeExchange:
    def _service(self, tmp_path, transport):
        store = MemoryStore(fs_root=str(tmp_path), secret_encryption_key="unit-test-key")
        config = AuthConfig(providers={"github": OAuthClient("gh-id", "gh-secret")})
        return SocialAuthService(
            store, SessionManager(None, config), config, http_transport=transport
        )

    async def test_callback_exchanges_code_with_provider(self, tmp_path):
        service = self._service(
            tmp_path, _github_api({"id": 7, "login": "octo", "email": "octo@example.com"})
        )
        started = await service.authorization_url("github")

        identity = await service.handle_callback("github", "code-1", started["state"])

        assert identity.provider_user_id == "7"
        assert identity.email == "octo@example.com"
        assert identity.access_token == "provider-token"
        assert identity.temporal_token

    async def test_private_github_email_uses_verified_primary(self, tmp_path):
        emails = [
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": "main@example.com", "primary": True, "verified": True},
        ]
        service = self._service(tmp_path, _github_api({"id": 7, "login": "octo"}, emails))
        started = await service.authorization_url("github")

        identity = await service.handle_callback("github", "code-1", started["state"])

        assert identity.email == "main@example.com"

    async def test_identity_without_email_is_rejected(self, tmp_path):
        service = self._service(tmp_path, _github_api({"id": 7, "login": "octo"}))
        started = await service.authorization_url("github")

        with pytest.raises(AuthenticationError):
            await service.handle_callback("github", "code-1", started["state"])

    async def test_state_is_single_use(self, tmp_path):
        service = self._service(tmp_path, _github_api({"id": 7, "email": "octo@example.com"}))
        started = await service.authorization_url("github")
        await service.handle_callback("github", "code-1", started["state"])

        with pytest.raises(ValidationError):
            await service.handle_callback("github", "code-2", started["state"])

    async def test_unconfigured_provider(self, tmp_path):
        service = self._service(tmp_path, _github_api({}))

        with pytest.raises(ValidationError) as excinfo:
            await service.authorization_url("google")

        assert excinfo.value.detail["errors"][0]["field"] == "provider"


class TestSocialRoutes:
    def test_routes_hidden_without_providers(self):
        client = TestClient(create_app())

        assert client.get("/auth/github/redirect", follow_redirects=False).status_code == 404
        assert client.post("/auth/social/login", json={"access_token": "x"}).status_code == 404

    def test_redirect_targets_provider(self, social_client):
        response, query = _start(social_client)

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://github.com/login/oauth/authorize")
        assert query["client_id"] == ["gh-id"]
        assert query["redirect_uri"] == ["http://localhost:8000/auth/github/callback"]
        assert query["state"][0]

    def test_callback_then_register_then_login(self, social_client):
        _, query = _start(social_client)
        get_runtime().social.register_code("github", "code-1", dict(GITHUB_IDENTITY))

        callback = social_client.get(
            "/auth/github/callback", params={"code": "code-1", "state": query["state"][0]}
        )
        temporal = callback.json()["data"]["access_token"]
        registered = social_client.post("/auth/social/register", json={"access_token": temporal})
        replayed = social_client.post("/auth/social/login", json={"access_token": temporal})

        assert callback.json()["data"]["provider"] == "github"
        assert registered.status_code == 201
        assert registered.json()["data"]["user"]["email"] == "octo@example.com"
        assert replayed.status_code == 422

        _, query = _start(social_client)
        get_runtime().social.register_code("github", "code-2", dict(GITHUB_IDENTITY))
        callback = social_client.get(
            "/auth/github/callback", params={"code": "code-2", "state": query["state"][0]}
        )
        login = social_client.post(
            "/auth/social/login", json={"access_token": callback.json()["data"]["access_token"]}
        )

        assert login.status_code == 200
        assert login.json()["data"]["user"]["id"] == registered.json()["data"]["user"]["id"]

    def test_bad_state_is_rejected(self, social_client):
        response = social_client.get(
            "/auth/github/callback", params={"code": "code-1", "state": "forged"}
        )

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"][0]["field"] == "state"

    def test_callback_redirects_to_client(self, configure):
        configure(
            OAUTH_GITHUB_CLIENT_ID="gh-id",
            OAUTH_CLIENT_CALLBACK_URL="https://app.example/social",
        )
        client = TestClient(create_app())
        _, query = _start(client)
        get_runtime().social.register_code("github", "code-1", dict(GITHUB_IDENTITY))

        response = client.get(
            "/auth/github/callback",
            params={"code": "code-1", "state": query["state"][0]},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://app.example/social?access_token=")

from __future__ import annotations

import json
import secrets
from datetime import timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.service.errors import AuthenticationError, ValidationError
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import generate_random_token
from gatehouse.storage.base import CredentialStore
from gatehouse.storage.models import OAuthIdentity, utcnow

logger = get_logger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}


def parse_userinfo(provider: str, userinfo: dict) -> dict[str, Any]:
    if provider == "google":
        return {
            "provider_user_id": userinfo.get("id") or userinfo.get("sub"),
            "email": userinfo.get("email"),
            "name": userinfo.get("name"),
        }
    if provider == "github":
        return {
            "provider_user_id": str(userinfo["id"]) if userinfo.get("id") else None,
            "email": userinfo.get("email"),
            "name": userinfo.get("name") or userinfo.get("login"),
        }
    if provider == "microsoft":
        return {
            "provider_user_id": userinfo.get("id"),
            "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
            "name": userinfo.get("displayName"),
        }
    return {"provider_user_id": userinfo.get("id") or userinfo.get("sub")}


class SocialAuthService:
    """Provider redirect and callback handling.

    The callback stores an :class:`OAuthIdentity` holding a temporal token;
    the client later trades that token for a session through the social
    login/register flows.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        config: AuthConfig,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.config = config
        self._transport = http_transport
        self._code_registry: dict[tuple[str, str], dict] = {}

    def _client_for(self, provider: str):
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError.for_field("provider", f"Unsupported provider: {provider}.")
        client = self.config.providers.get(provider)
        if not client:
            raise ValidationError.for_field(
                "provider", f"The {provider} provider is not configured."
            )
        return client

    def callback_uri(self, provider: str) -> str:
        return f"{self.config.oauth_redirect_base_url}/{self.config.api_path}/{provider}/callback"

    async def authorization_url(self, provider: str) -> dict[str, str]:
        client = self._client_for(provider)
        state = secrets.token_urlsafe(24)
        await self.sessions.set_oauth_state(state, provider, utcnow() + OAUTH_STATE_TTL)
        settings = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client.client_id,
            "redirect_uri": self.callback_uri(provider),
            "response_type": "code",
            "scope": settings["scope"],
            "state": state,
        }
        return {
            "authorization_url": f"{settings['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def register_code(self, provider: str, code: str, userinfo: dict) -> None:
        """Pre-register an exchanged identity for offline and test flows."""
        self._code_registry[(provider, code)] = userinfo

    async def _exchange_code(self, provider: str, code: str) -> Optional[dict[str, Any]]:
        registered = self._code_registry.pop((provider, code), None)
        if registered:
            return registered

        client = self._client_for(provider)
        settings = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as http:
                token_response = await http.post(
                    settings["token_url"],
                    data={
                        "client_id": client.client_id,
                        "client_secret": client.client_secret or "",
                        "code": code,
                        "redirect_uri": self.callback_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await http.get(settings["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                identity = parse_userinfo(provider, userinfo)

                if provider == "github" and not identity.get("email"):
                    emails_response = await http.get(
                        "https://api.github.com/user/emails", headers=headers
                    )
                    if emails_response.status_code == 200:
                        identity["email"] = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        identity["access_token"] = access_token
        return identity

    async def handle_callback(
        self, provider: str, code: Optional[str], state: Optional[str]
    ) -> OAuthIdentity:
        self._client_for(provider)
        stored = await self.sessions.pop_oauth_state(state)
        if not stored or stored[0] != provider:
            raise ValidationError.for_field("state", "Invalid or expired state.")
        if not code:
            raise ValidationError.for_field("code", "The code is required.")

        identity = await self._exchange_code(provider, code)
        if not identity or not identity.get("provider_user_id") or not identity.get("email"):
            raise AuthenticationError("Could not authenticate with the provider.")

        record = self.store.create_oauth_identity(
            provider,
            str(identity["provider_user_id"]),
            payload=json.dumps({"email": identity["email"], "name": identity.get("name")}),
            email=identity["email"],
            access_token=identity.get("access_token"),
            temporal_token=generate_random_token(),
        )
        logger.info("oauth_identity_stored", provider=provider, identity_id=record.id)
        return record

    def client_redirect_url(self, temporal_token: str) -> Optional[str]:
        base = self.config.oauth_client_callback_url
        if not base:
            return None
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode({'access_token': temporal_token})}"

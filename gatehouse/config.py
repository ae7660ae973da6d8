from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("google", "github", "microsoft")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    client_secret: str | None = None


@dataclass(frozen=True)
class AuthConfig:
    """Read-only auth configuration shared by every component.

    Built once from :class:`Settings` when the runtime starts. Components keep
    a reference to it and never mutate it.
    """

    user_resource: str = "User"
    role_resource: str = "Role"
    permission_resource: str = "Permission"
    api_path: str = "auth"
    disable_cookies: bool = False
    access_token_expires_in: int = 60 * 60
    refresh_token_expires_in: int = 60 * 60 * 24 * 7
    secret_key: str = "auth-secret-key"
    refresh_token_cookie_name: str = "___refresh__token"
    session_cookie_name: str = "gatehouse.sid"
    session_ttl_seconds: int = 60 * 60 * 24
    cookie_secure: bool = True
    teams: bool = False
    two_factor_auth: bool = False
    verify_emails: bool = False
    skip_welcome_email: bool = False
    roles_and_permissions: bool = False
    two_factor_issuer: str = "Gatehouse"
    oauth_redirect_base_url: str = "http://localhost:8000"
    oauth_client_callback_url: str | None = None
    providers: Mapping[str, OAuthClient] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def social_auth_enabled(self) -> bool:
        return len(self.providers) > 0


class Settings(BaseModel):
    """Runtime settings read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and runtime resets.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Auth plugin flags
    user_resource: str = env_field("User", "AUTH_USER_RESOURCE")
    role_resource: str = env_field("Role", "AUTH_ROLE_RESOURCE")
    permission_resource: str = env_field("Permission", "AUTH_PERMISSION_RESOURCE")
    api_path: str = env_field("auth", "AUTH_API_PATH")
    disable_cookies: bool = env_field(
        False,
        "AUTH_DISABLE_COOKIES",
        description="Return tokens in response bodies instead of session + refresh cookies",
    )
    access_token_expires_in: int = env_field(60 * 60, "ACCESS_TOKEN_EXPIRES_IN")
    refresh_token_expires_in: int = env_field(
        60 * 60 * 24 * 7, "REFRESH_TOKEN_EXPIRES_IN"
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_token_cookie_name: str = env_field(
        "___refresh__token", "REFRESH_TOKEN_COOKIE_NAME"
    )
    session_cookie_name: str = env_field("gatehouse.sid", "SESSION_COOKIE_NAME")
    session_ttl_seconds: int = env_field(60 * 60 * 24, "SESSION_TTL_SECONDS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    teams: bool = env_field(False, "AUTH_TEAMS")
    two_factor_auth: bool = env_field(False, "AUTH_TWO_FACTOR")
    verify_emails: bool = env_field(False, "AUTH_VERIFY_EMAILS")
    skip_welcome_email: bool = env_field(False, "AUTH_SKIP_WELCOME_EMAIL")
    roles_and_permissions: bool = env_field(False, "AUTH_ROLES_AND_PERMISSIONS")
    two_factor_issuer: str = env_field("Gatehouse", "TWO_FACTOR_ISSUER")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_redirect_base_url: str = env_field(
        "http://localhost:8000", "OAUTH_REDIRECT_BASE_URL"
    )
    oauth_client_callback_url: str | None = env_field(
        None,
        "OAUTH_CLIENT_CALLBACK_URL",
        description="Front-end URL receiving ?access_token=<temporal token> after a provider callback",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("api_path")
    @classmethod
    def _strip_api_path(cls, value: str) -> str:
        stripped = value.strip("/")
        if not stripped:
            raise ValueError("api_path must not be empty")
        return stripped

    @field_validator("access_token_expires_in", "refresh_token_expires_in")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatehouse"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def oauth_clients(self) -> dict[str, OAuthClient]:
        clients: dict[str, OAuthClient] = {}
        for provider in SUPPORTED_PROVIDERS:
            client_id = getattr(self, f"oauth_{provider}_client_id")
            if client_id:
                clients[provider] = OAuthClient(
                    client_id=client_id,
                    client_secret=getattr(self, f"oauth_{provider}_client_secret"),
                )
        return clients

    def auth_config(self) -> AuthConfig:
        return AuthConfig(
            user_resource=self.user_resource,
            role_resource=self.role_resource,
            permission_resource=self.permission_resource,
            api_path=self.api_path,
            disable_cookies=self.disable_cookies,
            access_token_expires_in=self.access_token_expires_in,
            refresh_token_expires_in=self.refresh_token_expires_in,
            secret_key=self.jwt_secret,
            refresh_token_cookie_name=self.refresh_token_cookie_name,
            session_cookie_name=self.session_cookie_name,
            session_ttl_seconds=self.session_ttl_seconds,
            cookie_secure=self.cookie_secure,
            teams=self.teams,
            two_factor_auth=self.two_factor_auth,
            verify_emails=self.verify_emails,
            skip_welcome_email=self.skip_welcome_email,
            roles_and_permissions=self.roles_and_permissions,
            two_factor_issuer=self.two_factor_issuer,
            oauth_redirect_base_url=self.oauth_redirect_base_url.rstrip("/"),
            oauth_client_callback_url=self.oauth_client_callback_url,
            providers=MappingProxyType(self.oauth_clients()),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

import dataclasses

import pytest
from pydantic import ValidationError

from gatehouse.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("AUTH_API_PATH", "/identity/")
        monkeypatch.setenv("AUTH_DISABLE_COOKIES", "true")
        monkeypatch.setenv("REFRESH_TOKEN_EXPIRES_IN", "120")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

        settings = Settings.from_env()

        assert settings.api_path == "identity"
        assert settings.disable_cookies is True
        assert settings.refresh_token_expires_in == 120
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_rejects_non_positive_lifetimes(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, access_token_expires_in=0)

    def test_rejects_empty_api_path(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, api_path="/")

    def test_generated_jwt_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        cached = get_settings()
        monkeypatch.setenv("AUTH_API_PATH", "other")

        assert get_settings() is cached
        reset_settings_cache()
        assert get_settings().api_path == "other"
        reset_settings_cache()


class TestAuthConfig:
    def test_only_configured_providers_are_enabled(self):
        settings = Settings(
            jwt_secret="x" * 40,
            oauth_github_client_id="gh-id",
            oauth_github_client_secret="gh-secret",
        )

        config = settings.auth_config()

        assert set(config.providers) == {"github"}
        assert config.providers["github"].client_secret == "gh-secret"
        assert config.social_auth_enabled

    def test_config_is_immutable(self):
        config = Settings(jwt_secret="x" * 40).auth_config()

        with pytest.raises(dataclasses.FrozenInstanceError):
            config.two_factor_auth = True
        with pytest.raises(TypeError):
            config.providers["google"] = None

    def test_secret_key_comes_from_jwt_secret(self):
        config = Settings(jwt_secret="y" * 40, oauth_redirect_base_url="https://api.example/").auth_config()

        assert config.secret_key == "y" * 40
        assert config.oauth_redirect_base_url == "https://api.example"
        assert not config.social_auth_enabled

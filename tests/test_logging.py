from gatehouse.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestCorrelationId:
    def test_explicit_id_is_kept(self):
        assert set_correlation_id("req-9") == "req-9"
        assert get_correlation_id() == "req-9"

    def test_id_is_generated(self):
        assert len(set_correlation_id()) == 36


class TestRedaction:
    def test_credential_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "login_failed", "email": "person@example.com", "refresh_token": "abcdefgh", "user_id": "u-1"},
        )

        assert event["email"] == "pe***om"
        assert event["refresh_token"] == "ab***gh"
        assert event["user_id"] == "u-1"
        assert event["event"] == "login_failed"

    def test_sanitize_strips_paths_and_secrets(self):
        cleaned = sanitize_error_message("open /srv/gatehouse/.jwt_secret failed: password=hunter2")

        assert "/srv/gatehouse" not in cleaned
        assert "hunter2" not in cleaned

    def test_sanitize_handles_empty(self):
        assert sanitize_error_message("") == "An error occurred"

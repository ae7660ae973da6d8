"""Refresh token rotation: one live token per user, reuse blocks the owner."""

from datetime import timedelta

import pytest

from gatehouse.config import AuthConfig
from gatehouse.service import refresh as refresh_module
from gatehouse.service.errors import AuthenticationError
from gatehouse.service.refresh import RefreshTokenManager
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import TokenType, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_encryption_key="unit-test-key")


@pytest.fixture
def manager(store):
    return RefreshTokenManager(store, AuthConfig(refresh_token_expires_in=3600))


@pytest.fixture
def user(store):
    return store.create_user("owner@example.com")


def _live_tokens(store, user_id):
    return [t for t in store.list_user_tokens(user_id) if t.is_live()]


class TestIssue:
    def test_issue_leaves_exactly_one_live_token(self, store, manager, user):
        manager.issue(user.id)
        manager.issue(user.id)
        latest = manager.issue(user.id)

        live = _live_tokens(store, user.id)
        assert [t.id for t in live] == [latest.id]

    def test_new_login_expires_tokens_from_other_devices(self, store, manager, user):
        first = manager.issue(user.id)
        manager.issue(user.id)

        stale = store.get_token(first.token, TokenType.REFRESH)
        assert stale.last_used_at is not None
        assert stale.expires_at < utcnow()

    def test_issue_without_previous_expiry_uses_configured_lifetime(self, manager, user):
        before = utcnow()
        token = manager.issue(user.id)

        assert before + timedelta(seconds=3590) < token.expires_at
        assert token.expires_at <= utcnow() + timedelta(seconds=3600)


class TestRotate:
    def test_rotation_chain_stays_usable(self, store, manager, user):
        token = manager.issue(user.id)
        for _ in range(5):
            owner, token = manager.rotate(token.token)
            assert owner.id == user.id

        assert [t.id for t in _live_tokens(store, user.id)] == [token.id]
        assert store.get_user(user.id).blocked_at is None

    def test_rotated_token_inherits_original_expiry(self, manager, user):
        assert refresh_module.INHERIT_ORIGINAL_EXPIRY is True
        original = manager.issue(user.id)

        _, rotated = manager.rotate(original.token)

        assert rotated.expires_at == original.expires_at

    def test_presenting_a_rotated_token_blocks_the_owner(self, store, manager, user):
        original = manager.issue(user.id)
        manager.rotate(original.token)

        with pytest.raises(AuthenticationError) as excinfo:
            manager.rotate(original.token)

        assert excinfo.value.message == "Invalid refresh token."
        assert store.get_user(user.id).blocked_at is not None
        assert store.get_token(original.token).compromised_at is not None

    def test_token_superseded_by_new_login_counts_as_reuse(self, store, manager, user):
        stolen = manager.issue(user.id)
        manager.issue(user.id)

        with pytest.raises(AuthenticationError):
            manager.rotate(stolen.token)

        assert store.get_user(user.id).is_blocked

    def test_live_token_of_blocked_owner_cannot_rotate(self, store, manager, user):
        original = manager.issue(user.id)
        _, current = manager.rotate(original.token)
        with pytest.raises(AuthenticationError):
            manager.rotate(original.token)

        with pytest.raises(AuthenticationError) as excinfo:
            manager.rotate(current.token)

        assert excinfo.value.message == "Invalid refresh token."
        assert [t.id for t in _live_tokens(store, user.id)] == [current.id]

    def test_unknown_or_missing_token_is_rejected(self, manager):
        for value in (None, "", "does-not-exist"):
            with pytest.raises(AuthenticationError):
                manager.rotate(value)

    def test_expired_token_is_discarded_without_blocking(self, store, manager, user):
        token = store.create_token(user.id, "expired-token", utcnow() - timedelta(minutes=1))

        with pytest.raises(AuthenticationError):
            manager.rotate("expired-token")

        assert store.get_token("expired-token") is None
        assert not store.get_user(user.id).is_blocked
        assert token.id not in {t.id for t in store.list_user_tokens(user.id)}

    def test_token_of_deleted_owner_is_discarded(self, store, manager):
        store.create_token("ghost-user", "orphan-token", utcnow() + timedelta(hours=1))

        with pytest.raises(AuthenticationError):
            manager.rotate("orphan-token")

        assert store.get_token("orphan-token") is None

    def test_lost_claim_is_treated_as_reuse(self, store, manager, user, monkeypatch):
        token = manager.issue(user.id)
        monkeypatch.setattr(store, "consume_refresh_token", lambda *a, **kw: None)

        with pytest.raises(AuthenticationError):
            manager.rotate(token.token)

        assert store.get_user(user.id).is_blocked

    def test_remove_refresh_tokens_reports_success(self, manager):
        assert manager.remove_refresh_tokens() is True

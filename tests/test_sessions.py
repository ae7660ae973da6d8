"""In-process session and OAuth state maps used when Redis is absent."""

from datetime import timedelta

import pytest

from gatehouse.config import AuthConfig
from gatehouse.service.sessions import SessionManager
from gatehouse.storage.models import utcnow


@pytest.fixture
def sessions():
    return SessionManager(None, AuthConfig(session_ttl_seconds=60))


class TestLocalSessions:
    async def test_create_and_resolve(self, sessions):
        session_id = await sessions.create_session("u-1")

        assert await sessions.get_user_id(session_id) == "u-1"

    async def test_expired_sessions_are_swept_on_create(self, sessions):
        sessions._sessions["stale"] = ("u-1", utcnow() - timedelta(seconds=1))

        fresh = await sessions.create_session("u-2")

        assert set(sessions._sessions) == {fresh}

    async def test_revoke_user_sessions(self, sessions):
        first = await sessions.create_session("u-1")
        await sessions.create_session("u-1")
        other = await sessions.create_session("u-2")

        assert await sessions.revoke_user_sessions("u-1") == 2
        assert await sessions.get_user_id(first) is None
        assert await sessions.get_user_id(other) == "u-2"


class TestLocalOAuthState:
    async def test_expired_states_are_swept_on_set(self, sessions):
        await sessions.set_oauth_state("old", "github", utcnow() - timedelta(seconds=1))

        await sessions.set_oauth_state("new", "github", utcnow() + timedelta(minutes=10))

        assert set(sessions._oauth_states) == {"new"}

    async def test_state_is_single_use(self, sessions):
        await sessions.set_oauth_state("s1", "google", utcnow() + timedelta(minutes=10))

        assert (await sessions.pop_oauth_state("s1"))[0] == "google"
        assert await sessions.pop_oauth_state("s1") is None

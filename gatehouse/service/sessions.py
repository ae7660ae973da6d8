from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional, Union

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.storage.models import utcnow
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache]


def _sweep_expired(entries: dict[str, tuple[str, datetime]]) -> None:
    now = utcnow()
    for key in [k for k, (_, expires_at) in entries.items() if expires_at <= now]:
        entries.pop(key, None)


class SessionManager:
    """HTTP sessions (session id -> user id) and pending OAuth ``state`` values.

    Uses Redis when available; otherwise falls back to process-local maps,
    which the runtime only allows under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    """

    def __init__(self, cache: Optional[Cache], config: AuthConfig) -> None:
        self.cache = cache
        self.config = config
        self._sessions: dict[str, tuple[str, datetime]] = {}
        self._oauth_states: dict[str, tuple[str, datetime]] = {}

    async def create_session(self, user_id: str) -> str:
        session_id = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(seconds=self.config.session_ttl_seconds)
        if self.cache:
            await self.cache.cache_session(session_id, user_id, expires_at)
        else:
            _sweep_expired(self._sessions)
            self._sessions[session_id] = (user_id, expires_at)
        logger.info("session_created", user_id=user_id)
        return session_id

    async def get_user_id(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id:
            return None
        if self.cache:
            return await self.cache.get_session_user(session_id)
        entry = self._sessions.get(session_id)
        if not entry:
            return None
        user_id, expires_at = entry
        if expires_at <= utcnow():
            self._sessions.pop(session_id, None)
            return None
        return user_id

    async def destroy_session(self, session_id: Optional[str]) -> dict[str, bool]:
        """Remove a session; reports the outcome instead of raising."""
        if not session_id:
            return {"success": False}
        try:
            if self.cache:
                removed = await self.cache.revoke_session(session_id)
            else:
                removed = self._sessions.pop(session_id, None) is not None
        except Exception as exc:
            logger.error("session_destroy_failed", error=str(exc))
            return {"success": False}
        return {"success": bool(removed)}

    async def revoke_user_sessions(self, user_id: str) -> int:
        if self.cache:
            return await self.cache.revoke_user_sessions(user_id)
        owned = [sid for sid, (uid, _) in self._sessions.items() if uid == user_id]
        for session_id in owned:
            self._sessions.pop(session_id, None)
        return len(owned)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            _sweep_expired(self._oauth_states)
            self._oauth_states[state] = (provider, expires_at)

    async def pop_oauth_state(self, state: Optional[str]) -> Optional[tuple[str, datetime]]:
        """Single-use lookup of a pending ``state``; None when missing or expired."""
        if not state:
            return None
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
        else:
            stored = self._oauth_states.pop(state, None)
        if not stored or stored[1] <= utcnow():
            return None
        return stored

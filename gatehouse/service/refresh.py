from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.service.errors import AuthenticationError
from gatehouse.service.tokens import generate_random_token
from gatehouse.storage.base import CredentialStore
from gatehouse.storage.models import Token, TokenType, User, utcnow

logger = get_logger(__name__)

# A rotated token keeps the expiry of the token it replaces, so a login's
# refresh chain ends refresh_token_expires_in seconds after the login.
INHERIT_ORIGINAL_EXPIRY = True

_INVALID = "Invalid refresh token."


class RefreshTokenManager:
    """Single-use refresh tokens with reuse detection.

    Every user has at most one live refresh token. Presenting a token that
    was already consumed (or superseded) marks it compromised and blocks the
    owner until an operator intervenes.
    """

    def __init__(self, store: CredentialStore, config: AuthConfig) -> None:
        self.store = store
        self.config = config

    def issue(self, user_id: str, previous_expiry: Optional[datetime] = None) -> Token:
        now = utcnow()
        expires_at = previous_expiry or now + timedelta(
            seconds=self.config.refresh_token_expires_in
        )
        token = self.store.replace_refresh_token(
            user_id,
            generate_random_token(64),
            expires_at,
            expire_at=now - timedelta(seconds=1),
        )
        logger.info("refresh_token_issued", user_id=user_id, expires_at=expires_at.isoformat())
        return token

    def rotate(self, token_value: Optional[str]) -> tuple[User, Token]:
        """Consume ``token_value`` and return its owner with a fresh token."""
        if not token_value:
            raise AuthenticationError(_INVALID)
        record = self.store.get_token(token_value, TokenType.REFRESH)
        if not record:
            raise AuthenticationError(_INVALID)

        now = utcnow()
        if record.last_used_at is not None:
            self._mark_compromised(record, now)
            raise AuthenticationError(_INVALID)

        owner = self.store.get_user(record.user_id) if record.user_id else None
        if owner is None or record.expires_at <= now:
            self.store.delete_token(record.id)
            logger.info("refresh_token_discarded", token_id=record.id, owner_found=owner is not None)
            raise AuthenticationError(_INVALID)
        if owner.is_blocked:
            logger.warning("refresh_token_blocked_owner", user_id=owner.id)
            raise AuthenticationError(_INVALID)

        claimed = self.store.consume_refresh_token(
            record.id, now, expire_at=now - timedelta(seconds=1)
        )
        if claimed is None:
            # Another request consumed it between the read and the claim
            self._mark_compromised(record, now)
            raise AuthenticationError(_INVALID)

        previous_expiry = record.expires_at if INHERIT_ORIGINAL_EXPIRY else None
        return owner, self.issue(owner.id, previous_expiry=previous_expiry)

    def _mark_compromised(self, record: Token, now: datetime) -> None:
        self.store.flag_compromised(record.id, now)
        logger.warning(
            "refresh_token_reuse_detected", token_id=record.id, user_id=record.user_id
        )

    def remove_refresh_tokens(self) -> bool:
        """Revocation only clears the client's cookie; the row expires on its own."""
        return True

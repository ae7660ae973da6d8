from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _render(values: Dict[str, Any], hidden: tuple[str, ...]) -> Dict[str, Any]:
    rendered: Dict[str, Any] = {}
    for key, value in values.items():
        if key in hidden:
            continue
        rendered[key] = value.isoformat() if isinstance(value, datetime) else value
    return rendered


class TokenType(str, Enum):
    REFRESH = "REFRESH"
    API = "API"


_HIDDEN_USER_FIELDS = ("password", "two_factor_secret", "email_verification_token")


@dataclass
class User:
    id: str
    email: str
    password: Optional[str] = None
    name: Optional[str] = None
    blocked_at: Optional[datetime] = None
    # None: never configured or pending confirmation
    two_factor_enabled: Optional[bool] = None
    two_factor_secret: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    role_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_at is not None

    def to_public(self) -> Dict[str, Any]:
        return _render(asdict(self), _HIDDEN_USER_FIELDS)


@dataclass
class Role:
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    permission_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        return _render(asdict(self), ())


@dataclass
class Permission:
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        return _render(asdict(self), ())


@dataclass
class Token:
    id: str
    token: str
    user_id: Optional[str]
    expires_at: datetime
    type: TokenType = TokenType.REFRESH
    name: Optional[str] = None
    last_used_at: Optional[datetime] = None
    compromised_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """Unused, unexpired and not compromised."""
        now = now or utcnow()
        return (
            self.last_used_at is None
            and self.compromised_at is None
            and self.expires_at > now
        )

    def to_public(self) -> Dict[str, Any]:
        rendered = _render(asdict(self), ("token",))
        rendered["type"] = self.type.value
        return rendered


@dataclass
class OAuthIdentity:
    id: str
    provider: str
    provider_user_id: str
    payload: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    # Handoff value given to the client after the provider callback
    temporal_token: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        return _render(asdict(self), ("access_token", "temporal_token", "payload"))


@dataclass
class PasswordReset:
    email: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Team:
    id: str
    name: str
    owner_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TeamInvite:
    id: str
    team_id: str
    email: str
    token: str
    role: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

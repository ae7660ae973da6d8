from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.service.tokens import InvalidTokenError, TokenCodec
from gatehouse.storage.base import CredentialStore
from gatehouse.storage.models import User

logger = get_logger(__name__)

AUTHENTICATED_ROLE = "authenticated"
PUBLIC_ROLE = "public"


@dataclass(frozen=True)
class Principal:
    """Identity attached to a request: a stored user or the public guest."""

    user: Optional[User] = None
    public: bool = False
    roles: Tuple[str, ...] = ()
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def is_blocked(self) -> bool:
        return bool(self.user and self.user.is_blocked)

    def can(self, permission: str) -> bool:
        return permission in self.permissions


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthResolver:
    """Turns a bearer header or session user id into a :class:`Principal`.

    The bearer token wins over the session. Anything that does not resolve
    to a stored user yields ``None`` without raising.
    """

    def __init__(self, store: CredentialStore, config: AuthConfig, codec: TokenCodec) -> None:
        self.store = store
        self.config = config
        self.codec = codec

    def resolve(
        self, authorization: Optional[str], session_user_id: Optional[str]
    ) -> Optional[Principal]:
        user_id: Optional[str] = None
        bearer = extract_bearer(authorization)
        if bearer:
            try:
                user_id = self.codec.verify_access_token(bearer)["id"]
            except InvalidTokenError as exc:
                logger.info("access_token_rejected", reason=str(exc))
                return None
        elif session_user_id:
            user_id = session_user_id
        if not user_id:
            return None

        user = self.store.get_user(user_id)
        if not user:
            return None
        return self._principal_for(user)

    def _principal_for(self, user: User) -> Principal:
        if not self.config.roles_and_permissions:
            return Principal(user=user)
        roles = tuple(
            role.slug
            for role in (self.store.get_role(role_id) for role_id in user.role_ids)
            if role is not None
        )
        permissions = frozenset(
            p.slug for p in self.store.get_permissions_for_roles(user.role_ids)
        )
        return Principal(user=user, roles=roles, permissions=permissions)

    def public_principal(self) -> Optional[Principal]:
        if not self.config.roles_and_permissions:
            return None
        role = self.store.get_role_by_slug(PUBLIC_ROLE)
        if not role:
            return Principal(public=True, roles=(PUBLIC_ROLE,))
        permissions = frozenset(
            p.slug for p in self.store.get_permissions_for_roles([role.id])
        )
        return Principal(public=True, roles=(PUBLIC_ROLE,), permissions=permissions)

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence

from gatehouse.storage.models import (
    OAuthIdentity,
    PasswordReset,
    Permission,
    Role,
    Team,
    TeamInvite,
    Token,
    TokenType,
    User,
)


class CredentialStore(Protocol):
    """Persistence contract shared by the memory and Postgres stores.

    Every method is one transaction. ``replace_refresh_token``,
    ``consume_refresh_token``, ``flag_compromised`` and
    ``consume_oauth_identity`` are the read-modify-write steps that must be
    atomic with respect to concurrent callers.
    """

    # users
    def create_user(
        self,
        email: str,
        *,
        password: Optional[str] = None,
        name: Optional[str] = None,
        role_ids: Optional[Sequence[str]] = None,
        email_verification_token: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    # roles and permissions
    def create_role(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        permission_ids: Optional[Sequence[str]] = None,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_slug(self, slug: str) -> Optional[Role]: ...

    def list_roles(self, limit: int = 100, offset: int = 0) -> List[Role]: ...

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def create_permission(
        self, name: str, slug: str, *, description: Optional[str] = None
    ) -> Permission: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def get_permission_by_slug(self, slug: str) -> Optional[Permission]: ...

    def list_permissions(self, limit: int = 100, offset: int = 0) -> List[Permission]: ...

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]: ...

    def delete_permission(self, permission_id: str) -> bool: ...

    def get_permissions_for_roles(self, role_ids: Sequence[str]) -> List[Permission]: ...

    # tokens
    def create_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        type: TokenType = TokenType.REFRESH,
        name: Optional[str] = None,
    ) -> Token: ...

    def get_token(
        self, token: str, type: TokenType = TokenType.REFRESH
    ) -> Optional[Token]: ...

    def list_user_tokens(self, user_id: str) -> List[Token]: ...

    def expire_user_tokens(self, user_id: str, at: datetime) -> int: ...

    def replace_refresh_token(
        self, user_id: str, token: str, expires_at: datetime, *, expire_at: datetime
    ) -> Token: ...

    def consume_refresh_token(
        self, token_id: str, used_at: datetime, *, expire_at: datetime
    ) -> Optional[Token]: ...

    def flag_compromised(self, token_id: str, at: datetime) -> Optional[Token]: ...

    def delete_token(self, token_id: str) -> bool: ...

    # oauth identities
    def create_oauth_identity(
        self,
        provider: str,
        provider_user_id: str,
        *,
        payload: str,
        email: Optional[str] = None,
        access_token: Optional[str] = None,
        temporal_token: Optional[str] = None,
    ) -> OAuthIdentity: ...

    def get_oauth_identity_by_temporal_token(
        self, temporal_token: str
    ) -> Optional[OAuthIdentity]: ...

    def consume_oauth_identity(
        self, identity_id: str, temporal_token: str, user_id: str
    ) -> Optional[OAuthIdentity]: ...

    # password resets
    def upsert_password_reset(
        self, email: str, token: str, expires_at: datetime
    ) -> PasswordReset: ...

    def get_password_reset_by_token(self, token: str) -> Optional[PasswordReset]: ...

    def delete_password_reset(self, email: str) -> bool: ...

    # teams
    def create_team(self, name: str, *, owner_id: Optional[str] = None) -> Team: ...

    def get_team(self, team_id: str) -> Optional[Team]: ...

    def create_team_invite(
        self,
        team_id: str,
        email: str,
        token: str,
        *,
        role: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> TeamInvite: ...

    def get_team_invite_by_token(self, token: str) -> Optional[TeamInvite]: ...

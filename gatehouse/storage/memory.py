from __future__ import annotations

import copy
import dataclasses
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from gatehouse.logging import get_logger
from gatehouse.storage.cipher import SecretCipher
from gatehouse.storage.errors import ConstraintViolation
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
    new_id,
    utcnow,
)

T = TypeVar("T")

_USER_FIELDS = {f.name for f in dataclasses.fields(User)} - {"id", "created_at"}
_ROLE_FIELDS = {"name", "slug", "description", "permission_ids"}
_PERMISSION_FIELDS = {"name", "slug", "description"}


class MemoryStore:
    """In-memory credential store with a JSON snapshot on the shared filesystem.

    All reads and writes run under one re-entrant lock, which gives every
    method the isolation of a single transaction. Records handed to callers
    are copies; mutating them has no effect until written back.
    """

    def __init__(
        self, fs_root: str = "/tmp/gatehouse", *, secret_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.tokens: Dict[str, Token] = {}
        self.oauth_identities: Dict[str, OAuthIdentity] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.teams: Dict[str, Team] = {}
        self.team_invites: Dict[str, TeamInvite] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._secret_cipher = SecretCipher(self.fs_root, secret_encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _user_out(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        out = copy.deepcopy(user)
        out.two_factor_secret = self._secret_cipher.decrypt(user.two_factor_secret)
        return out

    # -- users ---------------------------------------------------------------

    def _find_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == needle), None)

    def create_user(
        self,
        email: str,
        *,
        password: Optional[str] = None,
        name: Optional[str] = None,
        role_ids: Optional[Sequence[str]] = None,
        email_verification_token: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                password=password,
                name=name,
                role_ids=list(role_ids or []),
                email_verification_token=email_verification_token,
                email_verified_at=email_verified_at,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._user_out(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._user_out(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._user_out(self._find_user_by_email(email))

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                other = self._find_user_by_email(fields["email"])
                if other and other.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "two_factor_secret" in fields:
                fields["two_factor_secret"] = self._secret_cipher.encrypt(
                    fields["two_factor_secret"]
                )
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._user_out(user)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._user_out(u) for u in ordered[:limit]]

    # -- roles and permissions ---------------------------------------------

    def create_role(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        permission_ids: Optional[Sequence[str]] = None,
    ) -> Role:
        with self._data_lock:
            if any(r.slug == slug for r in self.roles.values()):
                raise ConstraintViolation("role slug already exists", {"field": "slug"})
            role = Role(
                id=new_id(),
                name=name,
                slug=slug,
                description=description,
                permission_ids=[p for p in (permission_ids or []) if p in self.permissions],
            )
            self.roles[role.id] = role
            self._persist_state()
            return copy.deepcopy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return copy.deepcopy(self.roles.get(role_id))

    def get_role_by_slug(self, slug: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.slug == slug), None)
            return copy.deepcopy(role)

    def list_roles(self, limit: int = 100, offset: int = 0) -> List[Role]:
        with self._data_lock:
            ordered = sorted(self.roles.values(), key=lambda r: r.created_at)
            return copy.deepcopy(ordered[offset : offset + limit])

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        unknown = set(fields) - _ROLE_FIELDS
        if unknown:
            raise ValueError(f"unknown role fields: {sorted(unknown)}")
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if "slug" in fields and any(
                r.slug == fields["slug"] and r.id != role_id for r in self.roles.values()
            ):
                raise ConstraintViolation("role slug already exists", {"field": "slug"})
            if "permission_ids" in fields:
                fields["permission_ids"] = [
                    p for p in fields["permission_ids"] or [] if p in self.permissions
                ]
            for name, value in fields.items():
                setattr(role, name, value)
            self._persist_state()
            return copy.deepcopy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for user in self.users.values():
                if role_id in user.role_ids:
                    user.role_ids = [r for r in user.role_ids if r != role_id]
            self._persist_state()
            return True

    def create_permission(
        self, name: str, slug: str, *, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            if any(p.slug == slug for p in self.permissions.values()):
                raise ConstraintViolation(
                    "permission slug already exists", {"field": "slug"}
                )
            permission = Permission(
                id=new_id(), name=name, slug=slug, description=description
            )
            self.permissions[permission.id] = permission
            self._persist_state()
            return copy.deepcopy(permission)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return copy.deepcopy(self.permissions.get(permission_id))

    def get_permission_by_slug(self, slug: str) -> Optional[Permission]:
        with self._data_lock:
            found = next((p for p in self.permissions.values() if p.slug == slug), None)
            return copy.deepcopy(found)

    def list_permissions(self, limit: int = 100, offset: int = 0) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: p.created_at)
            return copy.deepcopy(ordered[offset : offset + limit])

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]:
        unknown = set(fields) - _PERMISSION_FIELDS
        if unknown:
            raise ValueError(f"unknown permission fields: {sorted(unknown)}")
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            if "slug" in fields and any(
                p.slug == fields["slug"] and p.id != permission_id
                for p in self.permissions.values()
            ):
                raise ConstraintViolation(
                    "permission slug already exists", {"field": "slug"}
                )
            for name, value in fields.items():
                setattr(permission, name, value)
            self._persist_state()
            return copy.deepcopy(permission)

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            for role in self.roles.values():
                if permission_id in role.permission_ids:
                    role.permission_ids = [
                        p for p in role.permission_ids if p != permission_id
                    ]
            self._persist_state()
            return True

    def get_permissions_for_roles(self, role_ids: Sequence[str]) -> List[Permission]:
        with self._data_lock:
            seen: Dict[str, Permission] = {}
            for role_id in role_ids:
                role = self.roles.get(role_id)
                if not role:
                    continue
                for permission_id in role.permission_ids:
                    permission = self.permissions.get(permission_id)
                    if permission:
                        seen[permission.id] = permission
            return copy.deepcopy(list(seen.values()))

    # -- tokens --------------------------------------------------------------

    def _insert_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        type: TokenType,
        name: Optional[str],
    ) -> Token:
        if any(t.token == token for t in self.tokens.values()):
            raise ConstraintViolation("token already exists", {"field": "token"})
        record = Token(
            id=new_id(),
            token=token,
            user_id=user_id,
            expires_at=expires_at,
            type=type,
            name=name,
        )
        self.tokens[record.id] = record
        return record

    def create_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        type: TokenType = TokenType.REFRESH,
        name: Optional[str] = None,
    ) -> Token:
        with self._data_lock:
            record = self._insert_token(user_id, token, expires_at, type, name)
            self._persist_state()
            return copy.deepcopy(record)

    def get_token(
        self, token: str, type: TokenType = TokenType.REFRESH
    ) -> Optional[Token]:
        with self._data_lock:
            found = next(
                (t for t in self.tokens.values() if t.token == token and t.type == type),
                None,
            )
            return copy.deepcopy(found)

    def list_user_tokens(self, user_id: str) -> List[Token]:
        with self._data_lock:
            owned = [t for t in self.tokens.values() if t.user_id == user_id]
            return copy.deepcopy(sorted(owned, key=lambda t: t.created_at))

    def _expire_user_tokens(self, user_id: str, at: datetime) -> int:
        count = 0
        for record in self.tokens.values():
            if record.user_id == user_id:
                record.expires_at = at
                record.last_used_at = at
                count += 1
        return count

    def expire_user_tokens(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            count = self._expire_user_tokens(user_id, at)
            if count:
                self._persist_state()
            return count

    def replace_refresh_token(
        self, user_id: str, token: str, expires_at: datetime, *, expire_at: datetime
    ) -> Token:
        with self._data_lock:
            self._expire_user_tokens(user_id, expire_at)
            record = self._insert_token(
                user_id, token, expires_at, TokenType.REFRESH, None
            )
            self._persist_state()
            return copy.deepcopy(record)

    def consume_refresh_token(
        self, token_id: str, used_at: datetime, *, expire_at: datetime
    ) -> Optional[Token]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record or record.last_used_at is not None:
                return None
            record.last_used_at = used_at
            record.expires_at = expire_at
            self._persist_state()
            return copy.deepcopy(record)

    def flag_compromised(self, token_id: str, at: datetime) -> Optional[Token]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record:
                return None
            record.compromised_at = at
            owner = self.users.get(record.user_id) if record.user_id else None
            if owner:
                owner.blocked_at = at
                owner.updated_at = at
            self._persist_state()
            return copy.deepcopy(record)

    def delete_token(self, token_id: str) -> bool:
        with self._data_lock:
            if self.tokens.pop(token_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- oauth identities ----------------------------------------------------

    def create_oauth_identity(
        self,
        provider: str,
        provider_user_id: str,
        *,
        payload: str,
        email: Optional[str] = None,
        access_token: Optional[str] = None,
        temporal_token: Optional[str] = None,
    ) -> OAuthIdentity:
        with self._data_lock:
            identity = OAuthIdentity(
                id=new_id(),
                provider=provider,
                provider_user_id=provider_user_id,
                payload=payload,
                email=email,
                access_token=access_token,
                temporal_token=temporal_token,
            )
            self.oauth_identities[identity.id] = identity
            self._persist_state()
            return copy.deepcopy(identity)

    def get_oauth_identity_by_temporal_token(
        self, temporal_token: str
    ) -> Optional[OAuthIdentity]:
        with self._data_lock:
            found = next(
                (
                    i
                    for i in self.oauth_identities.values()
                    if i.temporal_token is not None and i.temporal_token == temporal_token
                ),
                None,
            )
            return copy.deepcopy(found)

    def consume_oauth_identity(
        self, identity_id: str, temporal_token: str, user_id: str
    ) -> Optional[OAuthIdentity]:
        with self._data_lock:
            identity = self.oauth_identities.get(identity_id)
            if not identity or identity.temporal_token != temporal_token:
                return None
            identity.temporal_token = None
            identity.user_id = user_id
            self._persist_state()
            return copy.deepcopy(identity)

    # -- password resets ------------------------------------------------------

    def upsert_password_reset(
        self, email: str, token: str, expires_at: datetime
    ) -> PasswordReset:
        with self._data_lock:
            key = email.lower()
            existing = self.password_resets.get(key)
            if existing:
                existing.token = token
                existing.expires_at = expires_at
                record = existing
            else:
                record = PasswordReset(email=email, token=token, expires_at=expires_at)
                self.password_resets[key] = record
            self._persist_state()
            return copy.deepcopy(record)

    def get_password_reset_by_token(self, token: str) -> Optional[PasswordReset]:
        with self._data_lock:
            found = next(
                (r for r in self.password_resets.values() if r.token == token), None
            )
            return copy.deepcopy(found)

    def delete_password_reset(self, email: str) -> bool:
        with self._data_lock:
            if self.password_resets.pop(email.lower(), None) is None:
                return False
            self._persist_state()
            return True

    # -- teams ---------------------------------------------------------------

    def create_team(self, name: str, *, owner_id: Optional[str] = None) -> Team:
        with self._data_lock:
            team = Team(id=new_id(), name=name, owner_id=owner_id)
            self.teams[team.id] = team
            self._persist_state()
            return copy.deepcopy(team)

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._data_lock:
            return copy.deepcopy(self.teams.get(team_id))

    def create_team_invite(
        self,
        team_id: str,
        email: str,
        token: str,
        *,
        role: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> TeamInvite:
        with self._data_lock:
            if team_id not in self.teams:
                raise ConstraintViolation("team does not exist", {"team_id": team_id})
            invite = TeamInvite(
                id=new_id(),
                team_id=team_id,
                email=email,
                token=token,
                role=role,
                expires_at=expires_at,
            )
            self.team_invites[invite.id] = invite
            self._persist_state()
            return copy.deepcopy(invite)

    def get_team_invite_by_token(self, token: str) -> Optional[TeamInvite]:
        with self._data_lock:
            found = next((i for i in self.team_invites.values() if i.token == token), None)
            return copy.deepcopy(found)

    # -- snapshot ------------------------------------------------------------

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = dataclasses.asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, TokenType):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(cls: Type[T], raw: dict) -> T:
        values: Dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if f.name not in raw:
                continue
            value = raw[f.name]
            if isinstance(value, str) and (
                f.name.endswith("_at") or f.name == "created_at"
            ):
                value = datetime.fromisoformat(value)
            values[f.name] = value
        if cls is Token and "type" in values:
            values["type"] = TokenType(values["type"])
        return cls(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "roles": [self._serialize(r) for r in self.roles.values()],
            "permissions": [self._serialize(p) for p in self.permissions.values()],
            "tokens": [self._serialize(t) for t in self.tokens.values()],
            "oauth_identities": [
                self._serialize(i) for i in self.oauth_identities.values()
            ],
            "password_resets": [
                self._serialize(r) for r in self.password_resets.values()
            ],
            "teams": [self._serialize(t) for t in self.teams.values()],
            "team_invites": [self._serialize(i) for i in self.team_invites.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.roles = {
            r["id"]: self._deserialize(Role, r) for r in data.get("roles", [])
        }
        self.permissions = {
            p["id"]: self._deserialize(Permission, p) for p in data.get("permissions", [])
        }
        self.tokens = {
            t["id"]: self._deserialize(Token, t) for t in data.get("tokens", [])
        }
        self.oauth_identities = {
            i["id"]: self._deserialize(OAuthIdentity, i)
            for i in data.get("oauth_identities", [])
        }
        self.password_resets = {
            r["email"].lower(): self._deserialize(PasswordReset, r)
            for r in data.get("password_resets", [])
        }
        self.teams = {
            t["id"]: self._deserialize(Team, t) for t in data.get("teams", [])
        }
        self.team_invites = {
            i["id"]: self._deserialize(TeamInvite, i) for i in data.get("team_invites", [])
        }
        return True

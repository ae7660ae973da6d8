from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password TEXT,
        name TEXT,
        blocked_at TIMESTAMPTZ,
        two_factor_enabled BOOLEAN,
        two_factor_secret TEXT,
        email_verified_at TIMESTAMPTZ,
        email_verification_token TEXT,
        role_ids TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_user_email_idx ON auth_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_permission (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        description TEXT,
        permission_ids TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID REFERENCES auth_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        name TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        compromised_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_oauth_identity (
        id UUID PRIMARY KEY,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        email TEXT,
        access_token TEXT,
        temporal_token TEXT UNIQUE,
        user_id UUID REFERENCES auth_user(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_password_reset (
        email TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_team (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id UUID REFERENCES auth_user(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_team_invite (
        id UUID PRIMARY KEY,
        team_id UUID NOT NULL REFERENCES auth_team(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        role TEXT,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_USER_COLUMNS = {
    "email",
    "password",
    "name",
    "blocked_at",
    "two_factor_enabled",
    "two_factor_secret",
    "email_verified_at",
    "email_verification_token",
    "role_ids",
}
_ROLE_COLUMNS = {"name", "slug", "description", "permission_ids"}
_PERMISSION_COLUMNS = {"name", "slug", "description"}


class PostgresStore:
    """Postgres-backed credential store.

    Multi-step operations run inside ``conn.transaction()`` and use
    conditional ``UPDATE ... RETURNING`` so concurrent rotations of the same
    refresh token have exactly one winner.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, secret_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._secret_cipher = SecretCipher(self.fs_root, secret_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- row mapping ---------------------------------------------------------

    def _user_from_row(self, row: Optional[dict]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            password=row.get("password"),
            name=row.get("name"),
            blocked_at=row.get("blocked_at"),
            two_factor_enabled=row.get("two_factor_enabled"),
            two_factor_secret=self._secret_cipher.decrypt(row.get("two_factor_secret")),
            email_verified_at=row.get("email_verified_at"),
            email_verification_token=row.get("email_verification_token"),
            role_ids=list(row.get("role_ids") or []),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _role_from_row(row: Optional[dict]) -> Optional[Role]:
        if not row:
            return None
        return Role(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            description=row.get("description"),
            permission_ids=list(row.get("permission_ids") or []),
            created_at=row["created_at"],
        )

    @staticmethod
    def _permission_from_row(row: Optional[dict]) -> Optional[Permission]:
        if not row:
            return None
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            description=row.get("description"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _token_from_row(row: Optional[dict]) -> Optional[Token]:
        if not row:
            return None
        return Token(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            expires_at=row["expires_at"],
            type=TokenType(row["type"]),
            name=row.get("name"),
            last_used_at=row.get("last_used_at"),
            compromised_at=row.get("compromised_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _identity_from_row(row: Optional[dict]) -> Optional[OAuthIdentity]:
        if not row:
            return None
        return OAuthIdentity(
            id=str(row["id"]),
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            payload=row["payload"],
            email=row.get("email"),
            access_token=row.get("access_token"),
            temporal_token=row.get("temporal_token"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def _set_clause(fields: dict) -> tuple[str, list[Any]]:
        columns = sorted(fields)
        return ", ".join(f"{c} = %s" for c in columns), [fields[c] for c in columns]

    # -- users ---------------------------------------------------------------

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_user (id, email, password, name, role_ids,
                        email_verification_token, email_verified_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        password,
                        name,
                        list(role_ids or []),
                        email_verification_token,
                        email_verified_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if "two_factor_secret" in fields:
            fields["two_factor_secret"] = self._secret_cipher.encrypt(
                fields["two_factor_secret"]
            )
        if "role_ids" in fields:
            fields["role_ids"] = list(fields["role_ids"] or [])
        if not fields:
            return self.get_user(user_id)
        clause, values = self._set_clause(fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE auth_user SET {clause}, updated_at = now() WHERE id = %s RETURNING *",
                    (*values, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_user ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    # -- roles and permissions ---------------------------------------------

    def create_role(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        permission_ids: Optional[Sequence[str]] = None,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_role (id, name, slug, description, permission_ids)
                    VALUES (%s, %s, %s, %s,
                        ARRAY(SELECT id::text FROM auth_permission WHERE id::text = ANY(%s)))
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, slug, description, list(permission_ids or [])),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role slug already exists", {"field": "slug"})
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_role WHERE id::text = %s", (role_id,)
            ).fetchone()
        return self._role_from_row(row)

    def get_role_by_slug(self, slug: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_role WHERE slug = %s", (slug,)
            ).fetchone()
        return self._role_from_row(row)

    def list_roles(self, limit: int = 100, offset: int = 0) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_role ORDER BY created_at LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        unknown = set(fields) - _ROLE_COLUMNS
        if unknown:
            raise ValueError(f"unknown role fields: {sorted(unknown)}")
        if not fields:
            return self.get_role(role_id)
        if "permission_ids" in fields:
            fields["permission_ids"] = list(fields["permission_ids"] or [])
        clause, values = self._set_clause(fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE auth_role SET {clause} WHERE id::text = %s RETURNING *",
                    (*values, role_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role slug already exists", {"field": "slug"})
        return self._role_from_row(row)

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                deleted = conn.execute(
                    "DELETE FROM auth_role WHERE id::text = %s", (role_id,)
                ).rowcount
                if deleted:
                    conn.execute(
                        "UPDATE auth_user SET role_ids = array_remove(role_ids, %s) WHERE %s = ANY(role_ids)",
                        (role_id, role_id),
                    )
        return bool(deleted)

    def create_permission(
        self, name: str, slug: str, *, description: Optional[str] = None
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_permission (id, name, slug, description)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, slug, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission slug already exists", {"field": "slug"})
        return self._permission_from_row(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_permission WHERE id::text = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row)

    def get_permission_by_slug(self, slug: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_permission WHERE slug = %s", (slug,)
            ).fetchone()
        return self._permission_from_row(row)

    def list_permissions(self, limit: int = 100, offset: int = 0) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_permission ORDER BY created_at LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]:
        unknown = set(fields) - _PERMISSION_COLUMNS
        if unknown:
            raise ValueError(f"unknown permission fields: {sorted(unknown)}")
        if not fields:
            return self.get_permission(permission_id)
        clause, values = self._set_clause(fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE auth_permission SET {clause} WHERE id::text = %s RETURNING *",
                    (*values, permission_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission slug already exists", {"field": "slug"})
        return self._permission_from_row(row)

    def delete_permission(self, permission_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                deleted = conn.execute(
                    "DELETE FROM auth_permission WHERE id::text = %s", (permission_id,)
                ).rowcount
                if deleted:
                    conn.execute(
                        "UPDATE auth_role SET permission_ids = array_remove(permission_ids, %s) WHERE %s = ANY(permission_ids)",
                        (permission_id, permission_id),
                    )
        return bool(deleted)

    def get_permissions_for_roles(self, role_ids: Sequence[str]) -> List[Permission]:
        if not role_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.* FROM auth_permission p
                JOIN auth_role r ON p.id::text = ANY(r.permission_ids)
                WHERE r.id::text = ANY(%s)
                """,
                (list(role_ids),),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    # -- tokens --------------------------------------------------------------

    def create_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        type: TokenType = TokenType.REFRESH,
        name: Optional[str] = None,
    ) -> Token:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_token (id, token, user_id, type, name, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), token, user_id, type.value, name, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return self._token_from_row(row)

    def get_token(
        self, token: str, type: TokenType = TokenType.REFRESH
    ) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE token = %s AND type = %s",
                (token, type.value),
            ).fetchone()
        return self._token_from_row(row)

    def list_user_tokens(self, user_id: str) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def expire_user_tokens(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            return conn.execute(
                "UPDATE auth_token SET expires_at = %s, last_used_at = COALESCE(last_used_at, %s) WHERE user_id = %s",
                (at, at, user_id),
            ).rowcount

    def replace_refresh_token(
        self, user_id: str, token: str, expires_at: datetime, *, expire_at: datetime
    ) -> Token:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "UPDATE auth_token SET expires_at = %s, last_used_at = COALESCE(last_used_at, %s) WHERE user_id = %s",
                        (expire_at, expire_at, user_id),
                    )
                    row = conn.execute(
                        """
                        INSERT INTO auth_token (id, token, user_id, type, expires_at)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            str(uuid.uuid4()),
                            token,
                            user_id,
                            TokenType.REFRESH.value,
                            expires_at,
                        ),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return self._token_from_row(row)

    def consume_refresh_token(
        self, token_id: str, used_at: datetime, *, expire_at: datetime
    ) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token SET last_used_at = %s, expires_at = %s
                WHERE id = %s AND last_used_at IS NULL
                RETURNING *
                """,
                (used_at, expire_at, token_id),
            ).fetchone()
        return self._token_from_row(row)

    def flag_compromised(self, token_id: str, at: datetime) -> Optional[Token]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "UPDATE auth_token SET compromised_at = %s WHERE id = %s RETURNING *",
                    (at, token_id),
                ).fetchone()
                if row and row.get("user_id"):
                    conn.execute(
                        "UPDATE auth_user SET blocked_at = %s, updated_at = %s WHERE id = %s",
                        (at, at, row["user_id"]),
                    )
        return self._token_from_row(row)

    def delete_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM auth_token WHERE id = %s", (token_id,)
            ).rowcount
        return bool(deleted)

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_oauth_identity (id, provider, provider_user_id, payload,
                    email, access_token, temporal_token)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    provider,
                    provider_user_id,
                    payload,
                    email,
                    access_token,
                    temporal_token,
                ),
            ).fetchone()
        return self._identity_from_row(row)

    def get_oauth_identity_by_temporal_token(
        self, temporal_token: str
    ) -> Optional[OAuthIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_oauth_identity WHERE temporal_token = %s",
                (temporal_token,),
            ).fetchone()
        return self._identity_from_row(row)

    def consume_oauth_identity(
        self, identity_id: str, temporal_token: str, user_id: str
    ) -> Optional[OAuthIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_oauth_identity SET temporal_token = NULL, user_id = %s
                WHERE id = %s AND temporal_token = %s
                RETURNING *
                """,
                (user_id, identity_id, temporal_token),
            ).fetchone()
        return self._identity_from_row(row)

    # -- password resets ------------------------------------------------------

    def upsert_password_reset(
        self, email: str, token: str, expires_at: datetime
    ) -> PasswordReset:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_password_reset (email, token, expires_at)
                VALUES (lower(%s), %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET token = EXCLUDED.token, expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (email, token, expires_at),
            ).fetchone()
        return PasswordReset(
            email=row["email"],
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def get_password_reset_by_token(self, token: str) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_password_reset WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return PasswordReset(
            email=row["email"],
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_password_reset(self, email: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM auth_password_reset WHERE email = lower(%s)", (email,)
            ).rowcount
        return bool(deleted)

    # -- teams ---------------------------------------------------------------

    def create_team(self, name: str, *, owner_id: Optional[str] = None) -> Team:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO auth_team (id, name, owner_id) VALUES (%s, %s, %s) RETURNING *",
                (str(uuid.uuid4()), name, owner_id),
            ).fetchone()
        return Team(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]) if row.get("owner_id") else None,
            created_at=row["created_at"],
        )

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_team WHERE id::text = %s", (team_id,)
            ).fetchone()
        if not row:
            return None
        return Team(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]) if row.get("owner_id") else None,
            created_at=row["created_at"],
        )

    def create_team_invite(
        self,
        team_id: str,
        email: str,
        token: str,
        *,
        role: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> TeamInvite:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_team_invite (id, team_id, email, token, role, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), team_id, email, token, role, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("team does not exist", {"team_id": team_id})
        return self._invite_from_row(row)

    def get_team_invite_by_token(self, token: str) -> Optional[TeamInvite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_team_invite WHERE token = %s", (token,)
            ).fetchone()
        return self._invite_from_row(row) if row else None

    @staticmethod
    def _invite_from_row(row: dict) -> TeamInvite:
        return TeamInvite(
            id=str(row["id"]),
            team_id=str(row["team_id"]),
            email=row["email"],
            token=row["token"],
            role=row.get("role"),
            expires_at=row.get("expires_at"),
            created_at=row["created_at"],
        )

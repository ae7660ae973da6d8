from __future__ import annotations

import asyncio
import hmac
import json
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger, sanitize_error_message
from gatehouse.service.authorization import Resource
from gatehouse.service.email import EmailService
from gatehouse.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    ValidationError,
)
from gatehouse.service.passwords import PasswordService
from gatehouse.service.refresh import RefreshTokenManager
from gatehouse.service.resolver import AUTHENTICATED_ROLE
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import TokenCodec, generate_random_token
from gatehouse.service.two_factor import TwoFactorService
from gatehouse.storage.base import CredentialStore
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import User, utcnow

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN_LENGTH = 8
PASSWORD_RESET_TTL = timedelta(hours=1)

INVALID_CREDENTIALS = "Invalid credentials."
BLOCKED_ACCOUNT = "Your account is temporarily disabled."


@dataclass
class AuthResult:
    """Outcome of a flow that signs a user in.

    ``payload`` is the response body; ``refresh_token`` and ``session_id``
    are for the HTTP layer to place in cookies when cookies are enabled.
    """

    user: User
    payload: dict[str, Any]
    refresh_token: str
    session_id: Optional[str] = None


def _invalid(errors: list[tuple[str, str]]) -> ValidationError:
    return ValidationError(
        "Validation failed.",
        detail={"errors": [{"field": f, "message": m} for f, m in errors]},
    )


def _check_email(email: Optional[str], errors: list[tuple[str, str]]) -> str:
    email = (email or "").strip()
    if not email:
        errors.append(("email", "The email is required."))
    elif not EMAIL_RE.match(email):
        errors.append(("email", "The email must be a valid email address."))
    return email


def _check_password(password: Optional[str], errors: list[tuple[str, str]]) -> str:
    password = password or ""
    if not password:
        errors.append(("password", "The password is required."))
    elif len(password) < PASSWORD_MIN_LENGTH:
        errors.append(
            ("password", f"The password must be at least {PASSWORD_MIN_LENGTH} characters.")
        )
    return password


class AuthFlows:
    """Registration, login, social auth, password reset and email verification."""

    def __init__(
        self,
        store: CredentialStore,
        config: AuthConfig,
        *,
        passwords: PasswordService,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenManager,
        two_factor: TwoFactorService,
        sessions: SessionManager,
        mailer: EmailService,
    ) -> None:
        self.store = store
        self.config = config
        self.passwords = passwords
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.two_factor = two_factor
        self.sessions = sessions
        self.mailer = mailer
        self.user_key = Resource(config.user_resource).snake_name

    # -- helpers -------------------------------------------------------------

    def user_payload(self, user: User, refresh_token: Optional[str] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {self.user_key: user.to_public()}
        if self.config.disable_cookies:
            payload["access_token"] = self.codec.issue_access_token(user.id)
            payload["refresh_token"] = refresh_token
            payload["expires_in"] = self.config.access_token_expires_in
        return payload

    async def _complete(self, user: User) -> AuthResult:
        session_id = None
        if not self.config.disable_cookies:
            session_id = await self.sessions.create_session(user.id)
        token = self.refresh_tokens.issue(user.id)
        return AuthResult(
            user=user,
            payload=self.user_payload(user, token.token),
            refresh_token=token.token,
            session_id=session_id,
        )

    def _default_role_ids(self) -> list[str]:
        if not self.config.roles_and_permissions:
            return []
        role = self.store.get_role_by_slug(AUTHENTICATED_ROLE)
        if not role:
            raise ConfigurationError(
                "The authenticated role must be created to use roles and permissions."
            )
        return [role.id]

    async def _send_mail(self, address: str, send: Callable[[], bool]) -> None:
        """Best effort; a mail failure never undoes the write that preceded it."""
        try:
            sent = await asyncio.to_thread(send)
        except Exception as exc:
            logger.error("email_send_failed", to=address, error=sanitize_error_message(str(exc)))
            return
        if not sent:
            logger.warning("email_not_sent", to=address)

    def _send_verification(self, user: User, token: str) -> Callable[[], bool]:
        return lambda: self.mailer.to(user.email).send_raw(
            f"Please verify your email using this link: {token}", subject="Verify your email"
        )

    # -- flows ---------------------------------------------------------------

    async def register(self, payload: Mapping[str, Any]) -> AuthResult:
        errors: list[tuple[str, str]] = []
        email = _check_email(payload.get("email"), errors)
        password = _check_password(payload.get("password"), errors)
        if errors:
            raise _invalid(errors)
        if self.store.get_user_by_email(email):
            raise ValidationError.for_field("email", "This email has already been taken.")

        role_ids = self._default_role_ids()
        verification_token = generate_random_token() if self.config.verify_emails else None
        try:
            user = self.store.create_user(
                email,
                password=self.passwords.hash(password),
                name=payload.get("name"),
                role_ids=role_ids,
                email_verification_token=verification_token,
            )
        except ConstraintViolation:
            raise ValidationError.for_field("email", "This email has already been taken.")
        logger.info("user_registered", user_id=user.id)

        if verification_token and not self.config.skip_welcome_email:
            await self._send_mail(user.email, self._send_verification(user, verification_token))
        return await self._complete(user)

    async def login(
        self, email: Optional[str], password: Optional[str], token: Optional[str] = None
    ) -> AuthResult:
        errors: list[tuple[str, str]] = []
        if not email:
            errors.append(("email", "The email is required."))
        if not password:
            errors.append(("password", "The password is required."))
        if errors:
            raise _invalid(errors)

        user = self.store.get_user_by_email(email.strip())
        if not user or not self.passwords.verify(password, user.password):
            logger.info("login_failed", email=email)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if user.is_blocked:
            logger.warning("login_blocked_user", user_id=user.id)
            raise ForbiddenError(BLOCKED_ACCOUNT)

        if self.config.two_factor_auth and user.two_factor_enabled is True:
            if not token:
                raise ValidationError("The two factor authentication token is required.")
            if not self.two_factor.verify(user.two_factor_secret, str(token)):
                raise ValidationError("Invalid two factor authentication token.")

        logger.info("login_succeeded", user_id=user.id)
        return await self._complete(user)

    async def logout(self, session_id: Optional[str]) -> dict[str, bool]:
        return await self.sessions.destroy_session(session_id)

    async def social_auth(self, access_token: Optional[str], action: str) -> AuthResult:
        if action not in {"login", "register"}:
            raise ValueError(f"unknown social auth action: {action}")
        identity = (
            self.store.get_oauth_identity_by_temporal_token(access_token)
            if access_token
            else None
        )
        if not identity:
            raise ValidationError.for_field("access_token", "Invalid access token provided.")

        try:
            provider_payload = json.loads(identity.payload or "{}")
        except ValueError:
            provider_payload = {}
        email = identity.email or provider_payload.get("email")
        user = self.store.get_user_by_email(email) if email else None

        if action == "login":
            if not user:
                raise ValidationError.for_field(
                    "email", "Cannot find a user with these credentials."
                )
            if user.is_blocked:
                raise ForbiddenError(BLOCKED_ACCOUNT)
        else:
            if user:
                raise ValidationError.for_field(
                    "email", f"A user already exists with email {email}."
                )
            user = self.store.create_user(
                email,
                name=provider_payload.get("name"),
                role_ids=self._default_role_ids(),
                email_verified_at=utcnow() if self.config.verify_emails else None,
            )
            logger.info("user_registered", user_id=user.id, provider=identity.provider)

        linked = self.store.consume_oauth_identity(identity.id, access_token, user.id)
        if not linked:
            raise ValidationError.for_field("access_token", "Invalid access token provided.")
        return await self._complete(user)

    async def forgot_password(self, email: Optional[str]) -> bool:
        user = self.store.get_user_by_email(email.strip()) if email else None
        if not user:
            raise ValidationError.for_field("email", "Invalid email address.")
        token = generate_random_token()
        self.store.upsert_password_reset(user.email, token, utcnow() + PASSWORD_RESET_TTL)
        logger.info("password_reset_requested", user_id=user.id)
        await self._send_mail(
            user.email,
            lambda: self.mailer.to(user.email).send_raw(
                f"Reset your password using this token: {token}",
                subject="Reset your password",
            ),
        )
        return True

    async def reset_password(self, token: Optional[str], password: Optional[str]) -> bool:
        errors: list[tuple[str, str]] = []
        password = _check_password(password, errors)
        if errors:
            raise _invalid(errors)
        record = self.store.get_password_reset_by_token(token) if token else None
        if not record or record.expires_at <= utcnow():
            raise ValidationError.for_field("token", "Invalid reset token.")

        user = self.store.get_user_by_email(record.email)
        if not user:
            self.store.delete_password_reset(record.email)
            logger.warning("password_reset_orphaned", email=record.email)
            return False
        self.store.update_user(user.id, password=self.passwords.hash(password))
        self.store.delete_password_reset(record.email)
        try:
            await self.sessions.revoke_user_sessions(user.id)
        except Exception as exc:
            logger.warning(
                "revoke_sessions_failed", user_id=user.id, error=sanitize_error_message(str(exc))
            )
        logger.info("password_reset_completed", user_id=user.id)
        return True

    async def confirm_email(self, user: User, token: Optional[str]) -> dict[str, Any]:
        current = self.store.get_user(user.id) or user
        stored = current.email_verification_token
        if not stored or not token or not hmac.compare_digest(stored, str(token)):
            raise ValidationError("Invalid email verification token.")
        updated = self.store.update_user(
            user.id, email_verification_token=None, email_verified_at=utcnow()
        )
        logger.info("email_verified", user_id=user.id)
        return updated.to_public()

    async def resend_verification_email(self, user: User) -> bool:
        current = self.store.get_user(user.id) or user
        if not current.email_verification_token:
            return False
        token = generate_random_token()
        updated = self.store.update_user(user.id, email_verification_token=token)
        await self._send_mail(updated.email, self._send_verification(updated, token))
        return True

    async def refresh(self, token_value: Optional[str]) -> AuthResult:
        owner, token = self.refresh_tokens.rotate(token_value)
        return AuthResult(
            user=owner,
            payload=self.user_payload(owner, token.token),
            refresh_token=token.token,
        )

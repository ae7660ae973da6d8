from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from io import BytesIO
from typing import Any, Optional
from urllib.parse import quote, urlencode

import qrcode

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.service.errors import ValidationError
from gatehouse.storage.base import CredentialStore
from gatehouse.storage.models import User

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded.upper(), True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def verify_totp(
    secret: Optional[str], code: Optional[str], *, now: Optional[float] = None
) -> bool:
    """RFC 6238 check allowing one step of clock skew either way."""
    if not secret or not code:
        return False
    code = str(code).strip()
    current = now if now is not None else time.time()
    for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
        generated = generate_totp(secret, current + offset * TOTP_INTERVAL)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode({"secret": secret, "issuer": issuer, "digits": TOTP_DIGITS})
    return f"otpauth://totp/{label}?{params}"


def qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


def _require_numeric(token: Any) -> str:
    value = "" if token is None else str(token).strip()
    if not value:
        raise ValidationError.for_field("token", "The token is required.")
    if not value.isdigit():
        raise ValidationError.for_field("token", "The token must be a number.")
    return value


class TwoFactorService:
    """Enrollment state machine: disabled -> pending -> enabled.

    A pending secret (``two_factor_enabled`` is None) is never enforced at
    login; only a confirmed secret is.
    """

    def __init__(self, store: CredentialStore, config: AuthConfig) -> None:
        self.store = store
        self.config = config

    def enable(self, user: User) -> dict[str, Any]:
        secret = generate_secret()
        updated = self.store.update_user(
            user.id, two_factor_secret=secret, two_factor_enabled=None
        )
        uri = provisioning_uri(secret, user.email, self.config.two_factor_issuer)
        logger.info("two_factor_enrollment_started", user_id=user.id)
        return {"data_url": qr_data_url(uri), "user": updated.to_public()}

    def confirm(self, user: User, token: Any) -> User:
        code = _require_numeric(token)
        current = self.store.get_user(user.id) or user
        if not current.two_factor_secret:
            raise ValidationError("You must enable two factor authentication first.")
        if not verify_totp(current.two_factor_secret, code):
            raise ValidationError("Invalid two factor token.")
        updated = self.store.update_user(user.id, two_factor_enabled=True)
        logger.info("two_factor_enabled", user_id=user.id)
        return updated

    def disable(self, user: User, token: Any) -> User:
        code = _require_numeric(token)
        current = self.store.get_user(user.id) or user
        if current.two_factor_enabled is not True:
            raise ValidationError("You do not have two factor authentication enabled.")
        if not verify_totp(current.two_factor_secret, code):
            raise ValidationError("Invalid two factor authentication code.")
        updated = self.store.update_user(
            user.id, two_factor_secret=None, two_factor_enabled=False
        )
        logger.info("two_factor_disabled", user_id=user.id)
        return updated

    def verify(self, secret: Optional[str], code: Optional[str]) -> bool:
        return verify_totp(secret, code)

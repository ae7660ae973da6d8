from __future__ import annotations

import base64
import hashlib
import hmac
import itertools
import json
import os
import secrets
import string
import time
from typing import Any, Optional

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_ALPHABET = string.ascii_letters + string.digits
_counter = itertools.count()


class InvalidTokenError(Exception):
    """Signed token is malformed, uses another algorithm, is forged or expired."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _random_string(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _unique_id() -> str:
    """Process-unique, time-ordered id (timestamp, pid, counter) in base36."""
    parts = (time.time_ns() // 1000, os.getpid(), next(_counter))
    return "".join(_base36(p) for p in parts)


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if not value:
            return out


def generate_random_token(length: int = 32) -> str:
    """Opaque lookup token: random prefix, unique id, random suffix.

    Each random half draws from 62 symbols, so ``length=32`` yields well over
    128 bits of entropy before the unique id is added.
    """
    return f"{_random_string(length)}{_unique_id()}{_random_string(length)}"


class TokenCodec:
    """HS256 signed access tokens carrying ``{id, iat, exp}``."""

    algorithm = "HS256"

    def __init__(self, secret_key: str, *, expires_in: int = 3600) -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        self._secret = secret_key.encode()
        self.expires_in = expires_in

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue_access_token(self, principal_id: str, *, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        header = {"alg": self.algorithm, "typ": "JWT"}
        payload = {"id": principal_id, "iat": issued_at, "exp": issued_at + self.expires_in}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_access_token(self, token: str, *, now: Optional[float] = None) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed token")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed header")
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("unsupported algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected, sig_b64):
            raise InvalidTokenError("bad signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed payload")
        if not isinstance(payload, dict) or not payload.get("id"):
            raise InvalidTokenError("missing subject")
        try:
            exp = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("missing expiry")
        current = now if now is not None else time.time()
        if exp <= current:
            raise InvalidTokenError("token expired")
        return {"id": payload["id"]}

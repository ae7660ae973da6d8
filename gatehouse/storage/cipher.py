from __future__ import annotations

import base64
import hashlib
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for two-factor secrets stored at rest.

    Key material comes from ``TWO_FACTOR_SECRET_KEY``, then ``JWT_SECRET``,
    then a key persisted under ``fs_root``.
    """

    def __init__(self, fs_root: Path, key_material: Optional[str] = None) -> None:
        material = (
            key_material
            or os.getenv("TWO_FACTOR_SECRET_KEY")
            or os.getenv("JWT_SECRET")
        )
        if not material:
            material = self._load_or_create_key(fs_root / ".jwt_secret")
        self._fernet = Fernet(_derive_cipher_key(material))

    @staticmethod
    def _load_or_create_key(path: Path) -> str:
        try:
            if path.exists():
                persisted = path.read_text().strip()
                if persisted:
                    return persisted
        except OSError as exc:
            logger.warning("secret_key_read_failed", error=str(exc))
        generated = secrets.token_urlsafe(64)
        try:
            path.write_text(generated)
            os.chmod(path, 0o600)
        except OSError as exc:
            raise RuntimeError("Unable to persist secret encryption key") from exc
        return generated

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("two_factor_secret_decrypt_failed")
            return None

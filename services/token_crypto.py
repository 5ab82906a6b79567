"""Encryption at rest for provider OAuth tokens (Fernet)."""
from __future__ import annotations

import base64
import binascii
from typing import Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = structlog.get_logger()

_SALT = b"booking_jobs_tokens"


def _get_fernet(secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=100000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
    return Fernet(key)


class TokenCipher:
    """
    Encrypts/decrypts SocialAccount tokens.

    Without a configured key tokens are only base64-encoded; this keeps
    development setups working but is logged as a warning.
    """

    def __init__(self, secret: str = ""):
        self._fernet = _get_fernet(secret) if secret else None
        if self._fernet is None:
            logger.warning("token_encryption_disabled")

    def encrypt(self, plain: Optional[str]) -> str:
        if not plain:
            return ""
        if self._fernet is None:
            return base64.urlsafe_b64encode(plain.encode()).decode()
        return self._fernet.encrypt(plain.encode()).decode()

    def decrypt(self, cipher: Optional[str]) -> Optional[str]:
        if not cipher:
            return None
        try:
            if self._fernet is None:
                return base64.urlsafe_b64decode(cipher.encode()).decode()
            return self._fernet.decrypt(cipher.encode()).decode()
        except (InvalidToken, binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("token_decrypt_failed")
            return None


def mask_token(token: Optional[str]) -> str:
    if not token or len(token) < 4:
        return "****"
    return "****" + token[-4:]

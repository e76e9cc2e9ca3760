"""Encryption of broker credentials at rest."""

from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.core.config import settings
from app.core.logging import get_logger


logger = get_logger("core.encryption")


@lru_cache(maxsize=4)
def _derive_key(secret: str, app_name: str) -> bytes:
    """
    Derive a Fernet key from the shared auth secret.

    The salt comes from the app name so it is stable across restarts.
    """
    salt = app_name.encode()[:16].ljust(16, b"\0")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100_000,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


def _get_fernet() -> Fernet:
    return Fernet(_derive_key(settings.auth_secret, settings.app_name))


def encrypt_credentials(credentials: dict[str, Any]) -> str:
    """Serialize and encrypt a credentials mapping for storage."""
    payload = json.dumps(credentials, default=str, sort_keys=True)
    return _get_fernet().encrypt(payload.encode()).decode()


def decrypt_credentials(encrypted: str) -> dict[str, Any] | None:
    """
    Decrypt stored credentials.

    Returns None when the ciphertext cannot be decrypted (rotated secret or
    corrupted value); callers treat that as an authentication failure.
    """
    try:
        decrypted = _get_fernet().decrypt(encrypted.encode())
    except (InvalidToken, ValueError):
        logger.warning("Failed to decrypt broker credentials")
        return None
    try:
        data = json.loads(decrypted)
    except json.JSONDecodeError:
        logger.warning("Decrypted broker credentials are not valid JSON")
        return None
    return data if isinstance(data, dict) else None


def get_key_hint(api_key: str) -> str:
    """Masked hint for an API key, e.g. ``PKAB...x9Qz``."""
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"

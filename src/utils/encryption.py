"""
Secret store for connector credentials and OAuth tokens.
Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.

Entities only ever hold ciphertext. Services call encrypt_* on write and
decrypt_* on read. A decrypt failure is fatal for that connector's operation
and is never retried.
"""
import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""
    pass


def _get_fernet() -> Fernet:
    """Get a Fernet cipher using the configured encryption key."""
    from src.config import get_settings
    key = get_settings().encryption_key
    if not key:
        raise CredentialError("ENCRYPTION_KEY not configured")
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except ValueError as e:
        raise CredentialError(f"Invalid ENCRYPTION_KEY: {e}") from e


def encrypt_value(plaintext: str) -> str:
    """Encrypt a string value. Returns the Fernet token as a string."""
    if plaintext is None:
        raise CredentialError("Cannot encrypt an empty secret")
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    """Decrypt a Fernet token back to the plaintext string."""
    if not encrypted:
        raise CredentialError("No stored secret to decrypt")
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken as e:
        logger.error("Secret decryption failed (wrong key or corrupted value)")
        raise CredentialError("Failed to decrypt credentials") from e


def encrypt_json(data: dict[str, Any]) -> str:
    """Encrypt a JSON-serializable dict (token bundles, connection credentials)."""
    return encrypt_value(json.dumps(data))


def decrypt_json(encrypted: str) -> dict[str, Any]:
    """Decrypt a value written by encrypt_json."""
    raw = decrypt_value(encrypted)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CredentialError("Decrypted credentials are not valid JSON") from e
    if not isinstance(data, dict):
        raise CredentialError("Decrypted credentials must be a JSON object")
    return data

# calsync/infrastructure/vault.py
import hashlib
import os

import structlog
from cryptography.fernet import Fernet, InvalidToken

from calsync.errors import DecryptionError

logger = structlog.get_logger(__name__)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
CALSYNC_VAULT_KEY = os.getenv("CALSYNC_VAULT_KEY")  # urlsafe base64 Fernet key, required in prod


class SecretVault:
    """
    Encrypts tokens and feed URLs at rest.
    Fernet draws a fresh random IV for every call, so encrypting the same
    plaintext twice never yields the same ciphertext.
    """

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ValueError("vault key must be a 32-byte urlsafe base64 Fernet key") from e

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            raise DecryptionError("empty ciphertext")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise DecryptionError("ciphertext is malformed or was encrypted with another key") from e


def encrypt(plaintext: str, key: str) -> str:
    return SecretVault(key).encrypt(plaintext)


def decrypt(ciphertext: str, key: str) -> str:
    return SecretVault(key).decrypt(ciphertext)


def hash_secret(plaintext: str) -> str:
    """Deterministic one-way digest used for lookups without decrypting."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def generate_key() -> str:
    return Fernet.generate_key().decode("ascii")


def vault_from_env() -> SecretVault:
    key = CALSYNC_VAULT_KEY
    if not key:
        if ENVIRONMENT != "development":
            raise RuntimeError("CALSYNC_VAULT_KEY is not configured")
        # dev fallback: secrets stored with this key are unreadable after restart
        key = generate_key()
        logger.warning("vault_key_generated_for_development")
    return SecretVault(key)

"""
Credential encryption - Fernet-encrypted wallet secrets.

Wallet secrets are stored encrypted and only decrypted when a bot
authenticates. Decryption fails closed: an empty, malformed or
wrong-key ciphertext raises ConfigurationError instead of returning an
empty string that could be mistaken for a secret.
"""

from __future__ import annotations

import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, field_validator

from perpdesk.core.logger import get_logger
from perpdesk.exchange.exceptions import ConfigurationError

logger = get_logger("crypto")

ENCRYPTION_KEY_ENV = "PERPDESK_ENCRYPTION_KEY"


class WalletCredentials(BaseModel):
    """A user's wallet: public address plus the encrypted signing secret."""
    address: str
    encrypted_secret: str = ""
    trading_address: Optional[str] = None
    name: Optional[str] = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("wallet address is required")
        return v


class CredentialCipher:
    """Encrypts and decrypts wallet secrets with a Fernet key."""

    def __init__(self, key: Optional[str] = None):
        key = key or os.getenv(ENCRYPTION_KEY_ENV)
        if not key:
            raise ConfigurationError(
                f"{ENCRYPTION_KEY_ENV} is not set; cannot handle wallet secrets"
            )
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid encryption key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: str) -> str:
        if not value:
            raise ConfigurationError("Refusing to encrypt an empty secret")
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not token or not isinstance(token, str):
            raise ConfigurationError("Encrypted secret is empty")
        try:
            value = self._fernet.decrypt(token.encode()).decode()
        except (InvalidToken, ValueError, UnicodeDecodeError) as e:
            logger.warning("Credential decryption failed", error_type=type(e).__name__)
            raise ConfigurationError("Encrypted secret is malformed or the key does not match") from e
        if not value:
            raise ConfigurationError("Decrypted secret is empty")
        return value


def encrypt_secret(value: str, key: Optional[str] = None) -> str:
    return CredentialCipher(key).encrypt(value)


def decrypt_credential(ciphertext: str, key: Optional[str] = None) -> str:
    """Decrypt a wallet secret; raises ConfigurationError on any failure."""
    return CredentialCipher(key).decrypt(ciphertext)

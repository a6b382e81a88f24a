"""
Credential Vault

Authenticated encryption of datasource secrets using AES-256-GCM.

The encryption key is derived with PBKDF2-HMAC-SHA256 from the server key
and a per-user key, so both halves are needed to read stored credentials.
A fresh salt and nonce are generated on every call.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tinypivot_api.config import get_settings
from tinypivot_api.core.errors import ConfigurationError, CredentialDecryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 12
AUTH_TAG_LENGTH = 16
SALT_LENGTH = 16
PBKDF2_ITERATIONS = 100_000
MIN_SERVER_KEY_LENGTH = 32

DECRYPTION_FAILED = "Decryption failed: invalid key or corrupted data"


@dataclass(frozen=True)
class EncryptedPayload:
    """Hex-encoded output of a single encryption call."""
    ciphertext: str
    iv: str
    auth_tag: str
    salt: str

    @classmethod
    def from_columns(
        cls,
        ciphertext: str | None,
        iv: str | None,
        auth_tag: str | None,
        salt: str | None,
    ) -> "EncryptedPayload | None":
        """
        Build a payload from stored columns.

        Returns None when any field is missing so partially written rows
        read as "no credentials" instead of as corrupted data.
        """
        if not (ciphertext and iv and auth_tag and salt):
            return None
        return cls(ciphertext=ciphertext, iv=iv, auth_tag=auth_tag, salt=salt)

    def to_dict(self) -> dict[str, str]:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "auth_tag": self.auth_tag,
            "salt": self.salt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedPayload":
        payload = cls.from_columns(
            data.get("ciphertext"),
            data.get("iv"),
            data.get("auth_tag"),
            data.get("salt"),
        )
        if payload is None:
            raise CredentialDecryptionError(DECRYPTION_FAILED)
        return payload


class CredentialService:
    """
    Encrypts and decrypts credential bundles.

    Example:
        vault = CredentialService(settings.credential_encryption_key)
        payload = vault.encrypt({"password": "hunter2"}, user_key)
        vault.decrypt(payload, user_key)
    """

    def __init__(self, server_key: str | None):
        if not server_key or len(server_key) < MIN_SERVER_KEY_LENGTH:
            raise ConfigurationError(
                f"Credential encryption key must be at least {MIN_SERVER_KEY_LENGTH} characters"
            )
        self._server_key = server_key

    def _derive_key(self, user_key: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(f"{self._server_key}:{user_key}".encode())

    def encrypt(self, secret: dict[str, Any], user_key: str) -> EncryptedPayload:
        """
        Encrypt a secret object for storage.

        Args:
            secret: JSON-serializable secret material
            user_key: Per-user key supplied by the caller

        Returns:
            EncryptedPayload with hex-encoded fields

        Raises:
            ValueError: If user_key is empty
        """
        if not user_key:
            raise ValueError("User key is required for encryption")

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(user_key, salt)

        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, json.dumps(secret).encode(), None)
        ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

        return EncryptedPayload(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            auth_tag=auth_tag.hex(),
            salt=salt.hex(),
        )

    def decrypt(self, payload: EncryptedPayload, user_key: str) -> dict[str, Any]:
        """
        Decrypt a stored payload.

        Wrong keys and tampered data raise the same error.

        Raises:
            CredentialDecryptionError: If the payload cannot be authenticated
        """
        if not user_key:
            raise CredentialDecryptionError(DECRYPTION_FAILED)

        try:
            salt = bytes.fromhex(payload.salt)
            iv = bytes.fromhex(payload.iv)
            sealed = bytes.fromhex(payload.ciphertext) + bytes.fromhex(payload.auth_tag)
        except ValueError as e:
            raise CredentialDecryptionError(DECRYPTION_FAILED) from e

        if len(iv) != IV_LENGTH or len(salt) != SALT_LENGTH:
            raise CredentialDecryptionError(DECRYPTION_FAILED)

        key = self._derive_key(user_key, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, sealed, None)
        except InvalidTag as e:
            raise CredentialDecryptionError(DECRYPTION_FAILED) from e

        return json.loads(plaintext.decode())

    def encrypt_token(self, token: str, user_key: str) -> EncryptedPayload:
        """Encrypt a single token string (e.g. an OAuth refresh token)."""
        return self.encrypt({"token": token}, user_key)

    def decrypt_token(self, payload: EncryptedPayload, user_key: str) -> str:
        """Decrypt a payload produced by encrypt_token."""
        data = self.decrypt(payload, user_key)
        token = data.get("token")
        if not isinstance(token, str):
            raise CredentialDecryptionError(DECRYPTION_FAILED)
        return token


def get_credential_service() -> CredentialService:
    """Build a CredentialService from application settings."""
    return CredentialService(get_settings().credential_encryption_key)

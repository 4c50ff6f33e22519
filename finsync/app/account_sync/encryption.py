"""
Credential Vault

Encrypts provider secrets (access tokens, bank login credentials) before they
are stored, using AES-256-GCM with a PBKDF2-derived key. The master key comes
from the ENCRYPTION_KEY setting and is shared by the whole process.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from finsync.config import get_settings
from .errors import DecryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
IV_LENGTH = 16
SALT_LENGTH = 32
TAG_LENGTH = 16
ITERATIONS = 100_000

DEV_FALLBACK_KEY = "dev-fallback-key-" + "0" * 48

ENVELOPE_FIELDS = ("algorithm", "iv", "ciphertext", "tag", "salt")


@dataclass(frozen=True)
class CredentialEnvelope:
    """Hex-encoded output of a single encryption."""

    algorithm: str
    iv: str
    ciphertext: str
    tag: str
    salt: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_value(cls, value: Union["CredentialEnvelope", Dict[str, Any], str]) -> "CredentialEnvelope":
        """
        Build an envelope from a stored value.

        Raises:
            DecryptionError: If the value is not a well-formed envelope
        """
        if isinstance(value, CredentialEnvelope):
            return value

        data = value
        if isinstance(value, str):
            try:
                data = json.loads(value)
            except ValueError:
                raise DecryptionError("Stored credential is not an encrypted envelope")

        if not isinstance(data, dict) or not all(isinstance(data.get(f), str) for f in ENVELOPE_FIELDS):
            raise DecryptionError("Invalid encrypted data format")

        return cls(**{f: data[f] for f in ENVELOPE_FIELDS})


class CredentialVault:
    """
    Encrypt and decrypt provider credentials for storage.

    Every envelope gets its own salt and IV, so encrypting the same plaintext
    twice yields different ciphertexts.
    """

    def __init__(self, master_key: Optional[str] = None):
        """
        Initialize vault with the process-wide master key.

        Args:
            master_key: Overrides ENCRYPTION_KEY (mainly for tests)

        Raises:
            ValueError: If no key is configured outside development, or the
                key is shorter than 32 characters
        """
        settings = get_settings()
        key = master_key or settings.encryption_key

        if not key:
            if settings.environment != "development":
                raise ValueError("ENCRYPTION_KEY environment variable is required for data protection")
            logger.warning("ENCRYPTION_KEY not set, using temporary development key")
            key = DEV_FALLBACK_KEY

        if len(key) < 32:
            raise ValueError("ENCRYPTION_KEY must be at least 32 characters long")

        self._master_key = key.encode()

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, plaintext: str) -> CredentialEnvelope:
        """
        Encrypt a credential.

        Args:
            plaintext: Secret to protect (token or JSON credentials)

        Returns:
            CredentialEnvelope with hex-encoded iv, ciphertext, tag and salt

        Example:
            >>> vault = CredentialVault()
            >>> envelope = vault.encrypt("access-sandbox-123")
            >>> connection.encrypted_credential = envelope.to_json()
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty data")

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt)

        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return CredentialEnvelope(
            algorithm=ALGORITHM,
            iv=iv.hex(),
            ciphertext=ciphertext.hex(),
            tag=tag.hex(),
            salt=salt.hex(),
        )

    def seal(self, plaintext: str) -> str:
        """Encrypt and serialize for a TEXT column."""
        return self.encrypt(plaintext).to_json()

    def decrypt(self, envelope: Union[CredentialEnvelope, Dict[str, Any], str]) -> str:
        """
        Decrypt an envelope.

        Args:
            envelope: CredentialEnvelope, its dict form, or its JSON string

        Returns:
            Plain text credential

        Raises:
            DecryptionError: On tampering, key mismatch or malformed input
        """
        env = CredentialEnvelope.from_value(envelope)

        if env.algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported algorithm: {env.algorithm}")

        try:
            salt = bytes.fromhex(env.salt)
            iv = bytes.fromhex(env.iv)
            sealed = bytes.fromhex(env.ciphertext) + bytes.fromhex(env.tag)
        except ValueError:
            raise DecryptionError("Invalid encrypted data format")

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, sealed, None)
        except InvalidTag:
            raise DecryptionError("Decryption failed")

        return plaintext.decode("utf-8")

    def is_encrypted(self, value: Any) -> bool:
        """
        Check whether a stored value is a vault envelope.

        Legacy rows written before encryption was introduced hold the raw
        credential and return False.
        """
        if isinstance(value, CredentialEnvelope):
            return True

        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return False

        return isinstance(value, dict) and all(isinstance(value.get(f), str) for f in ENVELOPE_FIELDS)

    def reveal(self, stored_value: Any) -> str:
        """
        Return the plaintext for a stored credential, encrypted or legacy.

        Raises:
            DecryptionError: If an envelope cannot be decrypted
        """
        if self.is_encrypted(stored_value):
            return self.decrypt(stored_value)

        if not stored_value:
            raise DecryptionError("No credential stored")

        logger.warning("Credential is stored unencrypted; run encrypt_legacy_credentials to migrate it")
        return stored_value

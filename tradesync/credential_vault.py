"""
Credential Vault
Encrypts exchange API key material at rest with Fernet and fingerprints credential pairs
"""

import hashlib
import logging
from typing import Union

from cryptography.fernet import Fernet, InvalidToken

from .errors import DecryptionError, EncryptionError
from .metrics import vault_errors

logger = logging.getLogger(__name__)


class CredentialVault:
    """
    Encrypts and decrypts API credentials with a process-wide vault key

    Features:
    - Fernet authenticated encryption (AES-CBC + HMAC-SHA256, random IV per token)
    - Integrity check on decrypt: tampered tokens or key mismatch never yield plaintext
    - Deterministic SHA-256 fingerprint for duplicate account detection
    """

    def __init__(self, secret_key: Union[str, bytes, None]):
        """
        Initialize the vault

        Args:
            secret_key: urlsafe base64 encoded 32-byte Fernet key

        Raises:
            EncryptionError: if the key is absent or malformed
        """
        if not secret_key:
            vault_errors.labels(kind="missing_key").inc()
            logger.critical("🔐 Vault key is not configured - refusing to start the credential vault")
            raise EncryptionError("Vault key is not configured")

        key = secret_key.encode() if isinstance(secret_key, str) else secret_key
        try:
            self._cipher = Fernet(key)
        except (ValueError, TypeError) as e:
            vault_errors.labels(kind="malformed_key").inc()
            logger.critical(f"🔐 Vault key is malformed: {type(e).__name__}")
            raise EncryptionError("Vault key is malformed") from e

        logger.info("🔐 Credential vault initialized")

    @staticmethod
    def generate_key() -> str:
        """Generate a new vault key. Rotating it invalidates every stored ciphertext."""
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        try:
            return self._cipher.encrypt(plaintext.encode('utf-8')).decode('ascii')
        except (AttributeError, TypeError) as e:
            vault_errors.labels(kind="encrypt").inc()
            logger.critical(f"🔐 Encryption failed: {type(e).__name__}")
            raise EncryptionError("Encryption failed") from e

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            vault_errors.labels(kind="decrypt").inc()
            logger.critical("🔐 Decryption failed: empty ciphertext")
            raise DecryptionError("Decryption failed: empty ciphertext")
        try:
            token = ciphertext.encode('ascii') if isinstance(ciphertext, str) else ciphertext
            return self._cipher.decrypt(token).decode('utf-8')
        except (InvalidToken, UnicodeError, TypeError) as e:
            vault_errors.labels(kind="decrypt").inc()
            logger.critical(f"🔐 Decryption failed ({type(e).__name__}) - vault key mismatch or corrupted ciphertext")
            raise DecryptionError("Decryption failed") from e

    @staticmethod
    def fingerprint(api_key: str, api_secret: str) -> str:
        """SHA-256 over key and secret with a separator so distinct splits never collide"""
        digest = hashlib.sha256()
        digest.update(api_key.encode('utf-8'))
        digest.update(b"\x00")
        digest.update(api_secret.encode('utf-8'))
        return digest.hexdigest()

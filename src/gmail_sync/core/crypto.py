"""Symmetric encryption for OAuth tokens stored at rest."""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from gmail_sync.core.exceptions import AuthError, GmailSyncError

logger = logging.getLogger(__name__)


class TokenCipher:
    """Fernet wrapper used by the credential store to encrypt and decrypt tokens."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise GmailSyncError("Encryption key not configured")
        raw_key = key.encode() if isinstance(key, str) else key
        try:
            self._fernet = Fernet(raw_key)
        except (ValueError, TypeError) as e:
            raise GmailSyncError(f"Invalid encryption key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new urlsafe base64 Fernet key."""
        return Fernet.generate_key().decode()

    def encrypt(self, token: str | None) -> bytes | None:
        if token is None:
            return None
        return self._fernet.encrypt(token.encode("utf-8"))

    def decrypt(self, encrypted: bytes | None) -> str | None:
        """Decrypt a stored token.

        Raises:
            AuthError: If the ciphertext was produced with another key or tampered with.
        """
        if encrypted is None:
            return None
        try:
            return self._fernet.decrypt(encrypted).decode("utf-8")
        except InvalidToken as e:
            logger.error("Failed to decrypt stored token")
            raise AuthError("Failed to decrypt stored token") from e

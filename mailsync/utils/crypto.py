"""Credential encryption for stored IMAP passwords."""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from mailsync.config.settings import settings
from mailsync.exceptions import DecryptionError


class CredentialCipher:
    """
    Fernet symmetric encryption for account credentials.

    Every ``encrypt`` call uses a fresh random IV, so encrypting the same
    plaintext twice yields different tokens. Both directions raise
    ``DecryptionError`` when the key or the token is unusable.
    """

    def __init__(self, key: Optional[str] = None) -> None:
        if key is None:
            key = settings.security.encryption_key.get_secret_value()
        if not key:
            raise DecryptionError("EMAIL_ENCRYPTION_KEY is not set")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise DecryptionError("EMAIL_ENCRYPTION_KEY is not a valid Fernet key") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new url-safe base64 Fernet key."""
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` into an opaque token."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token back into plaintext."""
        if not ciphertext:
            raise DecryptionError("Empty credential ciphertext")
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise DecryptionError("Credential ciphertext could not be decrypted") from e

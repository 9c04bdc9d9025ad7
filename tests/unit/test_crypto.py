"""
Unit tests for CredentialCipher
"""
import pytest

from mailsync.exceptions import DecryptionError
from mailsync.utils.crypto import CredentialCipher


@pytest.mark.unit
class TestCredentialCipher:
    """Fernet credential encryption"""

    def test_encrypt_then_decrypt_returns_plaintext(self, cipher):
        token = cipher.encrypt("hunter2")
        assert token != "hunter2"
        assert cipher.decrypt(token) == "hunter2"

    def test_encryption_is_non_deterministic(self, cipher):
        """
        Given: The same plaintext
        When: It is encrypted twice
        Then: The tokens differ (fresh IV per call)
        """
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_tampered_token_raises_decryption_error(self, cipher):
        token = cipher.encrypt("hunter2")
        with pytest.raises(DecryptionError):
            cipher.decrypt(token[:-4] + "AAAA")

    def test_token_from_other_key_is_rejected(self, cipher):
        other = CredentialCipher(CredentialCipher.generate_key())
        with pytest.raises(DecryptionError):
            cipher.decrypt(other.encrypt("hunter2"))

    def test_empty_ciphertext_is_rejected(self, cipher):
        with pytest.raises(DecryptionError):
            cipher.decrypt("")

    @pytest.mark.parametrize("key", ["", "too-short"])
    def test_invalid_key_is_rejected(self, key):
        with pytest.raises(DecryptionError):
            CredentialCipher(key)

    def test_default_key_comes_from_settings(self, cipher):
        assert CredentialCipher().decrypt(cipher.encrypt("x")) == "x"

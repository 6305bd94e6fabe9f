import pytest

from ledgerlink.core.security import CredentialCipher
from ledgerlink.domain.errors import EncryptionError


def test_encrypted_value_differs_from_plaintext_and_decrypts_back():
    cipher = CredentialCipher("a-long-enough-secret-value")
    ciphertext = cipher.encrypt("access-token-value")

    assert ciphertext != "access-token-value"
    assert "access-token-value" not in ciphertext
    assert cipher.decrypt(ciphertext) == "access-token-value"


@pytest.mark.parametrize("secret", [None, "", "   "])
def test_missing_secret_fails_fast(secret):
    with pytest.raises(EncryptionError):
        CredentialCipher(secret)


def test_short_secret_fails_fast():
    with pytest.raises(EncryptionError, match="at least 16"):
        CredentialCipher("too-short")


def test_value_written_under_another_secret_cannot_be_read():
    ciphertext = CredentialCipher("first-secret-0123456789").encrypt("refresh-token-value")

    with pytest.raises(EncryptionError):
        CredentialCipher("second-secret-0123456789").decrypt(ciphertext)


@pytest.mark.parametrize("ciphertext", ["", "not-a-fernet-token"])
def test_corrupt_ciphertext_raises_encryption_error(ciphertext):
    with pytest.raises(EncryptionError):
        CredentialCipher("a-long-enough-secret-value").decrypt(ciphertext)


def test_empty_plaintext_is_rejected():
    with pytest.raises(EncryptionError):
        CredentialCipher("a-long-enough-secret-value").encrypt("")

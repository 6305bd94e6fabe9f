import base64
import hashlib
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import jwt
from cryptography.fernet import Fernet, InvalidToken

from ledgerlink.core.config import settings
from ledgerlink.domain.errors import EncryptionError

MIN_ENCRYPTION_SECRET_LENGTH = 16


class CredentialCipher:
    """Symmetric encryption for platform tokens at rest.

    The Fernet key is derived from the process secret, so the secret must stay
    the same across restarts: rows written under another secret can no longer
    be decrypted and those connections have to be re-authorized.
    """

    def __init__(self, secret: str | None) -> None:
        if secret is None or not secret.strip():
            raise EncryptionError("Token encryption secret is not configured")
        if len(secret.strip()) < MIN_ENCRYPTION_SECRET_LENGTH:
            raise EncryptionError(
                f"Token encryption secret must be at least {MIN_ENCRYPTION_SECRET_LENGTH} characters"
            )
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise EncryptionError("Refusing to encrypt an empty credential")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise EncryptionError("Stored credential is empty")
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise EncryptionError("Stored credential could not be decrypted") from exc


def build_credential_cipher() -> CredentialCipher:
    return CredentialCipher(settings.token_encryption_key)


def create_access_token(user_id: UUID, *, expires_minutes: int | None = None) -> str:
    minutes = expires_minutes if expires_minutes is not None else settings.jwt_access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "sub": str(user_id),
        "exp": expire,
        "type": "access",
        "jti": str(uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])

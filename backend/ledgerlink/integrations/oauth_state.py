import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from uuid import UUID

from ledgerlink.domain.errors import AuthorizationError

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class OAuthState:
    user_id: UUID
    nonce: str
    issued_at: int
    expires_at: int


def _urlsafe_b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _urlsafe_b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign_state(encoded_payload: str, secret: str) -> str:
    signature = hmac.new(secret.encode("utf-8"), encoded_payload.encode("utf-8"), hashlib.sha256).digest()
    return _urlsafe_b64encode(signature)


def create_oauth_state(
    *,
    user_id: UUID,
    secret: str,
    ttl_seconds: int = STATE_TTL_SECONDS,
    now: int | None = None,
) -> str:
    issued_at = int(time.time()) if now is None else now
    payload = {
        "user_id": str(user_id),
        "nonce": secrets.token_urlsafe(24),
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
    }
    raw_payload = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    encoded_payload = _urlsafe_b64encode(raw_payload)
    return f"{encoded_payload}.{_sign_state(encoded_payload, secret)}"


def verify_oauth_state(state: str | None, *, secret: str, now: int | None = None) -> OAuthState:
    """Check integrity and freshness of a state value produced by ``create_oauth_state``.

    Nothing is stored server side: the HMAC binds the user id, and ``exp``
    bounds how long a leaked state stays usable.
    """
    if not state:
        raise AuthorizationError("OAuth state missing", reason="state_missing")
    try:
        encoded_payload, signature = state.split(".", 1)
    except ValueError as exc:
        raise AuthorizationError("Invalid OAuth state format", reason="state_malformed") from exc

    expected_signature = _sign_state(encoded_payload, secret)
    if not hmac.compare_digest(signature, expected_signature):
        raise AuthorizationError("Invalid OAuth state signature", reason="state_signature_invalid")

    try:
        payload = json.loads(_urlsafe_b64decode(encoded_payload))
        user_id = UUID(str(payload["user_id"]))
        expires_at = int(payload["exp"])
        issued_at = int(payload.get("iat", 0))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise AuthorizationError("Invalid OAuth state payload", reason="state_payload_invalid") from exc

    current = int(time.time()) if now is None else now
    if expires_at <= current:
        raise AuthorizationError("OAuth state expired", reason="state_expired")

    return OAuthState(
        user_id=user_id,
        nonce=str(payload.get("nonce") or ""),
        issued_at=issued_at,
        expires_at=expires_at,
    )

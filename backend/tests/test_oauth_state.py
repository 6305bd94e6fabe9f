import base64
import json
from uuid import uuid4

import pytest

from ledgerlink.domain.errors import AuthorizationError
from ledgerlink.integrations.oauth_state import create_oauth_state, verify_oauth_state

SECRET = "state-signing-secret"
NOW = 1_767_600_000


def _reason(state, **kwargs) -> str:
    with pytest.raises(AuthorizationError) as exc_info:
        verify_oauth_state(state, secret=SECRET, **kwargs)
    return exc_info.value.reason


def test_state_binds_user_and_expiry():
    user_id = uuid4()
    state = create_oauth_state(user_id=user_id, secret=SECRET, ttl_seconds=600, now=NOW)

    payload = verify_oauth_state(state, secret=SECRET, now=NOW + 599)

    assert payload.user_id == user_id
    assert payload.issued_at == NOW
    assert payload.expires_at == NOW + 600
    assert payload.nonce


def test_each_state_carries_a_fresh_nonce():
    user_id = uuid4()
    first = create_oauth_state(user_id=user_id, secret=SECRET, now=NOW)
    second = create_oauth_state(user_id=user_id, secret=SECRET, now=NOW)

    assert first != second


def test_expired_state_is_rejected():
    state = create_oauth_state(user_id=uuid4(), secret=SECRET, ttl_seconds=600, now=NOW)

    assert _reason(state, now=NOW + 600) == "state_expired"


def test_state_signed_with_other_secret_is_rejected():
    state = create_oauth_state(user_id=uuid4(), secret="another-secret", now=NOW)

    assert _reason(state, now=NOW) == "state_signature_invalid"


def test_swapped_user_id_breaks_signature():
    state = create_oauth_state(user_id=uuid4(), secret=SECRET, now=NOW)
    encoded_payload, signature = state.split(".", 1)
    padded = encoded_payload + "=" * (-len(encoded_payload) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded))
    payload["user_id"] = str(uuid4())
    forged = base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("utf-8").rstrip("=")

    assert _reason(f"{forged}.{signature}", now=NOW) == "state_signature_invalid"


@pytest.mark.parametrize(
    ("state", "reason"),
    [
        (None, "state_missing"),
        ("", "state_missing"),
        ("no-separator", "state_malformed"),
    ],
)
def test_missing_or_malformed_state(state, reason):
    assert _reason(state, now=NOW) == reason

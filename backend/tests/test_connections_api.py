import dataclasses

import httpx
import pytest
from fastapi.testclient import TestClient

from ledgerlink.core.config import settings
from ledgerlink.core.security import create_access_token
from ledgerlink.domain.errors import EncryptionError
from ledgerlink.infrastructure.db.session import get_db
from ledgerlink.interfaces.api import health
from ledgerlink.interfaces.api.deps import get_connection_manager
from main import app


@pytest.fixture
def client(db_session, session_factory, manager, monkeypatch):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    monkeypatch.setattr(health, "SessionLocal", session_factory)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_connection_manager] = lambda: manager
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def _state_from(client: TestClient, headers: dict) -> str:
    response = client.get("/integrations/platform/connect", params={"redirect": "false"}, headers=headers)
    assert response.status_code == 200
    return httpx.URL(response.json()["authorization_url"]).params["state"]


def test_connect_requires_authentication(client: TestClient):
    response = client.get("/integrations/platform/connect", follow_redirects=False)

    assert response.status_code == 401
    body = response.json()
    assert body["error_code"] == "401"
    assert body["trace_id"] == response.headers["X-Request-ID"]


def test_connect_accepts_session_cookie(client: TestClient, user):
    client.cookies.set(settings.auth_cookie_name, create_access_token(user.id))

    response = client.get("/integrations/platform/connect", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"].startswith("https://login.platform.test/identity/connect/authorize?")


def test_connect_returns_authorization_url(client: TestClient, auth_headers: dict):
    response = client.get("/integrations/platform/connect", params={"redirect": "false"}, headers=auth_headers)

    assert response.status_code == 200
    url = httpx.URL(response.json()["authorization_url"])
    assert url.params["client_id"] == "test-client-id"
    assert url.params["response_type"] == "code"


def test_callback_redirects_to_frontend_on_success(client: TestClient, auth_headers: dict, platform):
    state = _state_from(client, auth_headers)

    response = client.get(
        "/integrations/platform/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == "http://localhost:3000/app/connected?success=true&tenantId=tenant-a"

    status_response = client.get("/integrations/platform/status", headers=auth_headers)
    assert status_response.status_code == 200
    payload = status_response.json()
    assert payload["totalConnections"] == 1
    assert payload["connections"][0]["tenantId"] == "tenant-a"
    assert payload["connections"][0]["connected"] is True


def test_callback_with_tampered_state_redirects_with_error(client: TestClient, auth_headers: dict, platform):
    state = _state_from(client, auth_headers)

    response = client.get(
        "/integrations/platform/callback",
        params={"code": "auth-code", "state": state[:-4] + "abcd"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"].endswith("?success=false&error=state_signature_invalid")
    assert platform.token_requests == []


@pytest.mark.parametrize(
    ("params", "reason"),
    [
        ({"error": "access_denied"}, "access_denied"),
        ({"code": "auth-code"}, "missing_oauth_params"),
    ],
)
def test_callback_failures_redirect_with_reason(client: TestClient, params: dict, reason: str):
    response = client.get("/integrations/platform/callback", params=params, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == f"http://localhost:3000/app/connected?success=false&error={reason}"


def test_callback_without_tenant_redirects_with_tenant_missing(client: TestClient, auth_headers: dict, platform):
    platform.tenants = []
    state = _state_from(client, auth_headers)

    response = client.get(
        "/integrations/platform/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"].endswith("?success=false&error=tenant_missing")


def test_disconnect_flow(client: TestClient, auth_headers: dict, user, connection_factory, platform):
    connection_factory(user, tenant_id="tenant-a")

    response = client.post("/integrations/platform/disconnect", headers=auth_headers, json={"tenant_id": "tenant-a"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "tenantId": "tenant-a",
        "status": "DISCONNECTED",
        "disconnectReason": "user_revoked",
        "message": "Disconnected from accounting platform",
    }
    assert platform.removed == ["conn-a"]

    repeat = client.post("/integrations/platform/disconnect", headers=auth_headers, json={"tenant_id": "tenant-a"})
    assert repeat.status_code == 200
    assert repeat.json()["disconnectReason"] == "user_revoked"


def test_disconnect_unknown_tenant_is_404(client: TestClient, auth_headers: dict):
    response = client.post("/integrations/platform/disconnect", headers=auth_headers, json={"tenant_id": "nope"})

    assert response.status_code == 404
    assert response.json()["error_code"] == "connection_not_found"


def test_disconnect_rejects_malformed_reason(client: TestClient, auth_headers: dict):
    response = client.post(
        "/integrations/platform/disconnect",
        headers=auth_headers,
        json={"tenant_id": "tenant-a", "reason": "Not A Code!"},
    )

    assert response.status_code == 422
    assert response.json()["error_code"] == "validation_error"


def test_config_check_reports_without_secrets(client: TestClient):
    response = client.get("/integrations/platform/config-check")

    assert response.status_code == 200
    body = response.json()
    assert body["configured"] is True
    assert body["clientIdConfigured"] is True
    assert body["clientSecretConfigured"] is True
    assert body["scopes"] == ["offline_access", "accounting.transactions"]
    assert "test-client-secret" not in response.text


def test_health_and_metrics(client: TestClient):
    health_response = client.get("/health")
    assert health_response.status_code == 200
    assert health_response.json()["services"]["database"] == "up"
    assert health_response.headers["X-Content-Type-Options"] == "nosniff"

    metrics_response = client.get("/metrics")
    assert metrics_response.status_code == 200
    assert "token_refresh_total" in metrics_response.text


def test_readiness_reports_platform_configuration(client: TestClient, manager, monkeypatch):
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready", "services": {"database": "up", "platform_oauth": "configured"}}

    monkeypatch.setattr(manager, "config", dataclasses.replace(manager.config, client_secret=None))
    not_ready = client.get("/ready")
    assert not_ready.status_code == 503
    assert not_ready.json()["services"]["platform_oauth"] == "missing"


def test_startup_fails_without_encryption_secret(monkeypatch):
    monkeypatch.setattr(settings, "token_encryption_key", None)

    with pytest.raises(EncryptionError):
        with TestClient(app):
            pass

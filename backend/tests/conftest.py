import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-0123456789abcdef")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "test-token-encryption-secret")
os.environ.setdefault("PLATFORM_CLIENT_ID", "test-client-id")
os.environ.setdefault("PLATFORM_CLIENT_SECRET", "test-client-secret")

import threading
import time
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from ledgerlink.application.services.connection_manager import ConnectionLifecycleManager
from ledgerlink.core.config import PlatformConfig
from ledgerlink.core.security import CredentialCipher
from ledgerlink.domain import models  # noqa: F401
from ledgerlink.domain.models.platform_connection import PlatformConnection
from ledgerlink.domain.models.user import User
from ledgerlink.infrastructure.db.base import Base
from ledgerlink.infrastructure.db.session import build_engine
from ledgerlink.integrations.platform_client import AccountingPlatformClient

ENCRYPTION_SECRET = "test-token-encryption-secret"
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePlatform:
    """In-process stand-in for the platform's token and connections endpoints.

    Refresh tokens are single use: once a refresh rotates one, submitting it
    again gets 400 ``invalid_grant``, as the real token endpoint does.
    """

    def __init__(self) -> None:
        self.tenants: list[dict] = [
            {"id": "conn-a", "tenantId": "tenant-a", "tenantName": "Org A", "tenantType": "ORGANISATION"},
        ]
        self.token_failures: list[tuple[int, dict]] = []
        self.token_delay = 0.0
        self.omit_refresh_token = False
        self.fail_transport = False
        self.connections_status = 200
        self.token_requests: list[dict] = []
        self.removed: list[str] = []
        self.retired_refresh_tokens: set[str] = set()
        self._issued = 0
        self._lock = threading.Lock()
        self.transport = httpx.MockTransport(self.handle)

    @property
    def refresh_calls(self) -> int:
        return sum(1 for item in self.token_requests if item.get("grant_type") == "refresh_token")

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.fail_transport:
            raise httpx.ConnectTimeout("timed out", request=request)
        path = request.url.path
        if path == "/connect/token":
            return self._token(request)
        if path == "/connections" and request.method == "GET":
            if self.connections_status != 200:
                return httpx.Response(self.connections_status, json={"error": "unavailable"})
            return httpx.Response(200, json=self.tenants)
        if path.startswith("/connections/") and request.method == "DELETE":
            self.removed.append(path.rsplit("/", 1)[-1])
            return httpx.Response(204)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode("utf-8")).items()}
        submitted = form.get("refresh_token")
        with self._lock:
            self.token_requests.append(form)
            if submitted is not None and submitted in self.retired_refresh_tokens:
                failure = (400, {"error": "invalid_grant"})
            else:
                failure = self.token_failures.pop(0) if self.token_failures else None
            if failure is None:
                self._issued += 1
                if submitted is not None and not self.omit_refresh_token:
                    self.retired_refresh_tokens.add(submitted)
            issued = self._issued
        if self.token_delay:
            time.sleep(self.token_delay)
        if failure is not None:
            status_code, body = failure
            return httpx.Response(status_code, json=body)
        payload = {
            "access_token": f"access-{issued}",
            "expires_in": 1800,
            "token_type": "Bearer",
            "scope": "offline_access accounting.transactions",
        }
        if not self.omit_refresh_token:
            payload["refresh_token"] = f"refresh-{issued}"
        return httpx.Response(200, json=payload)


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledgerlink.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    row = User(email="owner@ledgerlink.test")
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def platform_config():
    return PlatformConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="http://localhost:8080/integrations/platform/callback",
        scopes=("offline_access", "accounting.transactions"),
        authorize_url="https://login.platform.test/identity/connect/authorize",
        token_url="https://identity.platform.test/connect/token",
        connections_url="https://api.platform.test/connections",
        state_secret="test-state-secret",
        frontend_base_url="http://localhost:3000",
        timeout_seconds=5.0,
    )


@pytest.fixture
def cipher():
    return CredentialCipher(ENCRYPTION_SECRET)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def platform_client(platform_config, platform):
    return AccountingPlatformClient(platform_config, transport=platform.transport)


@pytest.fixture
def manager(platform_config, cipher, platform_client, clock):
    return ConnectionLifecycleManager(platform_config, cipher, platform_client, clock=clock)


@pytest.fixture
def connection_factory(db_session, cipher, clock):
    def _create(
        owner: User,
        *,
        tenant_id: str = "tenant-a",
        access_token: str = "access-0",
        refresh_token: str | None = "refresh-0",
        expires_in: int = 600,
        external_connection_id: str | None = "conn-a",
    ) -> PlatformConnection:
        row = PlatformConnection(
            user_id=owner.id,
            tenant_id=tenant_id,
            tenant_name=f"Org {tenant_id}",
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            expires_at=clock() + timedelta(seconds=expires_in),
            scopes="offline_access accounting.transactions",
            external_connection_id=external_connection_id,
            last_refreshed_at=clock(),
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _create

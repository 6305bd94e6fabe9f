import logging
from dataclasses import dataclass
from time import perf_counter

import httpx

from ledgerlink.core.config import PlatformConfig
from ledgerlink.domain.errors import PlatformConfigurationError, TransientRefreshError
from ledgerlink.infrastructure.observability.metrics import observe_platform_request

logger = logging.getLogger("ledgerlink.platform")

DEFAULT_EXPIRES_IN_SECONDS = 1800
TERMINAL_STATUS_CODES = {400, 401}


class GrantRejectedError(RuntimeError):
    """The token endpoint refused a code or refresh token for good."""

    def __init__(self, reason: str, status_code: int) -> None:
        super().__init__(f"Grant rejected by platform: {reason} (HTTP {status_code})")
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_in: int
    scope: str | None


@dataclass(frozen=True)
class PlatformTenant:
    tenant_id: str
    tenant_name: str | None
    connection_id: str | None
    tenant_type: str | None = None


def classify_token_error(status_code: int, body: str) -> str | None:
    """Return the terminal disconnect reason for a failed token call, or None if it may succeed later."""
    if status_code not in TERMINAL_STATUS_CODES:
        return None
    if "invalid_grant" in body:
        return "invalid_grant"
    if "unauthorized_client" in body:
        return "unauthorized_client"
    return f"token_refresh_failed_{status_code}"


class AccountingPlatformClient:
    """Thin httpx wrapper around the platform's OAuth2 and connections endpoints.

    Every call carries the configured timeout. Nothing here retries: a refresh
    token that has been submitted once may already be rotated.
    """

    def __init__(self, config: PlatformConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.config.timeout_seconds, transport=self._transport)

    def _require_config(self) -> None:
        if not self.config.is_complete:
            raise PlatformConfigurationError("Accounting platform OAuth is not configured")

    def build_authorize_url(self, state: str) -> str:
        self._require_config()
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": self.config.scope_string,
            "state": state,
        }
        return str(httpx.URL(self.config.authorize_url, params=params))

    def exchange_code(self, code: str) -> TokenGrant:
        self._require_config()
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        }
        return self._token_request(data, operation="code_exchange")

    def refresh(self, refresh_token: str) -> TokenGrant:
        self._require_config()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return self._token_request(data, operation="token_refresh")

    def list_tenants(self, access_token: str) -> list[PlatformTenant]:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        started_at = perf_counter()
        try:
            with self._client() as client:
                response = client.get(self.config.connections_url, headers=headers)
        except httpx.HTTPError as exc:
            raise TransientRefreshError(f"Platform connections request failed: {exc.__class__.__name__}") from exc
        finally:
            observe_platform_request(perf_counter() - started_at, operation="list_tenants")

        if response.status_code == 401:
            raise GrantRejectedError("access_token_rejected", response.status_code)
        if response.status_code >= 400:
            raise TransientRefreshError(f"Platform connections request failed: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientRefreshError("Platform connections response was not JSON") from exc

        tenants: list[PlatformTenant] = []
        for item in payload or []:
            tenant_id = str(item.get("tenantId") or "")
            if not tenant_id:
                continue
            tenants.append(
                PlatformTenant(
                    tenant_id=tenant_id,
                    tenant_name=(item.get("tenantName") or None),
                    connection_id=(str(item["id"]) if item.get("id") else None),
                    tenant_type=item.get("tenantType"),
                )
            )
        return tenants

    def remove_connection(self, access_token: str, external_connection_id: str) -> bool:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        url = f"{self.config.connections_url.rstrip('/')}/{external_connection_id}"
        started_at = perf_counter()
        try:
            with self._client() as client:
                response = client.delete(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "platform_connection_remove_failed external_connection_id=%s error=%s",
                external_connection_id,
                exc.__class__.__name__,
            )
            return False
        finally:
            observe_platform_request(perf_counter() - started_at, operation="remove_connection")
        return response.status_code in {200, 204}

    def _token_request(self, data: dict, *, operation: str) -> TokenGrant:
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        started_at = perf_counter()
        try:
            with self._client() as client:
                response = client.post(
                    self.config.token_url,
                    data=data,
                    headers=headers,
                    auth=(self.config.client_id, self.config.client_secret),
                )
        except httpx.HTTPError as exc:
            raise TransientRefreshError(f"Platform {operation} request failed: {exc.__class__.__name__}") from exc
        finally:
            observe_platform_request(perf_counter() - started_at, operation=operation)

        if response.status_code >= 400:
            reason = classify_token_error(response.status_code, response.text)
            if reason is not None:
                raise GrantRejectedError(reason, response.status_code)
            raise TransientRefreshError(f"Platform {operation} failed: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientRefreshError(f"Platform {operation} response was not JSON") from exc

        access_token = str(payload.get("access_token") or "")
        if not access_token:
            raise TransientRefreshError(f"Platform {operation} response missing access token")
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        return TokenGrant(
            access_token=access_token,
            refresh_token=(str(payload["refresh_token"]) if payload.get("refresh_token") else None),
            expires_in=max(1, expires_in),
            scope=payload.get("scope"),
        )

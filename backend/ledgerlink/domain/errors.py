class ConnectionLifecycleError(RuntimeError):
    retryable: bool = False
    error_code: str = "connection_error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.error_code


class EncryptionError(ConnectionLifecycleError):
    error_code = "encryption_error"


class PlatformConfigurationError(ConnectionLifecycleError):
    error_code = "platform_not_configured"


class AuthorizationError(ConnectionLifecycleError):
    """Bad, expired or tampered authorization attempt; the user restarts the flow."""

    error_code = "authorization_failed"


class TenantResolutionError(ConnectionLifecycleError):
    """Consent finished without the user picking an organization."""

    error_code = "tenant_missing"


class ConnectionNotFoundError(ConnectionLifecycleError):
    error_code = "connection_not_found"


class ConnectionDisconnectedError(ConnectionLifecycleError):
    """Terminal: the stored grant is unusable until the user re-authorizes."""

    error_code = "reconnect_required"

    def __init__(self, tenant_id: str, disconnect_reason: str | None) -> None:
        super().__init__(
            f"Connection for tenant {tenant_id} is disconnected ({disconnect_reason}); re-authorization required",
            reason=disconnect_reason,
        )
        self.tenant_id = tenant_id
        self.disconnect_reason = disconnect_reason


class TransientRefreshError(ConnectionLifecycleError):
    retryable = True
    error_code = "platform_unavailable"

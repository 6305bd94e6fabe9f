from ledgerlink.domain.models.connection_audit_log import ConnectionAuditLog
from ledgerlink.domain.models.platform_connection import ConnectionStatus, PlatformConnection
from ledgerlink.domain.models.user import User

__all__ = [
    "User",
    "PlatformConnection",
    "ConnectionStatus",
    "ConnectionAuditLog",
]

from time import perf_counter

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ledgerlink.application.services.connection_manager import ConnectionLifecycleManager
from ledgerlink.infrastructure.db.session import SessionLocal
from ledgerlink.infrastructure.observability.metrics import metrics_response
from ledgerlink.interfaces.api.deps import get_connection_manager

router = APIRouter()


def _database_probe() -> tuple[str, float | None]:
    try:
        started_at = perf_counter()
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return "down", None
    return "up", round((perf_counter() - started_at) * 1000, 2)


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check(response: Response) -> dict:
    db_status, db_latency_ms = _database_probe()
    if db_status != "up":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ok" if db_status == "up" else "degraded",
        "services": {
            "api": "up",
            "database": db_status,
            "db_latency_ms": db_latency_ms,
        },
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(
    response: Response,
    manager: ConnectionLifecycleManager = Depends(get_connection_manager),
) -> dict:
    db_status, _ = _database_probe()
    platform_status = "configured" if manager.config.is_complete else "missing"
    services = {"database": db_status, "platform_oauth": platform_status}
    if db_status != "up" or platform_status != "configured":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "services": services}
    return {"status": "ready", "services": services}


@router.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_response()

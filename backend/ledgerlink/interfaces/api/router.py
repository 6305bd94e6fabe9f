from fastapi import APIRouter

from ledgerlink.interfaces.api.connections import router as connections_router
from ledgerlink.interfaces.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(connections_router)

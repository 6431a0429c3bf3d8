"""
Health Routes
=============

FastAPI routes for health check endpoints.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from pagesnap.api.dependencies import Services, get_services
from pagesnap.config.database import check_database_health
from pagesnap.models.schemas import EngineStatus, HealthStatus, utcnow

router = APIRouter(prefix="/api", tags=["Health"])


@router.get("/health", response_model=HealthStatus)
@router.head("/health")
async def health_check() -> HealthStatus:
    """Basic liveness endpoint."""
    return HealthStatus(status="ok")


@router.get("/health/detailed")
async def detailed_health_check(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Pool and cache backend state."""
    pool_status = services.pool.describe()
    cache_ok = await services.cache_store.ping()
    connections = await check_database_health(services.database)

    healthy = (
        cache_ok
        and all(connections.values())
        and pool_status.engine_status != EngineStatus.UNAVAILABLE
    )
    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utcnow().isoformat(),
        "version": services.settings.app_version,
        "components": {
            "browser_pool": pool_status.model_dump(mode="json"),
            "cache": {"backend": services.cache_store.backend.name, "reachable": cache_ok},
            "connections": connections,
            "remote_store": {"enabled": services.remote_store is not None},
            "housekeeping": {"running": services.housekeeping.is_running},
        },
    }

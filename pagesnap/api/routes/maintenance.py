"""
Maintenance Routes
==================

Manual housekeeping and browser restart triggers.
"""

from fastapi import APIRouter, Depends

from pagesnap.api.dependencies import Services, get_services
from pagesnap.models.schemas import HousekeepingReport, PoolStatus

router = APIRouter(prefix="/api/v1", tags=["Maintenance"])


@router.post("/housekeeping", response_model=HousekeepingReport)
async def run_housekeeping(services: Services = Depends(get_services)) -> HousekeepingReport:
    return await services.housekeeping.run_once()


@router.post("/browser/restart", response_model=PoolStatus)
async def restart_browser(services: Services = Depends(get_services)) -> PoolStatus:
    """Restart the browser. This is the only way out of the unavailable state."""
    await services.pool.restart(reason="manual")
    return services.pool.describe()

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_dashboard
from hft_fleet.api.envelope import guarded
from hft_fleet.common.database import get_db_session
from hft_fleet.services.dashboard import DashboardAggregator

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/state")
async def dashboard_state(
    vps_health: bool = Query(default=True, description="Probe the primary VPS /health endpoint"),
    session: AsyncSession = Depends(get_db_session),
    aggregator: DashboardAggregator = Depends(get_dashboard),
) -> dict:
    """
    Composite dashboard document. Sections that fail to load carry an ``error`` key.
    """

    async def _state() -> dict:
        return {"success": True, **await aggregator.get_state(session, include_vps_health=vps_health)}

    return await guarded(session, _state())

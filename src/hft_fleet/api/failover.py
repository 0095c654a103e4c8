from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_failover_controller
from hft_fleet.api.envelope import bounded_limit, guarded
from hft_fleet.common.database import get_db_session
from hft_fleet.services.failover import FailoverController
from hft_fleet.services.failover.runner import FailoverMonitorRunner

router = APIRouter(prefix="/failover", tags=["failover"])


class SwitchBody(BaseModel):
    to_provider: str
    from_provider: Optional[str] = None


@router.post("/health-check")
async def health_check(
    session: AsyncSession = Depends(get_db_session),
    controller: FailoverController = Depends(get_failover_controller),
) -> dict:
    async def _tick() -> dict:
        return {"success": True, **await controller.health_tick(session)}

    return await guarded(session, _tick())


@router.post("/switch")
async def switch(
    body: SwitchBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
    controller: FailoverController = Depends(get_failover_controller),
) -> dict:
    async def _switch() -> dict:
        result = await controller.switch_primary(session, to_provider=body.to_provider, from_provider=body.from_provider)
        return {"success": True, **result}

    return await guarded(session, _switch())


@router.get("")
async def state(
    session: AsyncSession = Depends(get_db_session),
    controller: FailoverController = Depends(get_failover_controller),
) -> dict:
    async def _state() -> dict:
        return {
            "success": True,
            **await controller.get_state(session),
            "monitor": FailoverMonitorRunner.instance().status(),
        }

    return await guarded(session, _state())


@router.get("/events")
async def events(
    limit: int = Query(50, description="Number of events to return (max 100)"),
    session: AsyncSession = Depends(get_db_session),
    controller: FailoverController = Depends(get_failover_controller),
) -> dict:
    async def _events() -> dict:
        return {"success": True, "events": await controller.events(session, limit=bounded_limit(limit))}

    return await guarded(session, _events())

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_rate_limiter, get_risk, get_sweeper
from hft_fleet.api.envelope import guarded
from hft_fleet.common.database import get_db_session
from hft_fleet.services.orders import RiskManager
from hft_fleet.services.rate_limit import RateLimitCoordinator
from hft_fleet.services.recovery.runner import RecoveryRunner
from hft_fleet.services.recovery.sweeper import RecoverySweeper

router = APIRouter(tags=["risk"])


class RiskLimitsBody(BaseModel):
    max_position_size: Optional[Decimal] = None
    max_daily_loss: Optional[Decimal] = None
    max_drawdown_pct: Optional[Decimal] = None
    max_slippage_pct: Optional[Decimal] = None
    min_balance: Optional[Decimal] = None


@router.get("/risk/metrics")
async def risk_metrics(
    paper: bool = Query(default=False),
    session: AsyncSession = Depends(get_db_session),
    risk: RiskManager = Depends(get_risk),
) -> dict:
    async def _metrics() -> dict:
        return {"success": True, **await risk.get_risk_metrics(session, is_paper=paper)}

    return await guarded(session, _metrics())


@router.put("/risk/limits")
async def update_limits(
    body: RiskLimitsBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
    risk: RiskManager = Depends(get_risk),
) -> dict:
    async def _update() -> dict:
        limits = await risk.update_risk_limits(session, **body.model_dump(exclude_none=True))
        return {"success": True, "limits": limits.as_dict()}

    return await guarded(session, _update())


@router.get("/rate-limits")
async def rate_limits(coordinator: RateLimitCoordinator = Depends(get_rate_limiter)) -> dict:
    return {
        "success": True,
        "exchanges": coordinator.snapshots(),
        "queued": coordinator.queued(),
        "recovery": RecoveryRunner.instance().status(),
    }


@router.post("/rate-limits/recover")
async def recover(
    session: AsyncSession = Depends(get_db_session),
    sweeper: RecoverySweeper = Depends(get_sweeper),
) -> dict:
    return await guarded(session, sweeper.sweep(session))

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.database import get_db_session
from hft_fleet.common.log_buffer import get_log_buffer

router = APIRouter(tags=["system"])


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """
    Lightweight readiness probe for the control plane.
    """
    return HealthResponse(status="ok", timestamp=datetime.now(tz=timezone.utc))


@router.get("/health/db")
async def database_health(session: AsyncSession = Depends(get_db_session)) -> dict:
    await session.execute(text("SELECT 1"))
    return {"database": "ok"}


@router.get("/system/logs")
async def system_logs(tail: int = Query(200, ge=1, le=5000)) -> dict:
    return {"lines": get_log_buffer().tail(tail)}

from __future__ import annotations

from typing import Any, Awaitable, Dict, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_bot_controller
from hft_fleet.api.envelope import guarded
from hft_fleet.common.database import get_db_session
from hft_fleet.services.bot_lifecycle import BotLifecycleController

router = APIRouter(prefix="/bot", tags=["bot"])

BotAction = Literal["install", "start", "stop", "restart"]


async def _ok(call: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
    return {"success": True, **await call}


@router.post("/{deployment_id}/{action}")
async def bot_action(
    deployment_id: str,
    action: BotAction,
    session: AsyncSession = Depends(get_db_session),
    controller: BotLifecycleController = Depends(get_bot_controller),
) -> dict:
    handler = getattr(controller, action)
    return await guarded(session, _ok(handler(session, deployment_id)))


@router.get("/{deployment_id}/status")
async def bot_status(
    deployment_id: str,
    session: AsyncSession = Depends(get_db_session),
    controller: BotLifecycleController = Depends(get_bot_controller),
) -> dict:
    return await guarded(session, _ok(controller.status(session, deployment_id)))


@router.get("/{deployment_id}/logs")
async def bot_logs(
    deployment_id: str,
    tail: int = Query(100, ge=1, le=5000),
    session: AsyncSession = Depends(get_db_session),
    controller: BotLifecycleController = Depends(get_bot_controller),
) -> dict:
    return await guarded(session, _ok(controller.logs(session, deployment_id, tail_lines=tail)))


@router.get("/{deployment_id}/health")
async def bot_health(
    deployment_id: str,
    session: AsyncSession = Depends(get_db_session),
    controller: BotLifecycleController = Depends(get_bot_controller),
) -> dict:
    return await guarded(session, _ok(controller.health(session, deployment_id)))

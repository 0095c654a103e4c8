from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_benchmarker
from hft_fleet.api.envelope import guarded
from hft_fleet.common.database import get_db_session
from hft_fleet.services.benchmark import Benchmarker

router = APIRouter(prefix="/benchmark", tags=["benchmark"])


class RunBody(BaseModel):
    provider: str


@router.post("/run")
async def run(
    body: RunBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
    benchmarker: Benchmarker = Depends(get_benchmarker),
) -> dict:
    return await guarded(session, benchmarker.run(session, body.provider))


@router.post("/mesh")
async def mesh(
    session: AsyncSession = Depends(get_db_session),
    benchmarker: Benchmarker = Depends(get_benchmarker),
) -> dict:
    return await guarded(session, benchmarker.run_mesh(session))


@router.get("/results")
async def results(
    session: AsyncSession = Depends(get_db_session),
    benchmarker: Benchmarker = Depends(get_benchmarker),
) -> dict:
    async def _results() -> dict:
        return {"success": True, "results": await benchmarker.get_results(session)}

    return await guarded(session, _results())


@router.get("/compare")
async def compare(
    session: AsyncSession = Depends(get_db_session),
    benchmarker: Benchmarker = Depends(get_benchmarker),
) -> dict:
    async def _compare() -> dict:
        return {"success": True, "providers": await benchmarker.compare(session)}

    return await guarded(session, _compare())

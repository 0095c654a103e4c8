from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_provisioner
from hft_fleet.api.envelope import guarded
from hft_fleet.common.database import AsyncSessionLocal, get_db_session
from hft_fleet.providers.registry import list_providers, pricing_summary
from hft_fleet.services.cost_optimizer import analyze_costs
from hft_fleet.services.provisioning import FleetProvisioner
from hft_fleet.services.provisioning.credentials import (
    credential_status,
    save_provider_credentials,
    validate_provider,
)

router = APIRouter(prefix="/fleet", tags=["fleet"])


class SaveCredentialsBody(BaseModel):
    provider: str
    fields: Dict[str, str]
    expected_updated_at: Optional[datetime] = None


class DeployBody(BaseModel):
    provider: str
    region: Optional[str] = None
    size: str = "medium"
    nickname: Optional[str] = Field(default=None, max_length=150)
    ssh_key_ref: Optional[uuid.UUID] = None
    client_request_id: Optional[str] = Field(default=None, max_length=64)


@router.post("/credentials")
async def save_credentials(
    body: SaveCredentialsBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    return await guarded(
        session,
        save_provider_credentials(session, body.provider, body.fields, expected_updated_at=body.expected_updated_at),
    )


@router.get("/credentials/{provider}")
async def get_credentials(provider: str, session: AsyncSession = Depends(get_db_session)) -> dict:
    return await guarded(session, credential_status(session, provider))


@router.post("/providers/{provider}/validate")
async def validate(provider: str, session: AsyncSession = Depends(get_db_session)) -> dict:
    return await guarded(session, validate_provider(session, provider))


@router.get("/providers")
async def providers() -> dict:
    return {"success": True, "providers": list_providers()}


@router.get("/providers/pricing")
async def pricing(provider: Optional[str] = Query(default=None)) -> dict:
    rows = pricing_summary(provider)
    paid = [r for r in rows if not r["is_free"] and r["size"] == "medium"]
    cheapest = min(paid, key=lambda r: float(r["monthly"]), default=None)
    return {
        "success": True,
        "pricing": rows,
        "cheapest_medium": cheapest,
        "free_tiers": [r for r in rows if r["is_free"]],
    }


@router.post("/machines")
async def deploy_machine(
    body: DeployBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
    provisioner: FleetProvisioner = Depends(get_provisioner),
) -> dict:
    return await guarded(
        session,
        provisioner.deploy(
            session,
            provider=body.provider,
            region=body.region,
            size=body.size,
            nickname=body.nickname,
            ssh_key_ref=body.ssh_key_ref,
            client_request_id=body.client_request_id,
        ),
    )


@router.get("/machines")
async def machines(
    include_destroyed: bool = Query(default=False),
    session: AsyncSession = Depends(get_db_session),
    provisioner: FleetProvisioner = Depends(get_provisioner),
) -> Any:
    async def _list() -> dict:
        return {"success": True, "machines": await provisioner.list_machines(session, include_destroyed=include_destroyed)}

    return await guarded(session, _list())


@router.post("/machines/{machine_id}/wait")
async def wait_ready(
    machine_id: str,
    timeout_seconds: Optional[float] = Query(default=None, ge=1, le=1800),
    session: AsyncSession = Depends(get_db_session),
    provisioner: FleetProvisioner = Depends(get_provisioner),
) -> dict:
    return await guarded(session, provisioner.wait_until_ready(session, machine_id, timeout_seconds=timeout_seconds))


@router.post("/machines/{machine_id}/reboot")
async def reboot_machine(
    machine_id: str,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db_session),
    provisioner: FleetProvisioner = Depends(get_provisioner),
) -> dict:
    result = await guarded(session, provisioner.reboot(session, machine_id))
    if result.get("success"):
        # the machine stays "rebooting" until this wait sees it running again
        background_tasks.add_task(provisioner.follow_reboot, AsyncSessionLocal, machine_id)
    return result


@router.delete("/machines/{machine_id}")
async def destroy_machine(
    machine_id: str,
    session: AsyncSession = Depends(get_db_session),
    provisioner: FleetProvisioner = Depends(get_provisioner),
) -> dict:
    return await guarded(session, provisioner.destroy(session, machine_id))


@router.post("/cost-analysis")
async def cost_analysis(session: AsyncSession = Depends(get_db_session)) -> dict:
    return await guarded(session, analyze_costs(session))

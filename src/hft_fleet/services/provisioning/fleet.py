from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import FleetError, InvariantViolation, NotFound, Permanent, Transient
from hft_fleet.common.models import Machine
from hft_fleet.providers.base import CreateInstanceRequest, HttpProviderAdapter
from hft_fleet.providers.registry import adapter_class, get_provider_adapter, normalize_provider
from hft_fleet.services.provisioning.credentials import load_provider_credentials
from hft_fleet.store.failover import attach_machine, detach_machine, get_primary
from hft_fleet.store.fleet import (
    get_machine,
    get_ssh_key,
    insert_machine,
    list_machines,
    update_machine_status,
    upsert_deployment,
)
from hft_fleet.store.timeline import append_timeline_event
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT_SECONDS = 600.0
DEFAULT_POLL_INTERVAL_SECONDS = 10.0


def machine_as_dict(machine: Machine) -> Dict[str, Any]:
    return json_safe(
        {
            "id": machine.id,
            "provider": machine.provider,
            "provider_instance_id": machine.provider_instance_id,
            "client_request_id": machine.client_request_id,
            "region": machine.region,
            "size": machine.size,
            "nickname": machine.nickname,
            "ip_address": machine.ip_address,
            "status": machine.status,
            "bot_status": machine.bot_status,
            "monthly_cost": machine.monthly_cost,
            "expected_ready_at": machine.expected_ready_at,
            "created_at": machine.created_at,
            "updated_at": machine.updated_at,
            "destroyed_at": machine.destroyed_at,
        }
    )


@dataclass
class FleetProvisioner:
    """
    Operator verbs over cloud machines: deploy, wait for readiness, reboot, destroy.

    Provider differences stay behind the adapter registry; this class never
    branches on the provider name.
    """

    transport: httpx.AsyncBaseTransport | None = None
    ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    async def _adapter(self, session: AsyncSession, provider: str) -> HttpProviderAdapter:
        creds = await load_provider_credentials(session, provider)
        return get_provider_adapter(provider, creds, transport=self.transport)

    async def _mark_error(self, session: AsyncSession, machine: Machine, exc: FleetError, *, action: str) -> None:
        machine_id = machine.id
        await session.rollback()
        machine = await get_machine(session, machine_id)
        if machine.status != "destroyed":
            await update_machine_status(session, machine, status="error")
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="deployment",
            event_subtype="failed",
            title=f"{action.capitalize()} failed on {machine.provider}",
            description=exc.message,
            metadata={"machine_id": machine.id, "error_kind": exc.error_kind},
        )
        await session.commit()

    async def deploy(
        self,
        session: AsyncSession,
        *,
        provider: str,
        region: Optional[str] = None,
        size: str = "medium",
        nickname: Optional[str] = None,
        ssh_key_ref: Optional[uuid.UUID] = None,
        client_request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        name = normalize_provider(provider)
        catalog = adapter_class(name).catalog
        size = (size or "medium").strip().lower()
        tier = catalog.tier(size)
        region = (region or catalog.default_region).strip()
        if catalog.region(region) is None:
            raise Permanent(f"Unknown region {region} for {name}", details={"regions": [r.id for r in catalog.regions]})
        adapter = await self._adapter(session, name)
        ssh_key = await get_ssh_key(session, ssh_key_ref)
        if ssh_key_ref is not None and ssh_key is None:
            raise Permanent(f"SSH key not found: {ssh_key_ref}")

        request_id = (client_request_id or "").strip() or uuid.uuid4().hex
        machine, created = await insert_machine(
            session,
            provider=name,
            client_request_id=request_id,
            region=region,
            size=size,
            nickname=nickname,
            ssh_key_ref=ssh_key_ref,
            monthly_cost=tier.monthly,
        )
        if not created and machine.provider_instance_id:
            await session.commit()
            return {"success": True, "duplicate": True, "machine": machine_as_dict(machine)}
        await append_timeline_event(
            session,
            provider=name,
            event_type="deployment",
            event_subtype="started",
            title=f"Deploying {size} instance on {name}",
            metadata={"machine_id": machine.id, "region": region, "size": size},
        )
        await session.commit()

        try:
            instance = await adapter.create_instance(
                CreateInstanceRequest(
                    region=region,
                    size=size,
                    client_request_id=request_id,
                    ssh_public_key=ssh_key.public_key if ssh_key else None,
                    label=nickname,
                )
            )
        except FleetError as exc:
            await self._mark_error(session, machine, exc, action="deploy")
            raise

        fields: Dict[str, Any] = {
            "provider_instance_id": instance.provider_instance_id,
            "expected_ready_at": instance.expected_ready_time,
        }
        if instance.ip_address:
            fields["ip_address"] = instance.ip_address
        await update_machine_status(session, machine, **fields)
        deployment, _ = await upsert_deployment(
            session,
            machine_id=machine.id,
            server_id=f"{name}:{instance.provider_instance_id}",
            ssh_key_ref=ssh_key_ref,
        )
        await attach_machine(session, provider=name, machine_id=machine.id, region=region)
        await append_timeline_event(
            session,
            provider=name,
            event_type="deployment",
            event_subtype="created",
            title=f"Instance {instance.provider_instance_id} created",
            metadata={
                "machine_id": machine.id,
                "expected_ready_at": instance.expected_ready_time,
                "already_existed": instance.already_existed,
            },
        )
        await session.commit()
        logger.info(
            "Machine deploy requested",
            extra={"provider": name, "machine_id": str(machine.id), "instance_id": instance.provider_instance_id},
        )
        return {
            "success": True,
            "duplicate": False,
            "machine": machine_as_dict(machine),
            "deployment_id": str(deployment.id),
            "expected_ready_at": instance.expected_ready_time.isoformat(),
        }

    async def wait_until_ready(
        self,
        session: AsyncSession,
        machine_id: str,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Poll the provider until the machine is running with an address, or the deadline passes."""
        machine = await get_machine(session, machine_id)
        if machine.status == "destroyed":
            raise InvariantViolation("Machine is destroyed", details={"machine_id": str(machine.id)})
        if machine.status == "running" and machine.ip_address:
            return {"success": True, "machine": machine_as_dict(machine)}
        if not machine.provider_instance_id:
            raise Permanent("Machine has no provider instance yet", details={"machine_id": str(machine.id)})
        adapter = await self._adapter(session, machine.provider)
        deadline = self.clock() + (timeout_seconds if timeout_seconds is not None else self.ready_timeout_seconds)
        while True:
            status = await adapter.get_instance_status(machine.provider_instance_id)
            if status.state == "running" and status.ip_address:
                await update_machine_status(session, machine, status="running", ip_address=status.ip_address)
                await append_timeline_event(
                    session,
                    provider=machine.provider,
                    event_type="deployment",
                    event_subtype="ready",
                    title=f"Instance ready at {status.ip_address}",
                    metadata={"machine_id": machine.id},
                )
                await session.commit()
                return {"success": True, "machine": machine_as_dict(machine)}
            if status.state == "error":
                exc = Permanent("Provider reports the instance failed", details={"raw": status.raw})
                await self._mark_error(session, machine, exc, action="boot")
                raise exc
            if self.clock() >= deadline:
                raise Transient(
                    "Machine not ready before deadline",
                    details={"machine_id": str(machine.id), "state": status.state},
                )
            await self.sleep(self.poll_interval_seconds)

    async def reboot(self, session: AsyncSession, machine_id: str) -> Dict[str, Any]:
        machine = await get_machine(session, machine_id)
        if machine.status == "destroyed" or not machine.provider_instance_id:
            raise InvariantViolation(f"Machine cannot be rebooted in status {machine.status}")
        adapter = await self._adapter(session, machine.provider)
        await adapter.reboot_instance(machine.provider_instance_id)
        await update_machine_status(session, machine, status="rebooting")
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="reboot",
            title=f"Reboot requested for {machine.provider_instance_id}",
            metadata={"machine_id": machine.id},
        )
        await session.commit()
        return {"success": True, "machine": machine_as_dict(machine)}

    async def follow_reboot(self, session_factory: Callable[[], AsyncSession], machine_id: str) -> None:
        """Readiness wait scheduled after ``reboot``; runs on its own session."""
        async with session_factory() as session:
            try:
                await self.wait_until_ready(session, machine_id)
            except FleetError as exc:
                await session.rollback()
                logger.warning(
                    "Machine did not come back after reboot",
                    extra={"machine_id": machine_id, "error_kind": exc.error_kind, "error": exc.message},
                )

    async def destroy(self, session: AsyncSession, machine_id: str) -> Dict[str, Any]:
        machine = await get_machine(session, machine_id)
        if machine.status == "destroyed":
            return {"success": True, "machine": machine_as_dict(machine)}
        if machine.provider_instance_id:
            adapter = await self._adapter(session, machine.provider)
            try:
                await adapter.destroy_instance(machine.provider_instance_id)
            except Permanent as exc:
                if not isinstance(exc, NotFound) and exc.status_code != 404:
                    raise
                logger.info("Instance already gone at provider", extra={"machine_id": str(machine.id)})
        primary = await get_primary(session)
        was_primary = primary is not None and primary.machine_id == machine.id
        await detach_machine(session, machine.id)
        await update_machine_status(session, machine, status="destroyed")
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="destroy",
            title=f"Machine {machine.provider_instance_id or machine.id} destroyed",
            metadata={"machine_id": machine.id, "was_primary": was_primary},
        )
        await session.commit()
        if was_primary:
            logger.warning("Primary machine destroyed; no primary until one is promoted", extra={"machine_id": str(machine.id)})
        return {"success": True, "was_primary": was_primary, "machine": machine_as_dict(machine)}

    async def list_machines(self, session: AsyncSession, *, include_destroyed: bool = False) -> List[Dict[str, Any]]:
        return [machine_as_dict(m) for m in await list_machines(session, include_destroyed=include_destroyed)]

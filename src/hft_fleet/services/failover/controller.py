from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.env import env_int
from hft_fleet.common.errors import FleetError, InvariantViolation, Permanent
from hft_fleet.common.models import FailoverConfig, Machine
from hft_fleet.remote.control import AgentControlClient, EndpointCheck
from hft_fleet.services.notifications.telegram import TelegramNotifier, format_failover_alert
from hft_fleet.store.common import as_utc, now_utc
from hft_fleet.store.failover import (
    append_failover_event,
    append_health_check_result,
    append_vps_metric,
    get_failover_config,
    get_primary,
    list_failover_configs,
    list_failover_events,
    machine_is_routable,
    record_probe,
    swap_primary,
)
from hft_fleet.store.timeline import append_timeline_event
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)

REASON_AUTO = "auto_health_check_failure"
REASON_MANUAL = "manual"


def config_as_dict(config: FailoverConfig) -> Dict[str, Any]:
    return json_safe(
        {
            "id": config.id,
            "provider": config.provider,
            "machine_id": config.machine_id,
            "priority": config.priority,
            "is_primary": config.is_primary,
            "is_enabled": config.is_enabled,
            "region": config.region,
            "latency_ms": config.latency_ms,
            "consecutive_failures": config.consecutive_failures,
            "last_health_check": config.last_health_check,
            "auto_failover_enabled": config.auto_failover_enabled,
            "demoted_at": config.demoted_at,
            "version": config.version,
        }
    )


@dataclass
class FailoverController:
    """
    Health probing and primary election over the ``failover_config`` rows.

    Exactly zero or one enabled row carries ``is_primary``. Every change of
    primary goes through ``swap_primary`` inside a single transaction together
    with its ``failover_events`` row and timeline entry.
    """

    control: AgentControlClient
    notifier: TelegramNotifier = field(default_factory=TelegramNotifier)
    failure_threshold: int = 3
    cooldown_seconds: int = 60

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "FailoverController":
        return cls(
            control=AgentControlClient.from_env(transport),
            notifier=TelegramNotifier.from_env(transport),
            failure_threshold=env_int("FAILOVER_FAILURE_THRESHOLD", 3, minimum=1),
            cooldown_seconds=env_int("FAILOVER_COOLDOWN_SECONDS", 60, minimum=0),
        )

    def in_cooldown(self, config: FailoverConfig, now: datetime) -> bool:
        demoted_at = as_utc(config.demoted_at)
        if demoted_at is None:
            return False
        return now - demoted_at < timedelta(seconds=self.cooldown_seconds)

    def pick_candidate(
        self,
        configs: Sequence[FailoverConfig],
        *,
        current: Optional[FailoverConfig],
        now: datetime,
        machines: Mapping[Any, Machine],
    ) -> Optional[FailoverConfig]:
        """
        Lowest latency healthy standby, ties broken by priority; unknown latency sorts last.

        Only standbys whose machine is running with an address qualify, so a
        promoted candidate is always routable.
        """
        eligible = [
            config
            for config in configs
            if config.is_enabled
            and machine_is_routable(machines.get(config.machine_id))
            and (current is None or config.id != current.id)
            and (config.consecutive_failures or 0) < self.failure_threshold
            and not self.in_cooldown(config, now)
        ]
        if not eligible:
            return None
        eligible.sort(key=lambda c: (c.latency_ms is None, c.latency_ms or 0, c.priority))
        return eligible[0]

    async def _probe_address(self, ip_address: Optional[str]) -> Optional[EndpointCheck]:
        if not ip_address:
            return None
        return await self.control.health(ip_address)

    async def _record_result(
        self,
        session: AsyncSession,
        config: FailoverConfig,
        machine: Optional[Machine],
        check: Optional[EndpointCheck],
        at: datetime,
    ) -> Dict[str, Any]:
        ok = check is not None and check.ok
        latency_ms = check.latency_ms if check is not None else None
        error = "machine has no address" if check is None else check.error
        await record_probe(session, config, ok=ok, latency_ms=latency_ms, at=at)
        await append_health_check_result(
            session,
            provider=config.provider,
            status="healthy" if ok else "unhealthy",
            message=None if ok else error,
            details={
                "latency_ms": latency_ms,
                "consecutive_failures": config.consecutive_failures,
                "ip_address": machine.ip_address if machine else None,
            },
        )
        if ok:
            await append_vps_metric(
                session,
                provider=config.provider,
                machine_id=config.machine_id,
                latency_ms=latency_ms,
                health=check.data if isinstance(check.data, dict) else None,
            )
        return {
            "provider": config.provider,
            "healthy": ok,
            "latency_ms": latency_ms,
            "consecutive_failures": config.consecutive_failures,
            "is_primary": config.is_primary,
            "error": None if ok else error,
        }

    async def health_tick(self, session: AsyncSession) -> Dict[str, Any]:
        configs = list(await list_failover_configs(session, enabled_only=True))
        machines: List[Optional[Machine]] = []
        for config in configs:
            machines.append(await session.get(Machine, config.machine_id) if config.machine_id else None)
        checks = await asyncio.gather(
            *(self._probe_address(machine.ip_address if machine else None) for machine in machines)
        )
        stamp = now_utc()
        results = [
            await self._record_result(session, config, machine, check, stamp)
            for config, machine, check in zip(configs, machines, checks)
        ]
        await session.commit()
        failover = await self.auto_demote(session)
        return {"success": True, "checked": len(results), "results": results, "failover": failover}

    async def auto_demote(self, session: AsyncSession) -> Optional[Dict[str, Any]]:
        primary = await get_primary(session)
        if primary is None or not primary.auto_failover_enabled:
            return None
        if (primary.consecutive_failures or 0) < self.failure_threshold:
            return None
        now = now_utc()
        configs = await list_failover_configs(session, enabled_only=True)
        machines = {
            config.machine_id: await session.get(Machine, config.machine_id)
            for config in configs
            if config.machine_id is not None
        }
        candidate = self.pick_candidate(configs, current=primary, now=now, machines=machines)
        if candidate is None:
            if primary.consecutive_failures != self.failure_threshold:
                # already recorded when the streak crossed the threshold
                return {"switched": False, "degraded": True, "primary": primary.provider}
            await append_timeline_event(
                session,
                provider=primary.provider,
                event_type="failover",
                event_subtype="degraded",
                title=f"{primary.provider} unhealthy with no failover candidate",
                description="Primary kept; no enabled standby is healthy and out of cooldown",
                metadata={"consecutive_failures": primary.consecutive_failures},
            )
            await session.commit()
            logger.warning(
                "Primary unhealthy and no failover candidate",
                extra={"provider": primary.provider, "consecutive_failures": primary.consecutive_failures},
            )
            return {"switched": False, "degraded": True, "primary": primary.provider}
        return await self._switch(session, old=primary, new=candidate, reason=REASON_AUTO, is_automatic=True)

    async def _switch(
        self,
        session: AsyncSession,
        *,
        old: Optional[FailoverConfig],
        new: FailoverConfig,
        reason: str,
        is_automatic: bool,
    ) -> Dict[str, Any]:
        old_provider = old.provider if old is not None else None
        try:
            await swap_primary(session, old=old, new=new)
            event = await append_failover_event(
                session,
                from_config=old,
                to_config=new,
                reason=reason,
                is_automatic=is_automatic,
            )
            await append_timeline_event(
                session,
                provider=new.provider,
                event_type="failover",
                event_subtype="automatic" if is_automatic else "manual",
                title=f"Primary switched from {old_provider or 'none'} to {new.provider}",
                metadata={"from": old_provider, "to": new.provider, "reason": reason, "latency_ms": new.latency_ms},
            )
            await session.commit()
        except FleetError:
            await session.rollback()
            raise
        logger.info(
            "Primary switched",
            extra={"from_provider": old_provider, "to_provider": new.provider, "reason": reason},
        )
        if is_automatic:
            await self.notifier.send(
                format_failover_alert(
                    from_provider=old_provider,
                    to_provider=new.provider,
                    reason=reason,
                    latency_ms=new.latency_ms,
                )
            )
        return {
            "switched": True,
            "degraded": False,
            "event_id": str(event.id),
            "from": old_provider,
            "to": new.provider,
            "reason": reason,
        }

    async def switch_primary(
        self,
        session: AsyncSession,
        *,
        to_provider: str,
        from_provider: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Operator override: swap unconditionally, ignoring health and cooldown."""
        target = await get_failover_config(session, to_provider)
        if not target.is_enabled:
            raise Permanent(f"Failover target {to_provider} is disabled", details={"provider": to_provider})
        if target.machine_id is None:
            raise Permanent(f"Failover target {to_provider} has no machine", details={"provider": to_provider})
        current = await get_primary(session)
        if from_provider is not None and (current is None or current.provider != from_provider):
            raise InvariantViolation(
                f"{from_provider} is not the current primary",
                details={"current_primary": current.provider if current else None},
            )
        if current is not None and current.id == target.id:
            return {"switched": False, "degraded": False, "from": current.provider, "to": target.provider, "reason": REASON_MANUAL}
        return await self._switch(session, old=current, new=target, reason=REASON_MANUAL, is_automatic=False)

    async def get_state(self, session: AsyncSession) -> Dict[str, Any]:
        configs = await list_failover_configs(session)
        primary = next((c for c in configs if c.is_primary and c.is_enabled), None)
        now = now_utc()
        return {
            "primary": primary.provider if primary else None,
            "configs": [
                {**config_as_dict(config), "in_cooldown": self.in_cooldown(config, now)} for config in configs
            ],
        }

    async def events(self, session: AsyncSession, *, limit: int = 50) -> List[Dict[str, Any]]:
        rows = await list_failover_events(session, limit=limit)
        return [
            json_safe(
                {
                    "id": row.id,
                    "from_provider": row.from_provider,
                    "to_provider": row.to_provider,
                    "from_machine_id": row.from_machine_id,
                    "to_machine_id": row.to_machine_id,
                    "reason": row.reason,
                    "is_automatic": row.is_automatic,
                    "created_at": row.created_at,
                }
            )
            for row in rows
        ]

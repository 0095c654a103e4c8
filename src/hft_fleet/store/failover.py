from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import InvariantViolation, NotFound
from hft_fleet.common.models import FailoverConfig, FailoverEvent, HealthCheckResult, Machine, VpsMetric
from hft_fleet.store.common import now_utc
from hft_fleet.utils.json_safe import json_safe


async def list_failover_configs(session: AsyncSession, *, enabled_only: bool = False) -> Sequence[FailoverConfig]:
    stmt = select(FailoverConfig).order_by(FailoverConfig.priority, FailoverConfig.provider)
    if enabled_only:
        stmt = stmt.where(FailoverConfig.is_enabled.is_(True))
    return (await session.execute(stmt)).scalars().all()


async def get_failover_config(session: AsyncSession, provider: str) -> FailoverConfig:
    config = await session.scalar(select(FailoverConfig).where(FailoverConfig.provider == provider).limit(1))
    if config is None:
        raise NotFound(f"No failover record for provider {provider}")
    return config


async def get_primary(session: AsyncSession) -> FailoverConfig | None:
    return await session.scalar(
        select(FailoverConfig)
        .where(FailoverConfig.is_primary.is_(True), FailoverConfig.is_enabled.is_(True))
        .limit(1)
    )


def machine_is_routable(machine: Machine | None) -> bool:
    return machine is not None and machine.status == "running" and bool(machine.ip_address)


async def primary_machine(session: AsyncSession) -> tuple[FailoverConfig, Machine] | None:
    """The enabled primary and its machine, or ``None`` when no primary is running with an address."""
    config = await get_primary(session)
    if config is None or config.machine_id is None:
        return None
    machine = await session.get(Machine, config.machine_id)
    if not machine_is_routable(machine):
        return None
    return config, machine


async def record_probe(
    session: AsyncSession,
    config: FailoverConfig,
    *,
    ok: bool,
    latency_ms: int | None,
    at: datetime | None = None,
) -> FailoverConfig:
    stamp = at or now_utc()
    values: dict[str, Any] = {"last_health_check": stamp, "updated_at": stamp}
    if ok:
        values["consecutive_failures"] = 0
        values["latency_ms"] = latency_ms
    else:
        values["consecutive_failures"] = FailoverConfig.consecutive_failures + 1
    await session.execute(update(FailoverConfig).where(FailoverConfig.id == config.id).values(**values))
    await session.flush()
    await session.refresh(config)
    return config


async def swap_primary(
    session: AsyncSession,
    *,
    old: FailoverConfig | None,
    new: FailoverConfig,
    at: datetime | None = None,
) -> None:
    """
    Move the primary flag from ``old`` to ``new`` with version checks.

    The old row is cleared before the new row is set so the single-primary
    index never sees two primaries. A version mismatch on either row means a
    concurrent swap won and raises ``InvariantViolation``.
    """
    stamp = at or now_utc()
    if old is not None and old.id != new.id:
        cleared = await session.execute(
            update(FailoverConfig)
            .where(
                FailoverConfig.id == old.id,
                FailoverConfig.version == old.version,
                FailoverConfig.is_primary.is_(True),
            )
            .values(is_primary=False, demoted_at=stamp, version=FailoverConfig.version + 1, updated_at=stamp)
        )
        if cleared.rowcount != 1:
            raise InvariantViolation(
                "Primary changed concurrently",
                details={"provider": old.provider, "expected_version": old.version},
            )
    else:
        # manual promotion with no current primary must still find none set
        existing = await get_primary(session)
        if existing is not None and existing.id != new.id:
            raise InvariantViolation(
                "A different primary exists",
                details={"current_primary": existing.provider},
            )
    promoted = await session.execute(
        update(FailoverConfig)
        .where(FailoverConfig.id == new.id, FailoverConfig.version == new.version)
        .values(is_primary=True, version=FailoverConfig.version + 1, updated_at=stamp)
    )
    if promoted.rowcount != 1:
        raise InvariantViolation(
            "Failover candidate changed concurrently",
            details={"provider": new.provider, "expected_version": new.version},
        )
    await session.flush()
    for row in (old, new):
        if row is not None:
            await session.refresh(row)


async def append_failover_event(
    session: AsyncSession,
    *,
    from_config: FailoverConfig | None,
    to_config: FailoverConfig,
    reason: str,
    is_automatic: bool,
) -> FailoverEvent:
    event = FailoverEvent(
        id=uuid.uuid4(),
        from_provider=from_config.provider if from_config else None,
        to_provider=to_config.provider,
        from_machine_id=from_config.machine_id if from_config else None,
        to_machine_id=to_config.machine_id,
        reason=reason,
        is_automatic=is_automatic,
        created_at=now_utc(),
    )
    session.add(event)
    await session.flush()
    return event


async def list_failover_events(session: AsyncSession, *, limit: int = 50) -> Sequence[FailoverEvent]:
    stmt = select(FailoverEvent).order_by(FailoverEvent.created_at.desc()).limit(limit)
    return (await session.execute(stmt)).scalars().all()


async def append_health_check_result(
    session: AsyncSession,
    *,
    provider: str,
    status: str,
    message: str | None,
    details: dict[str, Any] | None = None,
    check_type: str = "failover_health",
) -> HealthCheckResult:
    row = HealthCheckResult(
        id=uuid.uuid4(),
        check_type=check_type,
        provider=provider,
        status=status,
        message=message,
        details=json_safe(details or {}),
        created_at=now_utc(),
    )
    session.add(row)
    await session.flush()
    return row


def _percent(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except ArithmeticError:
        return None


async def append_vps_metric(
    session: AsyncSession,
    *,
    provider: str,
    machine_id: uuid.UUID | None,
    latency_ms: int | None,
    health: dict[str, Any] | None,
) -> VpsMetric:
    health = health or {}
    uptime = health.get("uptime")
    metric = VpsMetric(
        id=uuid.uuid4(),
        machine_id=machine_id,
        provider=provider,
        cpu_percent=_percent(health.get("cpu")),
        memory_percent=_percent(health.get("ram")),
        disk_percent=_percent(health.get("disk")),
        latency_ms=latency_ms,
        uptime_seconds=int(uptime) if isinstance(uptime, (int, float)) else None,
        recorded_at=now_utc(),
    )
    session.add(metric)
    await session.flush()
    return metric


async def attach_machine(
    session: AsyncSession,
    *,
    provider: str,
    machine_id: uuid.UUID,
    region: str | None = None,
) -> FailoverConfig:
    """Point the provider's failover record at ``machine_id``, creating the record as a standby if needed."""
    stamp = now_utc()
    config = await session.scalar(select(FailoverConfig).where(FailoverConfig.provider == provider).limit(1))
    if config is None:
        existing = await list_failover_configs(session)
        config = FailoverConfig(
            id=uuid.uuid4(),
            provider=provider,
            machine_id=machine_id,
            priority=len(existing) + 1,
            is_primary=False,
            is_enabled=True,
            region=region,
            consecutive_failures=0,
            auto_failover_enabled=True,
            version=1,
            updated_at=stamp,
        )
        session.add(config)
        await session.flush()
        return config
    await session.execute(
        update(FailoverConfig)
        .where(FailoverConfig.id == config.id)
        .values(
            machine_id=machine_id,
            region=region or config.region,
            consecutive_failures=0,
            version=FailoverConfig.version + 1,
            updated_at=stamp,
        )
    )
    await session.flush()
    await session.refresh(config)
    return config


async def detach_machine(session: AsyncSession, machine_id: uuid.UUID) -> list[FailoverConfig]:
    """Disable the failover records that point at a machine being destroyed; a primary loses its flag."""
    stamp = now_utc()
    configs = (
        await session.execute(select(FailoverConfig).where(FailoverConfig.machine_id == machine_id))
    ).scalars().all()
    for config in configs:
        await session.execute(
            update(FailoverConfig)
            .where(FailoverConfig.id == config.id)
            .values(
                machine_id=None,
                is_primary=False,
                is_enabled=False,
                demoted_at=stamp if config.is_primary else config.demoted_at,
                version=FailoverConfig.version + 1,
                updated_at=stamp,
            )
        )
    await session.flush()
    for config in configs:
        await session.refresh(config)
    return list(configs)

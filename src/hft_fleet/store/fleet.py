from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import InvariantViolation, NotFound
from hft_fleet.common.models import Deployment, ExchangeConnection, Machine, SshKey, TradingConfig
from hft_fleet.store.common import dialect_insert, now_utc

logger = logging.getLogger(__name__)

MACHINE_STATUSES = {"creating", "running", "rebooting", "stopped", "error", "destroyed"}
BOT_STATUSES = {"stopped", "starting", "running", "standby", "error", "not_deployed"}
# states in which a machine must carry an address
_ADDRESSED_STATUSES = {"running", "rebooting", "stopped"}
_AUDIT_ONLY_FIELDS = {"updated_at", "last_health_check"}


def _parse_uuid(value: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


async def insert_machine(
    session: AsyncSession,
    *,
    provider: str,
    client_request_id: str,
    region: str,
    size: str,
    nickname: str | None = None,
    ssh_key_ref: uuid.UUID | None = None,
    monthly_cost: Decimal = Decimal("0"),
) -> tuple[Machine, bool]:
    """Insert a ``creating`` machine keyed by (provider, client_request_id); a replay returns the existing row."""
    now = now_utc()
    stmt = (
        dialect_insert(session, Machine)
        .values(
            id=uuid.uuid4(),
            provider=provider,
            client_request_id=client_request_id,
            region=region,
            size=size,
            nickname=nickname,
            ssh_key_ref=ssh_key_ref,
            status="creating",
            bot_status="not_deployed",
            monthly_cost=monthly_cost,
            uptime_seconds=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["provider", "client_request_id"])
        .returning(Machine.id)
    )
    inserted_id = (await session.execute(stmt)).scalar()
    if inserted_id is not None:
        machine = await session.get(Machine, inserted_id)
        return machine, True
    existing = await session.scalar(
        select(Machine)
        .where(Machine.provider == provider, Machine.client_request_id == client_request_id)
        .limit(1)
    )
    if existing is None:
        raise InvariantViolation("Machine insert conflicted but no existing row was found")
    return existing, False


async def get_machine(session: AsyncSession, machine_id: str | uuid.UUID) -> Machine:
    parsed = _parse_uuid(machine_id)
    machine = await session.get(Machine, parsed) if parsed else None
    if machine is None:
        raise NotFound(f"Machine not found: {machine_id}")
    return machine


async def list_machines(session: AsyncSession, *, include_destroyed: bool = False, limit: int = 100) -> Sequence[Machine]:
    stmt = select(Machine).order_by(Machine.created_at.desc()).limit(limit)
    if not include_destroyed:
        stmt = stmt.where(Machine.status != "destroyed")
    return (await session.execute(stmt)).scalars().all()


async def update_machine_status(
    session: AsyncSession,
    machine: Machine,
    *,
    status: str | None = None,
    **fields,
) -> Machine:
    """
    Apply a lifecycle change to a machine.

    A destroyed machine only accepts audit timestamps; any addressed state
    (running, rebooting, stopped) requires an IP to be known.
    """
    if machine.status == "destroyed":
        changed = {k for k in fields if k not in _AUDIT_ONLY_FIELDS}
        if status not in (None, "destroyed") or changed:
            raise InvariantViolation(
                "Destroyed machines are immutable",
                details={"machine_id": str(machine.id), "fields": sorted(changed)},
            )
    if status is not None and status not in MACHINE_STATUSES:
        raise InvariantViolation(f"Unknown machine status: {status}")
    for key, value in fields.items():
        if not hasattr(Machine, key):
            raise AttributeError(f"Machine has no column {key}")
        setattr(machine, key, value)
    if status is not None:
        if status in _ADDRESSED_STATUSES and not machine.ip_address:
            raise InvariantViolation(
                f"Machine cannot be {status} without an IP address",
                details={"machine_id": str(machine.id)},
            )
        machine.status = status
        if status == "destroyed" and machine.destroyed_at is None:
            machine.destroyed_at = now_utc()
    machine.updated_at = now_utc()
    await session.flush()
    return machine


async def upsert_deployment(
    session: AsyncSession,
    *,
    machine_id: uuid.UUID,
    server_id: str,
    ssh_key_ref: uuid.UUID | None = None,
) -> tuple[Deployment, bool]:
    now = now_utc()
    stmt = (
        dialect_insert(session, Deployment)
        .values(
            id=uuid.uuid4(),
            machine_id=machine_id,
            server_id=server_id,
            bot_status="not_deployed",
            ssh_key_ref=ssh_key_ref,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["server_id"])
        .returning(Deployment.id)
    )
    inserted_id = (await session.execute(stmt)).scalar()
    if inserted_id is not None:
        return await session.get(Deployment, inserted_id), True
    existing = await session.scalar(select(Deployment).where(Deployment.server_id == server_id).limit(1))
    if existing is None:
        raise InvariantViolation("Deployment insert conflicted but no existing row was found")
    return existing, False


async def find_deployment(session: AsyncSession, ref: str | uuid.UUID) -> Deployment:
    """Look a deployment up by id, falling back to its ``server_id``."""
    parsed = _parse_uuid(ref)
    deployment = await session.get(Deployment, parsed) if parsed else None
    if deployment is None:
        deployment = await session.scalar(select(Deployment).where(Deployment.server_id == str(ref)).limit(1))
    if deployment is None:
        raise NotFound(f"Deployment not found: {ref}")
    return deployment


async def active_deployment(session: AsyncSession) -> Deployment | None:
    stmt = (
        select(Deployment)
        .where(Deployment.bot_status != "not_deployed")
        .order_by(Deployment.updated_at.desc())
        .limit(1)
    )
    deployment = await session.scalar(stmt)
    if deployment is None:
        deployment = await session.scalar(select(Deployment).order_by(Deployment.updated_at.desc()).limit(1))
    return deployment


async def get_trading_config(session: AsyncSession) -> TradingConfig:
    config = await session.get(TradingConfig, 1)
    if config is not None:
        return config
    stmt = (
        dialect_insert(session, TradingConfig)
        .values(id=1, bot_status="stopped", trading_enabled=False, version=1, updated_at=now_utc())
        .on_conflict_do_nothing(index_elements=["id"])
    )
    await session.execute(stmt)
    return await session.get(TradingConfig, 1)


async def sync_bot_status(
    session: AsyncSession,
    *,
    deployment: Deployment,
    machine: Machine | None,
    bot_status: str,
    trading_enabled: bool,
    at: datetime | None = None,
) -> datetime:
    """
    Write ``bot_status`` to the deployment, its machine and the global config.

    All three rows share one ``updated_at``; the config version is bumped so a
    reader can tell a half-applied change from a complete one.
    """
    if bot_status not in BOT_STATUSES:
        raise InvariantViolation(f"Unknown bot status: {bot_status}")
    stamp = at or now_utc()
    config = await get_trading_config(session)
    await session.execute(
        update(Deployment).where(Deployment.id == deployment.id).values(bot_status=bot_status, updated_at=stamp)
    )
    if machine is not None and machine.status != "destroyed":
        await session.execute(
            update(Machine).where(Machine.id == machine.id).values(bot_status=bot_status, updated_at=stamp)
        )
    await session.execute(
        update(TradingConfig)
        .where(TradingConfig.id == config.id)
        .values(
            bot_status=bot_status,
            trading_enabled=trading_enabled,
            version=TradingConfig.version + 1,
            updated_at=stamp,
        )
    )
    await session.flush()
    for row in (deployment, machine, config):
        if row is not None:
            await session.refresh(row)
    return stamp


async def get_ssh_key(session: AsyncSession, ssh_key_ref: uuid.UUID | None) -> SshKey | None:
    if ssh_key_ref is None:
        return None
    return await session.get(SshKey, ssh_key_ref)


async def list_connected_exchanges(session: AsyncSession) -> Sequence[ExchangeConnection]:
    stmt = (
        select(ExchangeConnection)
        .where(ExchangeConnection.is_connected.is_(True))
        .order_by(ExchangeConnection.exchange_name)
    )
    return (await session.execute(stmt)).scalars().all()


async def get_exchange_connection(session: AsyncSession, exchange_name: str) -> ExchangeConnection | None:
    return await session.scalar(
        select(ExchangeConnection).where(ExchangeConnection.exchange_name == exchange_name.lower()).limit(1)
    )

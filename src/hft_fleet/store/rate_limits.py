from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import RateLimitedResource


async def clear_expired_cooldowns(session: AsyncSession, now: datetime) -> list[str]:
    names = (
        await session.execute(
            select(RateLimitedResource.name).where(
                RateLimitedResource.cooldown_until.is_not(None),
                RateLimitedResource.cooldown_until < now,
            )
        )
    ).scalars().all()
    if names:
        await session.execute(
            update(RateLimitedResource)
            .where(RateLimitedResource.name.in_(names))
            .values(cooldown_until=None, error_count=0, updated_at=now)
        )
    return list(names)


async def reset_daily_usage(session: AsyncSession, now: datetime, midnight: datetime) -> list[tuple[str, int]]:
    """Zero daily counters not reset since ``midnight``; rows already at zero are left alone."""
    rows = (
        await session.execute(
            select(RateLimitedResource.name, RateLimitedResource.daily_usage).where(
                RateLimitedResource.daily_usage > 0,
                or_(
                    RateLimitedResource.last_daily_reset_at.is_(None),
                    RateLimitedResource.last_daily_reset_at < midnight,
                ),
            )
        )
    ).all()
    names = [name for name, _ in rows]
    if names:
        await session.execute(
            update(RateLimitedResource)
            .where(RateLimitedResource.name.in_(names))
            .values(daily_usage=0, current_usage=0, last_daily_reset_at=now, updated_at=now)
        )
    return [(name, int(usage or 0)) for name, usage in rows]


async def reset_minute_usage(session: AsyncSession, now: datetime, cutoff: datetime) -> list[str]:
    names = (
        await session.execute(
            select(RateLimitedResource.name).where(
                RateLimitedResource.current_usage > 0,
                or_(
                    RateLimitedResource.last_reset_at.is_(None),
                    RateLimitedResource.last_reset_at < cutoff,
                ),
            )
        )
    ).scalars().all()
    if names:
        await session.execute(
            update(RateLimitedResource)
            .where(RateLimitedResource.name.in_(names))
            .values(current_usage=0, last_reset_at=now, updated_at=now)
        )
    return list(names)


async def list_enabled_resources(session: AsyncSession) -> Sequence[RateLimitedResource]:
    stmt = (
        select(RateLimitedResource)
        .where(RateLimitedResource.is_enabled.is_(True))
        .order_by(RateLimitedResource.name)
    )
    return (await session.execute(stmt)).scalars().all()

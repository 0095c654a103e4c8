from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import BalanceHistory, MarketSignal


async def recent_signals(
    session: AsyncSession,
    *,
    since: datetime,
    min_confidence: int = 70,
    limit: int = 20,
) -> Sequence[MarketSignal]:
    stmt = (
        select(MarketSignal)
        .where(MarketSignal.created_at >= since, MarketSignal.confidence >= min_confidence)
        .order_by(MarketSignal.created_at.desc())
        .limit(limit)
    )
    return (await session.execute(stmt)).scalars().all()


async def latest_balance(session: AsyncSession) -> BalanceHistory | None:
    return await session.scalar(select(BalanceHistory).order_by(BalanceHistory.snapshot_time.desc()).limit(1))

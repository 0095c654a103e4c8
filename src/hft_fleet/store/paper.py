from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import PaperBalanceHistory, PaperOrder, PaperPosition, TradingJournal
from hft_fleet.store.common import now_utc
from hft_fleet.utils.json_safe import json_safe


async def latest_paper_snapshot(session: AsyncSession) -> PaperBalanceHistory | None:
    return await session.scalar(
        select(PaperBalanceHistory).order_by(PaperBalanceHistory.snapshot_time.desc()).limit(1)
    )


async def append_paper_snapshot(
    session: AsyncSession,
    *,
    cash_balance: Decimal,
    total_equity: Decimal,
    breakdown: dict[str, Any] | None = None,
) -> PaperBalanceHistory:
    snapshot = PaperBalanceHistory(
        id=uuid.uuid4(),
        cash_balance=cash_balance,
        total_equity=total_equity,
        breakdown=json_safe(breakdown or {}),
        snapshot_time=now_utc(),
    )
    session.add(snapshot)
    await session.flush()
    return snapshot


async def wipe_paper_account(session: AsyncSession) -> dict[str, int]:
    counts = {}
    for label, stmt in (
        ("orders", delete(PaperOrder)),
        ("positions", delete(PaperPosition)),
        ("balance_history", delete(PaperBalanceHistory)),
        ("journal", delete(TradingJournal).where(TradingJournal.is_paper.is_(True))),
    ):
        result = await session.execute(stmt)
        counts[label] = result.rowcount or 0
    await session.flush()
    return counts


async def recent_paper_snapshots(session: AsyncSession, *, limit: int = 100) -> Sequence[PaperBalanceHistory]:
    stmt = select(PaperBalanceHistory).order_by(PaperBalanceHistory.snapshot_time.desc()).limit(limit)
    return (await session.execute(stmt)).scalars().all()

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import VpsBenchmark
from hft_fleet.store.common import now_utc
from hft_fleet.utils.json_safe import json_safe


async def insert_benchmark(
    session: AsyncSession,
    *,
    provider: str,
    machine_id: uuid.UUID | None,
    score: Decimal,
    hft_score: int,
    exchange_latencies: dict[str, Any],
    raw_results: dict[str, Any],
    benchmark_type: str = "exchange_latency",
) -> VpsBenchmark:
    row = VpsBenchmark(
        id=uuid.uuid4(),
        provider=provider,
        machine_id=machine_id,
        benchmark_type=benchmark_type,
        score=score,
        hft_score=hft_score,
        exchange_latencies=json_safe(exchange_latencies),
        raw_results=json_safe(raw_results),
        run_at=now_utc(),
    )
    session.add(row)
    await session.flush()
    return row


async def latest_benchmarks(session: AsyncSession) -> Sequence[VpsBenchmark]:
    """Most recent benchmark per provider."""
    latest = (
        select(VpsBenchmark.provider, func.max(VpsBenchmark.run_at).label("run_at"))
        .group_by(VpsBenchmark.provider)
        .subquery()
    )
    stmt = (
        select(VpsBenchmark)
        .join(latest, (VpsBenchmark.provider == latest.c.provider) & (VpsBenchmark.run_at == latest.c.run_at))
        .order_by(VpsBenchmark.hft_score.desc())
    )
    return (await session.execute(stmt)).scalars().all()


async def benchmark_stats(session: AsyncSession) -> dict[str, dict[str, Any]]:
    rows = (
        await session.execute(
            select(
                VpsBenchmark.provider,
                func.avg(VpsBenchmark.hft_score),
                func.count(VpsBenchmark.id),
            ).group_by(VpsBenchmark.provider)
        )
    ).all()
    return {
        provider: {"average_score": round(float(avg or 0), 1), "run_count": int(count or 0)}
        for provider, avg, count in rows
    }

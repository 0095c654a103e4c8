from decimal import Decimal

import pytest
from sqlalchemy import select

from hft_fleet.common.models import TimelineEvent
from hft_fleet.services.cost_optimizer import analyze_costs, cheapest_alternative

from factories import seed_failover, seed_machine


@pytest.mark.asyncio
async def test_cheapest_alternative_keeps_latency(session):
    aws = await seed_machine(session, provider="aws", region="ap-northeast-1", monthly_cost=Decimal("33.41"))
    free = await seed_machine(session, provider="oracle", region="ap-tokyo-1", monthly_cost=Decimal("0"))

    suggestion = cheapest_alternative(aws)

    assert (suggestion.suggested_provider, suggestion.suggested_region) == ("oracle", "ap-tokyo-1")
    assert suggestion.latency_estimate_ms == 5
    assert suggestion.monthly_savings == Decimal("33.41")
    assert cheapest_alternative(free) is None


@pytest.mark.asyncio
async def test_analyze_only_counts_failover_machines(session):
    vultr = await seed_machine(session, provider="vultr", region="nrt", monthly_cost=Decimal("20"))
    await seed_machine(session, provider="aws", region="ap-northeast-1", monthly_cost=Decimal("33.41"))
    await seed_failover(session, vultr)
    await session.commit()

    report = await analyze_costs(session)

    assert report["machines_analyzed"] == 1
    assert Decimal(report["current_monthly_total"]) == Decimal("20")
    assert len(report["suggestions"]) == 1
    assert report["suggestions"][0]["suggested_provider"] == "oracle"
    assert Decimal(report["potential_monthly_savings"]) == Decimal("20")
    event = (await session.execute(select(TimelineEvent))).scalars().one()
    assert event.event_type == "cost_optimization"
    assert event.title == "Move medium from vultr/nrt to oracle/ap-tokyo-1"

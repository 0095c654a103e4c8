from datetime import datetime, timedelta

import httpx
import pytest

from hft_fleet.common.models import MarketSignal
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.services.dashboard import DashboardAggregator
from hft_fleet.store.common import now_utc

from factories import agent_transport, seed_deployment, seed_exchange, seed_machine


def _healthy(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "cpu": 10})


async def _seed(session):
    machine = await seed_machine(session, ip_address="10.0.0.9")
    await seed_deployment(session, machine, bot_status="running")
    await seed_exchange(session, "okx")
    session.add_all(
        [
            MarketSignal(symbol="BTCUSDT", exchange_name="binance", sentiment="bullish", confidence=85, created_at=now_utc()),
            MarketSignal(symbol="ETHUSDT", exchange_name="binance", sentiment="bearish", confidence=40, created_at=now_utc()),
            MarketSignal(
                symbol="SOLUSDT",
                exchange_name="binance",
                sentiment="bullish",
                confidence=90,
                created_at=now_utc() - timedelta(minutes=30),
            ),
        ]
    )
    await session.commit()


@pytest.mark.asyncio
async def test_state_document_sections(session):
    await _seed(session)
    aggregator = DashboardAggregator(AgentControlClient(transport=agent_transport(_healthy)))

    state = await aggregator.get_state(session)

    assert state["deployment"]["bot_status"] == "running"
    assert state["deployment"]["ip_address"] == "10.0.0.9"
    assert [row["exchange_name"] for row in state["exchanges"]] == ["okx"]
    assert [row["symbol"] for row in state["signals"]] == ["BTCUSDT"]
    assert state["balance"] is None
    assert state["recent_trades"] == []
    assert state["bot"]["mode"] == "live"
    assert state["vps_health"]["reachable"] is True
    assert state["vps_health"]["health"]["cpu"] == 10


@pytest.mark.asyncio
async def test_failing_section_does_not_fail_the_document(session, monkeypatch):
    await _seed(session)
    aggregator = DashboardAggregator(AgentControlClient(transport=agent_transport(_healthy)))

    async def broken(_session):
        raise RuntimeError("signals table unavailable")

    monkeypatch.setattr(aggregator, "_signals", broken)

    state = await aggregator.get_state(session, include_vps_health=False)

    assert state["signals"] == {"error": "signals table unavailable"}
    assert state["deployment"]["bot_status"] == "running"
    assert [row["exchange_name"] for row in state["exchanges"]] == ["okx"]
    assert "vps_health" not in state


@pytest.mark.asyncio
async def test_timestamps_never_rewind(session):
    aggregator = DashboardAggregator(AgentControlClient(transport=agent_transport(_healthy)))

    stamps = [datetime.fromisoformat((await aggregator.get_state(session))["timestamp"]) for _ in range(3)]

    assert stamps[0] < stamps[1] < stamps[2]

import random

import httpx
import pytest

from hft_fleet.api import deps
from hft_fleet.common.database import get_db_session
from hft_fleet.main import create_application
from hft_fleet.services.orders.paper import PaperOrderRouter
from hft_fleet.services.orders.risk import RiskManager
from hft_fleet.services.rate_limit import RateLimitCoordinator

from factories import FixedPriceSource, no_sleep


@pytest.fixture
async def client(session_factory):
    application = create_application()
    risk = RiskManager(cache_seconds=0)
    paper = PaperOrderRouter(risk=risk, price_source=FixedPriceSource("100"), rng=random.Random(7), sleep=no_sleep)
    coordinator = RateLimitCoordinator(auto_drain=False)

    async def _session():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[deps.get_paper] = lambda: paper
    application.dependency_overrides[deps.get_risk] = lambda: risk
    application.dependency_overrides[deps.get_rate_limiter] = lambda: coordinator
    transport = httpx.ASGITransport(app=application)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def _order(**overrides):
    body = {"exchange": "binance", "symbol": "BTCUSDT", "side": "buy", "amount": "1"}
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_paper_order_round_trip(client):
    placed = await client.post("/api/paper/orders", json=_order())
    assert placed.status_code == 200
    assert placed.json()["success"] is True
    assert placed.json()["order"]["status"] == "filled"

    positions = (await client.get("/api/paper/positions")).json()
    assert len(positions["positions"]) == 1

    balance = (await client.get("/api/paper/balance")).json()
    assert balance["success"] is True
    assert balance["open_positions"] == 1


@pytest.mark.asyncio
async def test_fleet_errors_come_back_as_envelopes(client):
    rejected = await client.post("/api/paper/orders", json=_order(amount="99.95"))
    assert rejected.status_code == 200
    body = rejected.json()
    assert body["success"] is False
    assert body["error_kind"] == "RiskReject"
    assert body["details"]["code"] == "INSUFFICIENT_BALANCE"

    invalid = (await client.post("/api/paper/orders", json=_order(side="hold"))).json()
    assert invalid["error_kind"] == "Permanent"

    limits = (await client.put("/api/risk/limits", json={"max_daily_loss": "-1"})).json()
    assert limits == {"success": False, "error_kind": "Permanent", "message": "max_daily_loss must be non-negative", "details": {"max_daily_loss": "-1"}}


@pytest.mark.asyncio
async def test_risk_limits_update_and_rate_limit_snapshot(client):
    updated = (await client.put("/api/risk/limits", json={"max_position_size": "50"})).json()
    assert updated["success"] is True
    assert updated["limits"]["max_position_size"] == 50.0

    too_big = (await client.post("/api/paper/orders", json=_order())).json()
    assert too_big["details"]["code"] == "MAX_POSITION_SIZE"

    snapshot = (await client.get("/api/rate-limits")).json()
    assert [row["exchange"] for row in snapshot["exchanges"]] == ["binance", "okx"]
    assert snapshot["queued"] == 0

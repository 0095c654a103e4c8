from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from hft_fleet.common.errors import InvariantViolation, NoCredentials, NoPrimary, RiskReject, Transient
from hft_fleet.common.models import Order, Position, TransactionLog
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.services.orders.base import OrderRequest
from hft_fleet.services.orders.risk import RiskManager
from hft_fleet.services.orders.router import OrderRouter
from hft_fleet.services.rate_limit import RateLimitCoordinator
from hft_fleet.store.fleet import get_trading_config
from hft_fleet.store.orders import mark_order_cancelled, mark_order_filled
from hft_fleet.store.positions import net_open_size

from factories import FixedPriceSource, UnavailablePriceSource, agent_transport, seed_exchange, seed_failover, seed_machine


def _filled(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "order_id": "ex-1", "executed_price": "100005"})


def _router(handler=_filled, calls=None, price="100000") -> OrderRouter:
    return OrderRouter(
        control=AgentControlClient(transport=agent_transport(handler, calls)),
        risk=RiskManager(cache_seconds=0),
        rate_limiter=RateLimitCoordinator(auto_drain=False),
        price_source=FixedPriceSource(price),
    )


def _request(**overrides) -> OrderRequest:
    fields = {"exchange": "binance", "symbol": "BTCUSDT", "side": "buy", "amount": "0.01"}
    fields.update(overrides)
    return OrderRequest.build(**fields)


async def _primary(session, ip_address="10.0.0.1"):
    machine = await seed_machine(session, provider="vultr", ip_address=ip_address)
    await seed_failover(session, machine, is_primary=True)
    await seed_exchange(session, "binance")
    await session.commit()
    return machine


async def _count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


@pytest.mark.asyncio
async def test_market_order_fills_through_primary(session):
    calls = []
    machine = await _primary(session)

    result = await _router(calls=calls).place_order(session, _request())

    assert result["success"] is True
    assert result["duplicate"] is False
    orders = (await session.execute(select(Order))).scalars().all()
    assert len(orders) == 1
    order = orders[0]
    assert order.status == "filled"
    assert Decimal("99990") <= order.average_fill_price <= Decimal("100010")
    assert order.filled_amount == Decimal("0.01")
    assert order.machine_id == machine.id
    assert order.exchange_order_id == "ex-1"

    positions = (await session.execute(select(Position))).scalars().all()
    assert [(p.exchange, p.symbol, p.side, p.size, p.status) for p in positions] == [
        ("binance", "BTCUSDT", "long", Decimal("0.01"), "open")
    ]
    logs = (await session.execute(select(TransactionLog))).scalars().all()
    assert [(log.action_type, log.status) for log in logs] == [("order_placed", "success")]

    method, url, body = calls[0]
    assert (method, url) == ("POST", "http://10.0.0.1:8080/place-order")
    assert body["key"] == "binance-key"
    assert body["secret"] == "binance-secret"
    assert body["qty"] == "0.01"
    assert "price" not in body


@pytest.mark.asyncio
async def test_repeated_idempotency_key_returns_same_order(session):
    calls = []
    await _primary(session)
    router = _router(calls=calls)

    first = await router.place_order(session, _request(idempotency_key="client-key-1"))
    second = await router.place_order(session, _request(idempotency_key="client-key-1"))

    assert first["order"]["id"] == second["order"]["id"]
    assert second["duplicate"] is True
    assert await _count(session, Order) == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_kill_switch_rejects_without_writing(session):
    await _primary(session)
    config = await get_trading_config(session)
    config.global_kill_switch_enabled = True
    await session.commit()

    with pytest.raises(RiskReject) as excinfo:
        await _router().place_order(session, _request())

    assert excinfo.value.code == "KILL_SWITCH"
    assert excinfo.value.to_envelope()["error_kind"] == "RiskReject"
    assert await _count(session, Order) == 0
    assert await _count(session, TransactionLog) == 0


@pytest.mark.asyncio
async def test_kill_switch_rejects_before_market_data_is_fetched(session):
    await _primary(session)
    config = await get_trading_config(session)
    config.global_kill_switch_enabled = True
    await session.commit()
    prices = UnavailablePriceSource()
    router = _router()
    router.price_source = prices

    with pytest.raises(RiskReject) as excinfo:
        await router.place_order(session, _request())

    assert excinfo.value.code == "KILL_SWITCH"
    assert prices.calls == []
    assert await _count(session, Order) == 0


@pytest.mark.asyncio
async def test_no_primary_leaves_no_trace(session):
    machine = await seed_machine(session)
    await seed_failover(session, machine, is_primary=False)
    await seed_exchange(session)
    await session.commit()

    with pytest.raises(NoPrimary):
        await _router().place_order(session, _request())

    assert await _count(session, Order) == 0


@pytest.mark.asyncio
async def test_primary_without_address_is_not_routable(session):
    machine = await seed_machine(session, status="creating", ip_address=None)
    await seed_failover(session, machine, is_primary=True)
    await seed_exchange(session)
    await session.commit()

    with pytest.raises(NoPrimary):
        await _router().place_order(session, _request())


@pytest.mark.asyncio
async def test_missing_exchange_credentials(session):
    machine = await seed_machine(session)
    await seed_failover(session, machine, is_primary=True)
    await session.commit()

    with pytest.raises(NoCredentials):
        await _router().place_order(session, _request())
    assert await _count(session, Order) == 0


@pytest.mark.asyncio
async def test_agent_failure_rejects_order_and_logs(session):
    await _primary(session)

    def _down(request):
        return httpx.Response(503, json={"error": "bot restarting"})

    with pytest.raises(Transient) as excinfo:
        await _router(handler=_down).place_order(session, _request())

    order = (await session.execute(select(Order))).scalars().one()
    assert order.status == "rejected"
    assert "bot restarting" in order.error_message
    assert excinfo.value.details["order_id"] == str(order.id)
    log = (await session.execute(select(TransactionLog))).scalars().one()
    assert (log.action_type, log.status) == ("order_placed", "failed")
    assert await _count(session, Position) == 0


@pytest.mark.asyncio
async def test_limit_order_sends_price(session):
    calls = []
    await _primary(session)

    await _router(calls=calls).place_order(session, _request(order_type="limit", price="99000"))

    body = calls[0][2]
    assert body["type"] == "limit"
    assert body["price"] == "99000"


@pytest.mark.asyncio
async def test_terminal_orders_do_not_move(session):
    await _primary(session)
    await _router().place_order(session, _request())
    order = (await session.execute(select(Order))).scalars().one()
    version = order.version

    with pytest.raises(InvariantViolation):
        await mark_order_cancelled(session, Order, order)
    with pytest.raises(InvariantViolation):
        await mark_order_filled(session, Order, order, fill_price=Decimal("1"), fill_qty=Decimal("0.01"))

    await session.refresh(order)
    assert order.status == "filled"
    assert order.version == version


@pytest.mark.asyncio
async def test_open_size_matches_filled_flow(session):
    await _primary(session)
    router = _router()

    await router.place_order(session, _request(amount="0.03"))
    await router.place_order(session, _request(side="sell", amount="0.01"))
    await router.place_order(session, _request(amount="0.005"))

    orders = (await session.execute(select(Order))).scalars().all()
    bought = sum((o.filled_amount for o in orders if o.side == "buy"), Decimal("0"))
    sold = sum((o.filled_amount for o in orders if o.side == "sell"), Decimal("0"))
    assert await net_open_size(session, Position, exchange="binance", symbol="BTCUSDT") == bought - sold == Decimal("0.025")


@pytest.mark.asyncio
async def test_close_position_realizes_pnl(session):
    prices = iter(["100000", "101000"])

    def _fill(request):
        return httpx.Response(200, json={"success": True, "order_id": "ex", "executed_price": next(prices)})

    await _primary(session)
    router = _router(handler=_fill)
    placed = await router.place_order(session, _request(amount="0.1"))

    closed = await router.close_position(session, placed["position"]["id"])

    assert closed["position"]["status"] == "closed"
    assert Decimal(closed["realized_pnl"]) == Decimal("100")
    assert await _count(session, Order) == 2

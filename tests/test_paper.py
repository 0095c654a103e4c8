import random
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from hft_fleet.common.errors import InvariantViolation, RiskReject
from hft_fleet.common.models import PaperOrder, PaperPosition, TradingJournal
from hft_fleet.services.orders.base import OrderRequest
from hft_fleet.services.orders.paper import PaperOrderRouter
from hft_fleet.services.orders.risk import RiskManager
from hft_fleet.store.fleet import get_trading_config

from factories import FixedPriceSource, UnavailablePriceSource, no_sleep


def _router(price: str = "100") -> PaperOrderRouter:
    return PaperOrderRouter(
        risk=RiskManager(cache_seconds=0),
        price_source=FixedPriceSource(price),
        rng=random.Random(1),
        sleep=no_sleep,
    )


def _buy(amount: str, **kwargs) -> OrderRequest:
    return OrderRequest.build(exchange="binance", symbol="BTCUSDT", side="buy", amount=amount, **kwargs)


@pytest.mark.asyncio
async def test_market_buy_fills_with_slippage_and_fee(session):
    result = await _router().place_order(session, _buy("10"))

    order = result["order"]
    fill = Decimal(order["average_fill_price"])
    assert order["status"] == "filled"
    assert Decimal("100.01") <= fill <= Decimal("100.05")
    assert order["exchange_order_id"].startswith("paper-")
    fee = Decimal(order["fee"])
    assert abs(fee - Decimal("10") * fill * Decimal("0.001")) < Decimal("0.000001")
    assert abs(Decimal(result["cash_balance"]) - (Decimal("10000") - Decimal("10") * fill - fee)) < Decimal("0.000001")
    assert result["position"]["side"] == "long"
    assert Decimal(result["position"]["size"]) == Decimal("10")


@pytest.mark.asyncio
async def test_limit_order_fills_at_its_price(session):
    result = await _router().place_order(session, _buy("1", order_type="limit", price="99.5"))

    assert Decimal(result["order"]["average_fill_price"]) == Decimal("99.5")


@pytest.mark.asyncio
async def test_buy_beyond_cash_is_rejected_without_rows(session):
    with pytest.raises(RiskReject) as excinfo:
        await _router().place_order(session, _buy("99.95"))

    assert excinfo.value.code == "INSUFFICIENT_BALANCE"
    assert await session.scalar(select(func.count()).select_from(PaperOrder)) == 0
    assert await session.scalar(select(func.count()).select_from(PaperPosition)) == 0


@pytest.mark.asyncio
async def test_kill_switch_wins_over_missing_market_data(session):
    config = await get_trading_config(session)
    config.global_kill_switch_enabled = True
    await session.commit()
    prices = UnavailablePriceSource()
    router = PaperOrderRouter(risk=RiskManager(cache_seconds=0), price_source=prices, sleep=no_sleep)

    with pytest.raises(RiskReject) as excinfo:
        await router.place_order(session, _buy("1"))

    assert excinfo.value.code == "KILL_SWITCH"
    assert prices.calls == []


@pytest.mark.asyncio
async def test_close_paper_position_books_a_loss_from_slippage(session):
    router = _router()
    opened = await router.place_order(session, _buy("10"))

    closed = await router.close_paper_position(session, opened["position"]["id"])

    assert closed["position"]["status"] == "closed"
    assert closed["order"]["side"] == "sell"
    pnl = Decimal(closed["realized_pnl"])
    assert Decimal("-1.0") <= pnl < 0
    journal = (await session.execute(select(TradingJournal))).scalars().one()
    assert journal.is_paper is True

    with pytest.raises(InvariantViolation):
        await router.close_paper_position(session, opened["position"]["id"])


@pytest.mark.asyncio
async def test_balance_and_reset(session):
    router = _router()
    fresh = await router.get_balance(session)
    assert fresh["cash_balance"] == "10000"
    assert fresh["pnl_percent"] == 0.0
    assert "success" not in fresh

    await router.place_order(session, _buy("10"))
    after = await router.get_balance(session)
    assert Decimal(after["cash_balance"]) < Decimal("9000")
    assert after["open_positions"] == 1
    assert Decimal(after["total_equity"]) < Decimal("10000")

    reset = await router.reset_paper_account(session)

    assert reset["deleted"]["orders"] == 1
    assert reset["deleted"]["positions"] == 1
    balance = await router.get_balance(session)
    assert Decimal(balance["cash_balance"]) == Decimal("10000")
    assert balance["open_positions"] == 0

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from hft_fleet.common.errors import Permanent, RiskReject
from hft_fleet.common.models import BalanceHistory
from hft_fleet.services.orders.risk import RiskManager
from hft_fleet.store.common import now_utc
from hft_fleet.store.fleet import get_trading_config
from hft_fleet.store.orders import append_journal_entry


def _order(**overrides):
    order = {
        "exchange": "binance",
        "symbol": "BTCUSDT",
        "side": "buy",
        "amount": Decimal("0.01"),
        "price": Decimal("100000"),
    }
    order.update(overrides)
    return order


async def _balances(session, *values):
    """Oldest first."""
    start = now_utc() - timedelta(hours=len(values))
    for index, value in enumerate(values):
        session.add(
            BalanceHistory(
                id=uuid.uuid4(),
                total_balance=Decimal(value),
                exchange_breakdown={},
                snapshot_time=start + timedelta(hours=index),
            )
        )
    await session.flush()


async def _loss(session, pnl, *, is_paper=False):
    await append_journal_entry(
        session,
        exchange="binance",
        symbol="BTCUSDT",
        side="long",
        entry_price=Decimal("100"),
        exit_price=Decimal("90"),
        quantity=Decimal("1"),
        pnl=Decimal(pnl),
        is_paper=is_paper,
    )


@pytest.mark.asyncio
async def test_defaults_allow_a_small_order(session):
    decision = await RiskManager(cache_seconds=0).evaluate(session, **_order())
    assert decision.allowed is True
    assert decision.warnings == []


@pytest.mark.asyncio
async def test_kill_switch_wins_over_everything(session):
    config = await get_trading_config(session)
    config.global_kill_switch_enabled = True
    await session.flush()

    decision = await RiskManager(cache_seconds=0).evaluate(session, **_order(amount=Decimal("5")))

    assert (decision.allowed, decision.code) == (False, "KILL_SWITCH")


@pytest.mark.asyncio
async def test_order_value_over_max_position_size(session):
    decision = await RiskManager(cache_seconds=0).evaluate(session, **_order(amount=Decimal("0.2")))
    assert decision.code == "MAX_POSITION_SIZE"


@pytest.mark.asyncio
async def test_daily_loss_warns_then_rejects(session):
    manager = RiskManager(cache_seconds=0)
    await _loss(session, "-450")
    warned = await manager.evaluate(session, **_order())
    assert warned.allowed is True
    assert warned.warnings == ["Daily loss at 90% of limit"]

    await _loss(session, "-50")
    rejected = await manager.evaluate(session, **_order())
    assert rejected.code == "MAX_DAILY_LOSS"

    paper = await manager.evaluate(session, **_order(), is_paper=True)
    assert paper.allowed is True


@pytest.mark.asyncio
async def test_drawdown_from_window_peak(session):
    await _balances(session, "10000", "12000", "10500")
    decision = await RiskManager(cache_seconds=0).evaluate(session, **_order())
    assert decision.code == "MAX_DRAWDOWN"
    assert RiskManager.drawdown_pct([Decimal("10500"), Decimal("12000"), Decimal("10000")]) == Decimal("12.5")


@pytest.mark.asyncio
async def test_drawdown_warning_below_limit(session):
    await _balances(session, "10000", "9200")
    decision = await RiskManager(cache_seconds=0).evaluate(session, **_order())
    assert decision.allowed is True
    assert decision.warnings == ["Drawdown at 8.0% (limit: 10%)"]


@pytest.mark.asyncio
async def test_min_balance_and_slippage(session):
    manager = RiskManager(cache_seconds=0)
    await _balances(session, "50")
    assert (await manager.evaluate(session, **_order())).code == "MIN_BALANCE"

    await _balances(session, "5000")
    slippage = await manager.evaluate(session, **_order(max_slippage_pct=Decimal("1.0")))
    assert slippage.code == "MAX_SLIPPAGE"


@pytest.mark.asyncio
async def test_large_share_of_balance_warns(session):
    await _balances(session, "1000")
    decision = await RiskManager(cache_seconds=0).evaluate(session, **_order(amount=Decimal("0.0099")))
    assert decision.allowed is True
    assert "Order uses more than 95% of available balance" in decision.warnings


@pytest.mark.asyncio
async def test_check_raises_with_code(session):
    with pytest.raises(RiskReject) as excinfo:
        await RiskManager(cache_seconds=0).check(session, **_order(amount=Decimal("1")))
    assert excinfo.value.code == "MAX_POSITION_SIZE"
    assert excinfo.value.to_envelope()["details"]["code"] == "MAX_POSITION_SIZE"


@pytest.mark.asyncio
async def test_update_limits_invalidates_cache(session):
    manager = RiskManager(cache_seconds=3600)
    before = await manager.get_limits(session)
    assert before.max_position_size == Decimal("10000")

    after = await manager.update_risk_limits(session, max_position_size=Decimal("500"), min_balance=None)

    assert after.max_position_size == Decimal("500")
    assert (await manager.evaluate(session, **_order())).code == "MAX_POSITION_SIZE"
    config = await get_trading_config(session)
    assert config.version == 2


@pytest.mark.asyncio
async def test_update_limits_rejects_bad_input(session):
    manager = RiskManager(cache_seconds=0)
    with pytest.raises(Permanent):
        await manager.update_risk_limits(session, leverage=Decimal("3"))
    with pytest.raises(Permanent):
        await manager.update_risk_limits(session, max_daily_loss=Decimal("-1"))


@pytest.mark.asyncio
async def test_risk_metrics(session):
    await _balances(session, "10000", "9500")
    await _loss(session, "-100")

    metrics = await RiskManager(cache_seconds=0).get_risk_metrics(session)

    assert metrics["daily_loss"] == 100.0
    assert metrics["drawdown"] == 5.0
    assert metrics["current_balance"] == 9500.0
    assert metrics["daily_loss_percent"] == 20.0
    assert metrics["drawdown_percent"] == 50.0
    assert metrics["limits"]["max_position_size"] == 10000.0

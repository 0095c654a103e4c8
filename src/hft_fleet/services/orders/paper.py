from __future__ import annotations

import asyncio
import logging
import random
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.env import env_float
from hft_fleet.common.errors import FleetError, InvariantViolation, RiskReject
from hft_fleet.common.models import PaperOrder, PaperPosition
from hft_fleet.services.orders.base import BaseOrderRouter, OrderRequest, new_order_ids, order_as_dict, position_as_dict
from hft_fleet.services.orders.market_data import CcxtPriceSource, PriceSource
from hft_fleet.services.orders.risk import RiskManager, get_risk_manager
from hft_fleet.store.orders import append_transaction_log, insert_pending_order, mark_order_filled
from hft_fleet.store.paper import append_paper_snapshot, latest_paper_snapshot, wipe_paper_account
from hft_fleet.store.positions import apply_fill, get_position, list_positions, realize_close, set_position_status

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_BALANCE = Decimal("10000")
DEFAULT_FEE_RATE = Decimal("0.001")
SLIPPAGE_RANGE = (0.0001, 0.0005)
FILL_DELAY_RANGE_SECONDS = (0.05, 0.2)
_QUANT = Decimal("0.0000000001")


class PaperOrderRouter(BaseOrderRouter):
    """
    Simulated fills against live market prices.

    Writes the paper_* tables with the same shapes the live router writes,
    so positions, orders and balance history read the same way. No primary
    machine or exchange credentials are involved.
    """

    order_model = PaperOrder
    position_model = PaperPosition
    is_paper = True

    def __init__(
        self,
        *,
        risk: RiskManager,
        price_source: PriceSource,
        initial_balance: Decimal = DEFAULT_INITIAL_BALANCE,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.risk = risk
        self.price_source = price_source
        self.initial_balance = initial_balance
        self.fee_rate = fee_rate
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> "PaperOrderRouter":
        return cls(
            risk=get_risk_manager(),
            price_source=CcxtPriceSource(),
            initial_balance=Decimal(str(env_float("PAPER_INITIAL_BALANCE", float(DEFAULT_INITIAL_BALANCE), minimum=0.0))),
            fee_rate=Decimal(str(env_float("PAPER_FEE_RATE", float(DEFAULT_FEE_RATE), minimum=0.0))),
        )

    def simulate_fill_price(self, *, side: str, order_type: str, market_price: Decimal, limit_price: Optional[Decimal]) -> Decimal:
        if order_type == "limit" and limit_price is not None:
            return limit_price
        slippage = Decimal(str(self._rng.uniform(*SLIPPAGE_RANGE)))
        factor = Decimal("1") + slippage if side == "buy" else Decimal("1") - slippage
        return (market_price * factor).quantize(_QUANT)

    async def _simulate_latency(self) -> None:
        await self._sleep(self._rng.uniform(*FILL_DELAY_RANGE_SECONDS))

    async def _cash(self, session: AsyncSession) -> Decimal:
        snapshot = await latest_paper_snapshot(session)
        if snapshot is None:
            return self.initial_balance
        return Decimal(snapshot.cash_balance)

    async def _equity(self, session: AsyncSession, cash: Decimal) -> tuple[Decimal, Dict[str, Any]]:
        equity = cash
        breakdown: Dict[str, Any] = {}
        for position in await list_positions(session, PaperPosition, status="open", limit=1000):
            mark = position.current_price or position.entry_price
            value = position.size * mark
            equity += value if position.side == "long" else -value
            breakdown[f"{position.exchange}:{position.symbol}:{position.side}"] = value
        return equity, breakdown

    async def _book_cash(self, session: AsyncSession, *, side: str, qty: Decimal, price: Decimal, fee: Decimal) -> Decimal:
        cash = await self._cash(session)
        notional = qty * price
        cash = cash - notional - fee if side == "buy" else cash + notional - fee
        equity, breakdown = await self._equity(session, cash)
        await append_paper_snapshot(session, cash_balance=cash, total_equity=equity, breakdown=breakdown)
        return cash

    async def place_order(self, session: AsyncSession, request: OrderRequest) -> Dict[str, Any]:
        client_order_id, idempotency_key = new_order_ids(request)
        try:
            await self.risk.check_kill_switch(session)
            market_price = request.price if request.order_type == "limit" else None
            if market_price is None:
                market_price = await self.price_source.last_price(request.exchange, request.symbol)
            warnings = await self.risk.check(
                session,
                exchange=request.exchange,
                symbol=request.symbol,
                side=request.side,
                amount=request.amount,
                price=market_price,
                max_slippage_pct=request.max_slippage,
                is_paper=True,
            )
            if request.side == "buy":
                cash = await self._cash(session)
                required = request.amount * market_price * (Decimal("1") + self.fee_rate)
                if required > cash:
                    raise RiskReject(
                        f"Insufficient paper balance: need {required:.2f}, have {cash:.2f}",
                        code="INSUFFICIENT_BALANCE",
                        details={"required": str(required), "available": str(cash)},
                    )
        except FleetError:
            await session.rollback()
            raise

        order, created = await insert_pending_order(
            session,
            PaperOrder,
            exchange=request.exchange,
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            amount=request.amount,
            price=request.price,
            client_order_id=client_order_id,
            idempotency_key=idempotency_key,
        )
        if not created:
            await session.commit()
            return {"success": True, "duplicate": True, "order": order_as_dict(order), "warnings": []}

        await self._simulate_latency()
        fill_price = self.simulate_fill_price(
            side=request.side,
            order_type=request.order_type,
            market_price=market_price,
            limit_price=request.price,
        )
        fee = (request.amount * fill_price * self.fee_rate).quantize(_QUANT)
        await mark_order_filled(
            session,
            PaperOrder,
            order,
            fill_price=fill_price,
            fill_qty=request.amount,
            exchange_order_id=f"paper-{uuid.uuid4().hex[:16]}",
            fee=fee,
        )
        outcome = await apply_fill(
            session,
            PaperPosition,
            exchange=request.exchange,
            symbol=request.symbol,
            order_side=request.side,
            qty=request.amount,
            price=fill_price,
            is_paper=True,
        )
        cash = await self._book_cash(session, side=request.side, qty=request.amount, price=fill_price, fee=fee)
        await append_transaction_log(
            session,
            action_type="paper_order_placed",
            status="success",
            exchange_name=request.exchange,
            symbol=request.symbol,
            details={"order_id": order.id, "side": request.side, "qty": request.amount, "price": fill_price, "fee": fee},
        )
        await session.commit()
        logger.info(
            "Paper order filled",
            extra={"order_id": str(order.id), "symbol": request.symbol, "fill_price": str(fill_price)},
        )
        return {
            "success": True,
            "duplicate": False,
            "order": order_as_dict(order),
            "position": position_as_dict(outcome.position) if outcome.position is not None else None,
            "realized_pnl": str(outcome.realized_pnl),
            "cash_balance": str(cash),
            "warnings": warnings,
        }

    async def close_paper_position(self, session: AsyncSession, position_id: str) -> Dict[str, Any]:
        position = await get_position(session, PaperPosition, position_id)
        if position.status != "open":
            raise InvariantViolation(
                f"Cannot close position in status {position.status}",
                details={"position_id": str(position.id), "status": position.status},
            )
        try:
            market_price = await self.price_source.last_price(position.exchange, position.symbol)
        except FleetError:
            logger.warning(
                "Market price unavailable; closing paper position at last known price",
                extra={"position_id": str(position.id)},
            )
            market_price = position.current_price or position.entry_price

        await set_position_status(session, PaperPosition, position, "closing")
        close_side = "sell" if position.side == "long" else "buy"
        qty = position.size
        order, _ = await insert_pending_order(
            session,
            PaperOrder,
            exchange=position.exchange,
            symbol=position.symbol,
            side=close_side,
            order_type="market",
            amount=qty,
            price=None,
            client_order_id=uuid.uuid4().hex,
            idempotency_key=uuid.uuid4().hex,
        )
        await self._simulate_latency()
        exit_price = self.simulate_fill_price(side=close_side, order_type="market", market_price=market_price, limit_price=None)
        fee = (qty * exit_price * self.fee_rate).quantize(_QUANT)
        await mark_order_filled(
            session,
            PaperOrder,
            order,
            fill_price=exit_price,
            fill_qty=qty,
            exchange_order_id=f"paper-{uuid.uuid4().hex[:16]}",
            fee=fee,
        )
        pnl = await realize_close(session, PaperPosition, position, price=exit_price, is_paper=True)
        cash = await self._book_cash(session, side=close_side, qty=qty, price=exit_price, fee=fee)
        await append_transaction_log(
            session,
            action_type="paper_position_closed",
            status="success",
            exchange_name=position.exchange,
            symbol=position.symbol,
            details={"position_id": position.id, "order_id": order.id, "price": exit_price, "pnl": pnl},
        )
        await session.commit()
        return {
            "success": True,
            "position": position_as_dict(position),
            "order": order_as_dict(order),
            "realized_pnl": str(pnl),
            "cash_balance": str(cash),
        }

    async def get_balance(self, session: AsyncSession) -> Dict[str, Any]:
        cash = await self._cash(session)
        equity, breakdown = await self._equity(session, cash)
        return {
            "cash_balance": str(cash),
            "total_equity": str(equity),
            "initial_balance": str(self.initial_balance),
            "pnl": str(equity - self.initial_balance),
            "pnl_percent": float((equity - self.initial_balance) / self.initial_balance * 100) if self.initial_balance else 0.0,
            "open_positions": len(breakdown),
        }

    async def reset_paper_account(self, session: AsyncSession) -> Dict[str, Any]:
        counts = await wipe_paper_account(session)
        await append_paper_snapshot(
            session,
            cash_balance=self.initial_balance,
            total_equity=self.initial_balance,
            breakdown={},
        )
        await append_transaction_log(session, action_type="paper_reset", status="success", details={"deleted": counts})
        await session.commit()
        logger.info("Paper account reset", extra={"deleted": counts})
        return {"success": True, "deleted": counts, "balance": str(self.initial_balance)}


_paper_router: PaperOrderRouter | None = None


def get_paper_router() -> PaperOrderRouter:
    global _paper_router
    if _paper_router is None:
        _paper_router = PaperOrderRouter.from_env()
    return _paper_router

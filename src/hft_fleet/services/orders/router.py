from __future__ import annotations

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import (
    FleetError,
    InvariantViolation,
    NoPrimary,
    Transient,
    classify_http_status,
)
from hft_fleet.common.models import Machine, Order, Position
from hft_fleet.remote.control import AgentControlClient, EndpointCheck
from hft_fleet.services.exchange_credentials import require_exchange_credentials
from hft_fleet.services.orders.base import BaseOrderRouter, OrderRequest, new_order_ids, order_as_dict, position_as_dict
from hft_fleet.services.orders.market_data import CcxtPriceSource, PriceSource
from hft_fleet.services.orders.risk import RiskManager, get_risk_manager
from hft_fleet.services.rate_limit import RateLimitCoordinator, get_rate_limit_coordinator
from hft_fleet.store.failover import primary_machine
from hft_fleet.store.orders import (
    append_transaction_log,
    insert_pending_order,
    mark_order_filled,
    mark_order_rejected,
)
from hft_fleet.store.positions import apply_fill, get_position, realize_close, set_position_status

logger = logging.getLogger(__name__)

ORDER_PRIORITY = "high"


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed > 0 else None


def _agent_error(check: EndpointCheck, exchange: str) -> FleetError:
    message = check.error or "order placement failed"
    details = {"exchange": exchange, "status_code": check.status_code}
    if check.status_code is None or 200 <= check.status_code < 300:
        # transport failure, timeout, or an agent that answered 2xx with success=false
        if check.status_code is None:
            return Transient(f"Agent unreachable: {message}", details=details)
        return classify_http_status(400, f"Order rejected by agent: {message}", details=details)
    return classify_http_status(check.status_code, f"Order rejected by agent: {message}", details=details)


class OrderRouter(BaseOrderRouter):
    """
    Live order placement through the primary machine.

    Orders are only ever sent to the on-host agent of the current primary,
    whose IP is the one whitelisted at the exchange; there is no fallback
    route when no primary is running.
    """

    order_model = Order
    position_model = Position
    is_paper = False

    def __init__(
        self,
        *,
        control: AgentControlClient,
        risk: RiskManager,
        rate_limiter: RateLimitCoordinator,
        price_source: PriceSource,
    ) -> None:
        self.control = control
        self.risk = risk
        self.rate_limiter = rate_limiter
        self.price_source = price_source

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "OrderRouter":
        return cls(
            control=AgentControlClient.from_env(transport),
            risk=get_risk_manager(),
            rate_limiter=get_rate_limit_coordinator(),
            price_source=CcxtPriceSource(),
        )

    async def _reference_price(self, request: OrderRequest) -> Decimal:
        if request.price is not None:
            return request.price
        return await self.price_source.last_price(request.exchange, request.symbol)

    async def _resolve_route(self, session: AsyncSession, exchange: str) -> tuple[Machine, Dict[str, Any]]:
        resolved = await primary_machine(session)
        if resolved is None:
            raise NoPrimary("No running primary machine; live orders cannot be routed")
        _, machine = resolved
        creds = await require_exchange_credentials(session, exchange)
        return machine, creds

    async def _send(
        self,
        machine: Machine,
        creds: Dict[str, Any],
        *,
        exchange: str,
        symbol: str,
        side: str,
        qty: Decimal,
        order_type: str,
        price: Optional[Decimal],
    ) -> EndpointCheck:
        payload: Dict[str, Any] = {
            "exchange": exchange,
            "symbol": symbol,
            "side": side,
            "qty": str(qty),
            "type": order_type,
            "key": creds["api_key"],
            "secret": creds["api_secret"],
        }
        if price is not None and order_type == "limit":
            payload["price"] = str(price)
        if creds.get("api_passphrase"):
            payload["passphrase"] = creds["api_passphrase"]
        ip_address = machine.ip_address or ""
        return await self.rate_limiter.submit(
            exchange,
            lambda: self.control.place_order(ip_address, payload),
            priority=ORDER_PRIORITY,
        )

    async def _reject(self, session: AsyncSession, order: Order, *, action_type: str, error: FleetError) -> None:
        await mark_order_rejected(session, Order, order, error_message=error.message)
        await append_transaction_log(
            session,
            action_type=action_type,
            status="failed",
            exchange_name=order.exchange,
            symbol=order.symbol,
            details={"order_id": order.id, "error_kind": error.error_kind, **error.details},
            error_message=error.message,
        )

    async def place_order(self, session: AsyncSession, request: OrderRequest) -> Dict[str, Any]:
        client_order_id, idempotency_key = new_order_ids(request)
        try:
            await self.risk.check_kill_switch(session)
            reference_price = await self._reference_price(request)
            warnings = await self.risk.check(
                session,
                exchange=request.exchange,
                symbol=request.symbol,
                side=request.side,
                amount=request.amount,
                price=reference_price,
                max_slippage_pct=request.max_slippage,
            )
        except FleetError:
            await session.rollback()
            raise

        order, created = await insert_pending_order(
            session,
            Order,
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
            logger.info(
                "Order idempotency hit",
                extra={"order_id": str(order.id), "idempotency_key": idempotency_key, "status": order.status},
            )
            return {"success": True, "duplicate": True, "order": order_as_dict(order), "warnings": []}

        try:
            machine, creds = await self._resolve_route(session, request.exchange)
        except FleetError:
            # no trace: the pending row goes away with the rollback
            await session.rollback()
            raise
        order.machine_id = machine.id
        await session.commit()

        try:
            check = await self._send(
                machine,
                creds,
                exchange=request.exchange,
                symbol=request.symbol,
                side=request.side,
                qty=request.amount,
                order_type=request.order_type,
                price=request.price,
            )
            if not check.ok:
                raise _agent_error(check, request.exchange)
        except FleetError as exc:
            await self._reject(session, order, action_type="order_placed", error=exc)
            await session.commit()
            logger.warning(
                "Live order rejected",
                extra={"order_id": str(order.id), "error_kind": exc.error_kind, "error": exc.message},
            )
            exc.details.setdefault("order_id", str(order.id))
            raise

        data = check.data if isinstance(check.data, dict) else {}
        fill_price = _decimal_or_none(data.get("executed_price")) or reference_price
        fill_qty = _decimal_or_none(data.get("executed_qty")) or request.amount
        fill_qty = min(fill_qty, request.amount)
        await mark_order_filled(
            session,
            Order,
            order,
            fill_price=fill_price,
            fill_qty=fill_qty,
            exchange_order_id=str(data["order_id"]) if data.get("order_id") is not None else None,
            fee=_decimal_or_none(data.get("fee")),
        )
        outcome = await apply_fill(
            session,
            Position,
            exchange=request.exchange,
            symbol=request.symbol,
            order_side=request.side,
            qty=fill_qty,
            price=fill_price,
        )
        await append_transaction_log(
            session,
            action_type="order_placed",
            status="success",
            exchange_name=request.exchange,
            symbol=request.symbol,
            details={
                "order_id": order.id,
                "exchange_order_id": order.exchange_order_id,
                "machine_id": machine.id,
                "side": request.side,
                "qty": fill_qty,
                "price": fill_price,
                "latency_ms": check.latency_ms,
            },
        )
        await session.commit()
        logger.info(
            "Live order filled",
            extra={"order_id": str(order.id), "exchange": request.exchange, "symbol": request.symbol},
        )
        return {
            "success": True,
            "duplicate": False,
            "order": order_as_dict(order),
            "position": position_as_dict(outcome.position) if outcome.position is not None else None,
            "realized_pnl": str(outcome.realized_pnl),
            "warnings": warnings,
        }

    async def close_position(self, session: AsyncSession, position_id: str) -> Dict[str, Any]:
        position = await get_position(session, Position, position_id)
        if position.status != "open":
            raise InvariantViolation(
                f"Cannot close position in status {position.status}",
                details={"position_id": str(position.id), "status": position.status},
            )
        try:
            machine, creds = await self._resolve_route(session, position.exchange)
        except FleetError:
            await session.rollback()
            raise
        await set_position_status(session, Position, position, "closing")
        close_side = "sell" if position.side == "long" else "buy"
        client_order_id, idempotency_key = uuid.uuid4().hex, uuid.uuid4().hex
        order, _ = await insert_pending_order(
            session,
            Order,
            exchange=position.exchange,
            symbol=position.symbol,
            side=close_side,
            order_type="market",
            amount=position.size,
            price=None,
            client_order_id=client_order_id,
            idempotency_key=idempotency_key,
            machine_id=machine.id,
        )
        await session.commit()

        try:
            check = await self._send(
                machine,
                creds,
                exchange=position.exchange,
                symbol=position.symbol,
                side=close_side,
                qty=position.size,
                order_type="market",
                price=None,
            )
            if not check.ok:
                raise _agent_error(check, position.exchange)
        except FleetError as exc:
            await self._reject(session, order, action_type="position_closed", error=exc)
            await set_position_status(session, Position, position, "open")
            await session.commit()
            logger.warning(
                "Position close failed; position reopened",
                extra={"position_id": str(position.id), "error_kind": exc.error_kind},
            )
            raise

        data = check.data if isinstance(check.data, dict) else {}
        exit_price = (
            _decimal_or_none(data.get("executed_price"))
            or position.current_price
            or position.entry_price
        )
        closed_qty = position.size
        await mark_order_filled(
            session,
            Order,
            order,
            fill_price=exit_price,
            fill_qty=closed_qty,
            exchange_order_id=str(data["order_id"]) if data.get("order_id") is not None else None,
            fee=_decimal_or_none(data.get("fee")),
        )
        pnl = await realize_close(session, Position, position, price=exit_price)
        await append_transaction_log(
            session,
            action_type="position_closed",
            status="success",
            exchange_name=position.exchange,
            symbol=position.symbol,
            details={"position_id": position.id, "order_id": order.id, "qty": closed_qty, "price": exit_price, "pnl": pnl},
        )
        await session.commit()
        logger.info("Position closed", extra={"position_id": str(position.id), "pnl": str(pnl)})
        return {
            "success": True,
            "position": position_as_dict(position),
            "order": order_as_dict(order),
            "realized_pnl": str(pnl),
        }


_order_router: OrderRouter | None = None


def get_order_router() -> OrderRouter:
    global _order_router
    if _order_router is None:
        _order_router = OrderRouter.from_env()
    return _order_router

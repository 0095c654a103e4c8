from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import InvariantViolation, Permanent
from hft_fleet.common.models import Order, PaperOrder, PaperPosition, Position
from hft_fleet.store.orders import (
    TERMINAL_ORDER_STATUSES,
    append_transaction_log,
    get_order,
    list_orders,
    mark_order_cancelled,
)
from hft_fleet.store.positions import list_positions
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)

ORDER_SIDES = {"buy", "sell"}
ORDER_TYPES = {"market", "limit"}
LIST_LIMIT = 100


def _to_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise Permanent(f"{field_name} must be numeric", details={field_name: str(value)}) from exc


@dataclass(frozen=True)
class OrderRequest:
    exchange: str
    symbol: str
    side: str
    amount: Decimal
    order_type: str = "market"
    price: Optional[Decimal] = None
    max_slippage: Optional[Decimal] = None
    idempotency_key: Optional[str] = None

    @classmethod
    def build(
        cls,
        *,
        exchange: str,
        symbol: str,
        side: str,
        amount: Any,
        order_type: str | None = "market",
        price: Any = None,
        max_slippage: Any = None,
        idempotency_key: str | None = None,
    ) -> "OrderRequest":
        exchange_name = (exchange or "").strip().lower()
        symbol_norm = (symbol or "").strip().upper()
        side_norm = (side or "").strip().lower()
        type_norm = (order_type or "market").strip().lower()
        if not exchange_name or not symbol_norm:
            raise Permanent("exchange and symbol are required")
        if side_norm not in ORDER_SIDES:
            raise Permanent(f"Unsupported side: {side}", details={"allowed": sorted(ORDER_SIDES)})
        if type_norm not in ORDER_TYPES:
            raise Permanent(f"Unsupported order type: {order_type}", details={"allowed": sorted(ORDER_TYPES)})
        qty = _to_decimal(amount, "amount")
        if qty is None or qty <= 0:
            raise Permanent("amount must be positive")
        limit_price = _to_decimal(price, "price")
        if limit_price is not None and limit_price <= 0:
            raise Permanent("price must be positive")
        if type_norm == "limit" and limit_price is None:
            raise Permanent("Limit orders require a price")
        key = (idempotency_key or "").strip() or None
        if key is not None and len(key) > 64:
            raise Permanent("idempotency_key must be at most 64 characters")
        return cls(
            exchange=exchange_name,
            symbol=symbol_norm,
            side=side_norm,
            amount=qty,
            order_type=type_norm,
            price=limit_price,
            max_slippage=_to_decimal(max_slippage, "max_slippage"),
            idempotency_key=key,
        )


def new_order_ids(request: OrderRequest) -> tuple[str, str]:
    """Fresh 128-bit ``client_order_id`` and the idempotency key (caller-supplied or fresh)."""
    return uuid.uuid4().hex, request.idempotency_key or uuid.uuid4().hex


def order_as_dict(order: Order | PaperOrder) -> Dict[str, Any]:
    return json_safe(
        {
            "id": order.id,
            "exchange": order.exchange,
            "symbol": order.symbol,
            "side": order.side,
            "order_type": order.order_type,
            "amount": order.amount,
            "price": order.price,
            "status": order.status,
            "exchange_order_id": order.exchange_order_id,
            "client_order_id": order.client_order_id,
            "idempotency_key": order.idempotency_key,
            "filled_amount": order.filled_amount,
            "average_fill_price": order.average_fill_price,
            "fee": order.fee,
            "error_message": order.error_message,
            "machine_id": getattr(order, "machine_id", None),
            "created_at": order.created_at,
            "updated_at": order.updated_at,
            "filled_at": order.filled_at,
            "cancelled_at": order.cancelled_at,
        }
    )


def position_as_dict(position: Position | PaperPosition) -> Dict[str, Any]:
    unrealized = None
    if position.current_price is not None and position.status != "closed":
        diff = position.current_price - position.entry_price
        unrealized = diff * position.size if position.side == "long" else -diff * position.size
    return json_safe(
        {
            "id": position.id,
            "exchange": position.exchange,
            "symbol": position.symbol,
            "side": position.side,
            "size": position.size,
            "entry_price": position.entry_price,
            "current_price": position.current_price,
            "unrealized_pnl": unrealized,
            "realized_pnl": position.realized_pnl,
            "status": position.status,
            "created_at": position.created_at,
            "closed_at": position.closed_at,
        }
    )


class BaseOrderRouter:
    """Reads and cancellations shared by the live router and the paper mirror."""

    order_model: Type[Order] | Type[PaperOrder] = Order
    position_model: Type[Position] | Type[PaperPosition] = Position
    is_paper = False

    @property
    def log_prefix(self) -> str:
        return "paper_" if self.is_paper else ""

    async def cancel_order(self, session: AsyncSession, order_id: str) -> Dict[str, Any]:
        order = await get_order(session, self.order_model, order_id)
        if order.status in TERMINAL_ORDER_STATUSES:
            raise InvariantViolation(
                f"Cannot cancel order in status {order.status}",
                details={"order_id": str(order.id), "status": order.status},
            )
        await mark_order_cancelled(session, self.order_model, order)
        await append_transaction_log(
            session,
            action_type=f"{self.log_prefix}order_cancelled",
            status="success",
            exchange_name=order.exchange,
            symbol=order.symbol,
            details={"order_id": order.id, "client_order_id": order.client_order_id},
        )
        await session.commit()
        logger.info("Order cancelled", extra={"order_id": str(order.id), "paper": self.is_paper})
        return {"success": True, "order": order_as_dict(order)}

    async def list_orders(
        self,
        session: AsyncSession,
        *,
        status: str | None = None,
        exchange: str | None = None,
        limit: int = LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        rows = await list_orders(session, self.order_model, status=status, exchange=exchange, limit=min(limit, LIST_LIMIT))
        return [order_as_dict(row) for row in rows]

    async def list_positions(
        self,
        session: AsyncSession,
        *,
        status: str | None = "open",
        limit: int = LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        rows = await list_positions(session, self.position_model, status=status, limit=min(limit, LIST_LIMIT))
        return [position_as_dict(row) for row in rows]

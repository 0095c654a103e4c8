from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import InvariantViolation, NotFound, Permanent
from hft_fleet.common.models import (
    BalanceHistory,
    Order,
    PaperOrder,
    TradingJournal,
    TransactionLog,
)
from hft_fleet.store.common import dialect_insert, now_utc
from hft_fleet.utils.json_safe import json_safe

OrderModel = TypeVar("OrderModel", Order, PaperOrder)

TERMINAL_ORDER_STATUSES = {"filled", "rejected", "cancelled"}
OPEN_ORDER_STATUSES = {"pending", "partially_filled"}


async def insert_pending_order(
    session: AsyncSession,
    model: Type[OrderModel],
    *,
    exchange: str,
    symbol: str,
    side: str,
    order_type: str,
    amount: Decimal,
    price: Decimal | None,
    client_order_id: str,
    idempotency_key: str,
    **extra: Any,
) -> tuple[OrderModel, bool]:
    """Insert a pending order gated by ``idempotency_key``; a duplicate returns the existing row."""
    now = now_utc()
    stmt = (
        dialect_insert(session, model)
        .values(
            id=uuid.uuid4(),
            exchange=exchange,
            symbol=symbol,
            side=side,
            order_type=order_type,
            amount=amount,
            price=price,
            status="pending",
            client_order_id=client_order_id,
            idempotency_key=idempotency_key,
            filled_amount=Decimal("0"),
            created_at=now,
            updated_at=now,
            version=1,
            **extra,
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
        .returning(model.id)
    )
    inserted_id = (await session.execute(stmt)).scalar()
    if inserted_id is not None:
        return await session.get(model, inserted_id), True
    existing = await session.scalar(select(model).where(model.idempotency_key == idempotency_key).limit(1))
    if existing is None:
        raise InvariantViolation("Order insert conflicted but no existing row was found")
    return existing, False


async def get_order(session: AsyncSession, model: Type[OrderModel], order_id: str | uuid.UUID) -> OrderModel:
    try:
        parsed = order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
    except ValueError as exc:
        raise NotFound(f"Order not found: {order_id}") from exc
    order = await session.get(model, parsed)
    if order is None:
        raise NotFound(f"Order not found: {order_id}")
    return order


async def _transition(
    session: AsyncSession,
    model: Type[OrderModel],
    order: OrderModel,
    *,
    allowed_from: set[str],
    values: dict[str, Any],
) -> OrderModel:
    if order.status in TERMINAL_ORDER_STATUSES:
        raise InvariantViolation(
            f"Order {order.id} is already {order.status}",
            details={"order_id": str(order.id), "status": order.status},
        )
    result = await session.execute(
        update(model)
        .where(
            model.id == order.id,
            model.version == order.version,
            model.status.in_(allowed_from),
        )
        .values(**values, version=model.version + 1, updated_at=now_utc())
    )
    if result.rowcount != 1:
        raise InvariantViolation(
            "Order changed concurrently",
            details={"order_id": str(order.id), "expected_version": order.version},
        )
    await session.flush()
    await session.refresh(order)
    return order


async def mark_order_filled(
    session: AsyncSession,
    model: Type[OrderModel],
    order: OrderModel,
    *,
    fill_price: Decimal,
    fill_qty: Decimal,
    exchange_order_id: str | None = None,
    fee: Decimal | None = None,
    at: datetime | None = None,
) -> OrderModel:
    if fill_qty <= 0 or fill_qty > order.amount:
        raise Permanent(
            "Fill quantity must be positive and no larger than the order amount",
            details={"order_id": str(order.id), "fill_qty": str(fill_qty), "amount": str(order.amount)},
        )
    status = "filled" if fill_qty == order.amount else "partially_filled"
    return await _transition(
        session,
        model,
        order,
        allowed_from=OPEN_ORDER_STATUSES,
        values={
            "status": status,
            "filled_amount": fill_qty,
            "average_fill_price": fill_price,
            "exchange_order_id": exchange_order_id,
            "fee": fee,
            "filled_at": (at or now_utc()) if status == "filled" else None,
        },
    )


async def mark_order_rejected(
    session: AsyncSession,
    model: Type[OrderModel],
    order: OrderModel,
    *,
    error_message: str,
) -> OrderModel:
    return await _transition(
        session,
        model,
        order,
        allowed_from={"pending"},
        values={"status": "rejected", "error_message": error_message[:2000]},
    )


async def mark_order_cancelled(session: AsyncSession, model: Type[OrderModel], order: OrderModel) -> OrderModel:
    return await _transition(
        session,
        model,
        order,
        allowed_from=OPEN_ORDER_STATUSES,
        values={"status": "cancelled", "cancelled_at": now_utc()},
    )


async def list_orders(
    session: AsyncSession,
    model: Type[OrderModel],
    *,
    status: str | None = None,
    exchange: str | None = None,
    limit: int = 100,
) -> Sequence[OrderModel]:
    stmt = select(model).order_by(model.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(model.status == status)
    if exchange:
        stmt = stmt.where(model.exchange == exchange)
    return (await session.execute(stmt)).scalars().all()


async def append_transaction_log(
    session: AsyncSession,
    *,
    action_type: str,
    status: str,
    exchange_name: str | None = None,
    symbol: str | None = None,
    details: dict[str, Any] | None = None,
    error_message: str | None = None,
) -> TransactionLog:
    entry = TransactionLog(
        id=uuid.uuid4(),
        action_type=action_type,
        exchange_name=exchange_name,
        symbol=symbol,
        details=json_safe(details or {}),
        status=status,
        error_message=error_message,
        created_at=now_utc(),
    )
    session.add(entry)
    await session.flush()
    return entry


async def append_journal_entry(
    session: AsyncSession,
    *,
    exchange: str,
    symbol: str,
    side: str,
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
    pnl: Decimal,
    is_paper: bool,
    opened_at: datetime | None = None,
) -> TradingJournal:
    now = now_utc()
    entry = TradingJournal(
        id=uuid.uuid4(),
        exchange=exchange,
        symbol=symbol,
        side=side,
        entry_price=entry_price,
        exit_price=exit_price,
        quantity=quantity,
        pnl=pnl,
        status="closed",
        is_paper=is_paper,
        created_at=opened_at or now,
        closed_at=now,
    )
    session.add(entry)
    await session.flush()
    return entry


async def realized_pnl_since(session: AsyncSession, since: datetime, *, is_paper: bool = False) -> Decimal:
    rows = (
        await session.execute(
            select(TradingJournal.pnl).where(
                TradingJournal.closed_at >= since,
                TradingJournal.is_paper.is_(is_paper),
            )
        )
    ).scalars().all()
    return sum((Decimal(str(v)) for v in rows if v is not None), Decimal("0"))


async def recent_journal_entries(session: AsyncSession, *, limit: int = 10) -> Sequence[TradingJournal]:
    stmt = select(TradingJournal).order_by(TradingJournal.created_at.desc()).limit(limit)
    return (await session.execute(stmt)).scalars().all()


async def recent_balance_snapshots(session: AsyncSession, *, limit: int = 100) -> Sequence[BalanceHistory]:
    stmt = select(BalanceHistory).order_by(BalanceHistory.snapshot_time.desc()).limit(limit)
    return (await session.execute(stmt)).scalars().all()


async def append_balance_snapshot(
    session: AsyncSession,
    *,
    total_balance: Decimal,
    exchange_breakdown: dict[str, Any] | None = None,
) -> BalanceHistory:
    snapshot = BalanceHistory(
        id=uuid.uuid4(),
        total_balance=total_balance,
        exchange_breakdown=json_safe(exchange_breakdown or {}),
        snapshot_time=now_utc(),
    )
    session.add(snapshot)
    await session.flush()
    return snapshot


async def realized_losses_since(session: AsyncSession, since: datetime, *, is_paper: bool = False) -> Decimal:
    """Sum of losing journal entries closed since ``since``, as a positive amount."""
    rows = (
        await session.execute(
            select(TradingJournal.pnl).where(
                TradingJournal.closed_at >= since,
                TradingJournal.is_paper.is_(is_paper),
                TradingJournal.pnl < 0,
            )
        )
    ).scalars().all()
    return sum((-Decimal(str(v)) for v in rows if v is not None), Decimal("0"))

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import InvariantViolation, NotFound
from hft_fleet.common.models import PaperPosition, Position
from hft_fleet.store.common import now_utc
from hft_fleet.store.orders import append_journal_entry

PositionModel = TypeVar("PositionModel", Position, PaperPosition)

_PRICE_QUANT = Decimal("0.0000000001")


@dataclass
class FillOutcome:
    position: Position | PaperPosition | None
    realized_pnl: Decimal = Decimal("0")
    closed: list[Position | PaperPosition] = field(default_factory=list)


def position_side_for(order_side: str) -> str:
    return "long" if order_side == "buy" else "short"


def opposite_side(position_side: str) -> str:
    return "short" if position_side == "long" else "long"


def pnl_for(position_side: str, entry_price: Decimal, exit_price: Decimal, qty: Decimal) -> Decimal:
    if position_side == "long":
        return (exit_price - entry_price) * qty
    return (entry_price - exit_price) * qty


async def get_open_position(
    session: AsyncSession,
    model: Type[PositionModel],
    *,
    exchange: str,
    symbol: str,
    side: str,
) -> PositionModel | None:
    return await session.scalar(
        select(model)
        .where(
            model.exchange == exchange,
            model.symbol == symbol,
            model.side == side,
            model.status == "open",
        )
        .limit(1)
    )


async def get_position(session: AsyncSession, model: Type[PositionModel], position_id: str | uuid.UUID) -> PositionModel:
    try:
        parsed = position_id if isinstance(position_id, uuid.UUID) else uuid.UUID(str(position_id))
    except ValueError as exc:
        raise NotFound(f"Position not found: {position_id}") from exc
    position = await session.get(model, parsed)
    if position is None:
        raise NotFound(f"Position not found: {position_id}")
    return position


async def list_positions(
    session: AsyncSession,
    model: Type[PositionModel],
    *,
    status: str | None = "open",
    limit: int = 100,
) -> Sequence[PositionModel]:
    stmt = select(model).order_by(model.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(model.status == status)
    return (await session.execute(stmt)).scalars().all()


async def _cas_update(session: AsyncSession, model: Type[PositionModel], position: PositionModel, **values) -> None:
    result = await session.execute(
        update(model)
        .where(model.id == position.id, model.version == position.version)
        .values(**values, version=model.version + 1, updated_at=now_utc())
    )
    if result.rowcount != 1:
        raise InvariantViolation(
            "Position changed concurrently",
            details={"position_id": str(position.id), "expected_version": position.version},
        )
    await session.flush()
    await session.refresh(position)


async def set_position_status(
    session: AsyncSession,
    model: Type[PositionModel],
    position: PositionModel,
    status: str,
) -> PositionModel:
    values: dict = {"status": status}
    if status == "closed":
        values["closed_at"] = now_utc()
    await _cas_update(session, model, position, **values)
    return position


async def _reduce(
    session: AsyncSession,
    model: Type[PositionModel],
    position: PositionModel,
    *,
    qty: Decimal,
    price: Decimal,
    is_paper: bool,
) -> Decimal:
    pnl = pnl_for(position.side, position.entry_price, price, qty)
    remaining = position.size - qty
    values: dict = {
        "size": remaining,
        "current_price": price,
        "realized_pnl": (position.realized_pnl or Decimal("0")) + pnl,
    }
    if remaining <= 0:
        values["size"] = Decimal("0")
        values["status"] = "closed"
        values["closed_at"] = now_utc()
    await append_journal_entry(
        session,
        exchange=position.exchange,
        symbol=position.symbol,
        side=position.side,
        entry_price=position.entry_price,
        exit_price=price,
        quantity=qty,
        pnl=pnl,
        is_paper=is_paper,
        opened_at=position.created_at,
    )
    await _cas_update(session, model, position, **values)
    return pnl


async def apply_fill(
    session: AsyncSession,
    model: Type[PositionModel],
    *,
    exchange: str,
    symbol: str,
    order_side: str,
    qty: Decimal,
    price: Decimal,
    is_paper: bool = False,
) -> FillOutcome:
    """
    Net a fill against the open positions for (exchange, symbol).

    The fill first reduces an open position on the opposite side (realising
    PnL and journaling the reduction); any remainder opens or extends the
    position on the fill's own side with a size-weighted entry price.
    """
    side = position_side_for(order_side)
    outcome = FillOutcome(position=None)
    remaining = qty

    opposite = await get_open_position(session, model, exchange=exchange, symbol=symbol, side=opposite_side(side))
    if opposite is not None and opposite.size > 0:
        reduce_qty = min(remaining, opposite.size)
        outcome.realized_pnl += await _reduce(session, model, opposite, qty=reduce_qty, price=price, is_paper=is_paper)
        remaining -= reduce_qty
        if opposite.status == "closed":
            outcome.closed.append(opposite)
        outcome.position = opposite

    if remaining <= 0:
        return outcome

    existing = await get_open_position(session, model, exchange=exchange, symbol=symbol, side=side)
    if existing is not None:
        new_size = existing.size + remaining
        weighted = ((existing.entry_price * existing.size) + (price * remaining)) / new_size
        await _cas_update(
            session,
            model,
            existing,
            size=new_size,
            entry_price=weighted.quantize(_PRICE_QUANT),
            current_price=price,
        )
        outcome.position = existing
        return outcome

    now = now_utc()
    position = model(
        id=uuid.uuid4(),
        exchange=exchange,
        symbol=symbol,
        side=side,
        size=remaining,
        entry_price=price,
        current_price=price,
        realized_pnl=Decimal("0"),
        status="open",
        created_at=now,
        updated_at=now,
        version=1,
    )
    session.add(position)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise InvariantViolation(
            "Another open position for this exchange/symbol/side was created concurrently",
            details={"exchange": exchange, "symbol": symbol, "side": side},
        ) from exc
    outcome.position = position
    return outcome


async def net_open_size(session: AsyncSession, model: Type[PositionModel], *, exchange: str, symbol: str) -> Decimal:
    rows = (
        await session.execute(
            select(model.side, model.size).where(
                model.exchange == exchange,
                model.symbol == symbol,
                model.status == "open",
            )
        )
    ).all()
    total = Decimal("0")
    for side, size in rows:
        total += size if side == "long" else -size
    return total


async def realize_close(
    session: AsyncSession,
    model: Type[PositionModel],
    position: PositionModel,
    *,
    price: Decimal,
    is_paper: bool = False,
) -> Decimal:
    """Close the whole position at ``price``; used by explicit close requests."""
    if position.status == "closed":
        raise InvariantViolation(f"Position {position.id} is already closed")
    return await _reduce(session, model, position, qty=position.size, price=price, is_paper=is_paper)

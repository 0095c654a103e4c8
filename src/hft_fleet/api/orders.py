from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.api.deps import get_live_router, get_paper
from hft_fleet.api.envelope import bounded_limit, guarded
from hft_fleet.common.database import get_db_session
from hft_fleet.services.orders import OrderRequest, OrderRouter, PaperOrderRouter

router = APIRouter(tags=["orders"])
paper_router = APIRouter(prefix="/paper", tags=["paper"])


class PlaceOrderBody(BaseModel):
    exchange: str
    symbol: str
    side: str
    amount: Decimal
    order_type: str = "market"
    price: Optional[Decimal] = None
    max_slippage: Optional[Decimal] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=64)

    def to_request(self) -> OrderRequest:
        return OrderRequest.build(
            exchange=self.exchange,
            symbol=self.symbol,
            side=self.side,
            amount=self.amount,
            order_type=self.order_type,
            price=self.price,
            max_slippage=self.max_slippage,
            idempotency_key=self.idempotency_key,
        )


async def _place(order_router: OrderRouter | PaperOrderRouter, session: AsyncSession, body: PlaceOrderBody) -> Dict[str, Any]:
    return await order_router.place_order(session, body.to_request())


async def _orders(order_router, session: AsyncSession, status: Optional[str], exchange: Optional[str], limit: int) -> Dict[str, Any]:
    rows = await order_router.list_orders(session, status=status, exchange=exchange, limit=bounded_limit(limit))
    return {"success": True, "orders": rows}


async def _positions(order_router, session: AsyncSession, status: Optional[str], limit: int) -> Dict[str, Any]:
    rows = await order_router.list_positions(session, status=status, limit=bounded_limit(limit))
    return {"success": True, "positions": rows}


@router.post("/orders")
async def place_order(
    body: PlaceOrderBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
    order_router: OrderRouter = Depends(get_live_router),
) -> dict:
    return await guarded(session, _place(order_router, session, body))


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    session: AsyncSession = Depends(get_db_session),
    order_router: OrderRouter = Depends(get_live_router),
) -> dict:
    return await guarded(session, order_router.cancel_order(session, order_id))


@router.get("/orders")
async def list_orders(
    status: Optional[str] = Query(default=None),
    exchange: Optional[str] = Query(default=None),
    limit: int = Query(50, description="Number of orders to return (max 100)"),
    session: AsyncSession = Depends(get_db_session),
    order_router: OrderRouter = Depends(get_live_router),
) -> dict:
    return await guarded(session, _orders(order_router, session, status, exchange, limit))


@router.get("/positions")
async def list_positions(
    status: Optional[str] = Query(default="open"),
    limit: int = Query(50, description="Number of positions to return (max 100)"),
    session: AsyncSession = Depends(get_db_session),
    order_router: OrderRouter = Depends(get_live_router),
) -> dict:
    return await guarded(session, _positions(order_router, session, status, limit))


@router.post("/positions/{position_id}/close")
async def close_position(
    position_id: str,
    session: AsyncSession = Depends(get_db_session),
    order_router: OrderRouter = Depends(get_live_router),
) -> dict:
    return await guarded(session, order_router.close_position(session, position_id))


@paper_router.post("/orders")
async def place_paper_order(
    body: PlaceOrderBody = Body(...),
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    return await guarded(session, _place(paper, session, body))


@paper_router.post("/orders/{order_id}/cancel")
async def cancel_paper_order(
    order_id: str,
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    return await guarded(session, paper.cancel_order(session, order_id))


@paper_router.get("/orders")
async def list_paper_orders(
    status: Optional[str] = Query(default=None),
    exchange: Optional[str] = Query(default=None),
    limit: int = Query(50, description="Number of orders to return (max 100)"),
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    return await guarded(session, _orders(paper, session, status, exchange, limit))


@paper_router.get("/positions")
async def list_paper_positions(
    status: Optional[str] = Query(default="open"),
    limit: int = Query(50, description="Number of positions to return (max 100)"),
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    return await guarded(session, _positions(paper, session, status, limit))


@paper_router.post("/positions/{position_id}/close")
async def close_paper_position(
    position_id: str,
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    return await guarded(session, paper.close_paper_position(session, position_id))


@paper_router.get("/balance")
async def paper_balance(
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    async def _balance() -> dict:
        return {"success": True, **await paper.get_balance(session)}

    return await guarded(session, _balance())


@paper_router.post("/reset")
async def reset_paper(
    session: AsyncSession = Depends(get_db_session),
    paper: PaperOrderRouter = Depends(get_paper),
) -> dict:
    return await guarded(session, paper.reset_paper_account(session))

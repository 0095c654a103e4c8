from __future__ import annotations

import logging
from typing import Any, Awaitable

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import FleetError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def bounded_limit(value: int | None, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    try:
        limit = int(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    if limit < 1:
        return default
    return min(limit, maximum)


def error_envelope(exc: FleetError) -> dict[str, Any]:
    envelope = exc.to_envelope()
    if exc.retry_after_seconds is not None:
        envelope["retry_after_seconds"] = exc.retry_after_seconds
    return envelope


async def guarded(session: AsyncSession, call: Awaitable[Any]) -> Any:
    """
    Await a service call and translate failures for the operator API.

    A ``FleetError`` becomes the ``{"success": false, ...}`` envelope with
    HTTP 200; anything else rolls the session back and surfaces as a 500.
    """
    try:
        return await call
    except FleetError as exc:
        await session.rollback()
        logger.info(
            "Operator call failed",
            extra={"error_kind": exc.error_kind, "error_message": exc.message},
        )
        return error_envelope(exc)
    except HTTPException:
        raise
    except Exception as exc:
        await session.rollback()
        logger.exception("Unexpected error in operator call")
        raise HTTPException(status_code=500, detail="Internal server error") from exc

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from hft_fleet.common.errors import FleetError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0


def backoff_seconds(attempt: int, *, retry_after_seconds: int | None = None, base: float = BASE_DELAY_SECONDS) -> float:
    """Delay before retry number ``attempt`` (0-based): 1s, 2s, 4s unless Retry-After is larger."""
    delay = base * (2 ** max(attempt, 0))
    if retry_after_seconds is not None and retry_after_seconds > delay:
        return float(retry_after_seconds)
    return delay


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    last_exc: FleetError | None = None
    for attempt in range(max(attempts, 1)):
        try:
            return await operation()
        except FleetError as exc:
            if not exc.retriable:
                raise
            last_exc = exc
            if attempt + 1 >= attempts:
                break
            delay = backoff_seconds(attempt, retry_after_seconds=exc.retry_after_seconds, base=base_delay)
            logger.warning(
                "Retrying %s after %s",
                label,
                exc.error_kind,
                extra={"attempt": attempt + 1, "delay_seconds": delay, "error": str(exc)},
            )
            await sleep(delay)
    assert last_exc is not None
    raise last_exc

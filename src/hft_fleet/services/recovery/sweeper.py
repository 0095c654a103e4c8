from __future__ import annotations

import logging
import time
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.store.common import as_utc, now_utc
from hft_fleet.store.rate_limits import (
    clear_expired_cooldowns,
    list_enabled_resources,
    reset_daily_usage,
    reset_minute_usage,
)

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60.0
DEFAULT_DAILY_LIMIT = 1000
AVAILABLE_FRACTION = 0.95


def utc_midnight(now: datetime) -> datetime:
    return datetime.combine(now.astimezone(timezone.utc).date(), dt_time.min, tzinfo=timezone.utc)


class RecoverySweeper:
    """Clears expired cooldowns and resets usage counters on ``rate_limited_resources``."""

    def __init__(
        self,
        *,
        min_interval_seconds: float = MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = now_utc,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._now = now
        self._last_run: Optional[float] = None
        self.last_result: Optional[Dict[str, Any]] = None

    def seconds_until_allowed(self) -> float:
        if self._last_run is None:
            return 0.0
        return max(0.0, self.min_interval_seconds - (self._clock() - self._last_run))

    async def sweep(self, session: AsyncSession) -> Dict[str, Any]:
        wait = self.seconds_until_allowed()
        if wait > 0:
            return {
                "success": True,
                "skipped": True,
                "retry_after_seconds": round(wait, 1),
                "last_result": self.last_result,
            }
        previous = self._last_run
        self._last_run = self._clock()
        try:
            return await self._sweep_once(session)
        except Exception:
            # only a completed sweep counts against the interval
            self._last_run = previous
            raise

    async def _sweep_once(self, session: AsyncSession) -> Dict[str, Any]:
        now = self._now()
        details: List[str] = []
        cleared = await clear_expired_cooldowns(session, now)
        details.extend(f"Cleared expired cooldown for {name}" for name in cleared)
        daily = await reset_daily_usage(session, now, utc_midnight(now))
        details.extend(f"Reset daily usage for {name} (was {usage})" for name, usage in daily)
        minute = await reset_minute_usage(session, now, now - timedelta(minutes=1))
        details.extend(f"Reset minute usage for {name}" for name in minute)
        await session.commit()

        provider_status = []
        for row in await list_enabled_resources(session):
            daily_limit = row.rate_limit_daily or DEFAULT_DAILY_LIMIT
            cooldown_until = as_utc(row.cooldown_until)
            provider_status.append(
                {
                    "name": row.name,
                    "daily_usage": row.daily_usage,
                    "daily_limit": row.rate_limit_daily,
                    "available": row.daily_usage < daily_limit * AVAILABLE_FRACTION,
                    "in_cooldown": bool(cooldown_until and cooldown_until > now),
                    "errors": row.error_count,
                }
            )

        result = {
            "success": True,
            "timestamp": now.isoformat(),
            "cooldowns_cleared": len(cleared),
            "daily_resets": len(daily),
            "minute_resets": len(minute),
            "recovery_actions": len(details),
            "details": details,
            "provider_status": provider_status,
        }
        self.last_result = result
        logger.info("Rate-limit recovery sweep complete", extra={"recovery_actions": len(details)})
        return result


_sweeper: RecoverySweeper | None = None


def get_recovery_sweeper() -> RecoverySweeper:
    global _sweeper
    if _sweeper is None:
        _sweeper = RecoverySweeper()
    return _sweeper

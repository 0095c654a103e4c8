from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from hft_fleet.common.env import env_int
from hft_fleet.common.errors import Permanent, QueueFull

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIORITY_RANK = {"critical": 0, "high": 1, "normal": 2, "low": 3}
SHEDDABLE_PRIORITIES = {"normal", "low"}

THROTTLE_ENTER_PCT = 85.0
WS_ONLY_ENTER_PCT = 95.0
RECOVER_BELOW_PCT = 75.0

MINUTE_SECONDS = 60.0
SECOND_SECONDS = 1.0
DRAIN_INTERVAL_SECONDS = 0.1
DEFAULT_QUEUE_SOFT_CAP = 500


@dataclass(frozen=True)
class ExchangeLimits:
    hard_limit_per_minute: int
    safety_margin: float = 0.8
    burst_reserve: float = 0.2

    @property
    def effective_limit(self) -> int:
        return int(math.floor(self.hard_limit_per_minute * self.safety_margin))

    @property
    def effective_limit_per_second(self) -> int:
        # below 60/min the per-second window still lets one request through
        return max(1, self.effective_limit // 60)


DEFAULT_LIMITS: Dict[str, ExchangeLimits] = {
    "binance": ExchangeLimits(hard_limit_per_minute=1200),
    "okx": ExchangeLimits(hard_limit_per_minute=3000),
}
FALLBACK_LIMITS = ExchangeLimits(hard_limit_per_minute=600)


@dataclass(order=True)
class _QueuedRequest:
    rank: int
    seq: int
    priority: str = field(compare=False)
    operation: Callable[[], Awaitable[Any]] = field(compare=False, repr=False)
    future: "asyncio.Future[Any]" = field(compare=False, repr=False)
    enqueued_at: float = field(compare=False, default=0.0)


class ExchangeLimiter:
    """
    Admission state for one exchange.

    Admissions are kept as timestamps so the per-second and per-minute
    counts are true sliding windows. ``ws_only`` is left only after a
    minute rollover once usage has fallen below the recovery threshold.
    """

    def __init__(self, exchange: str, limits: ExchangeLimits, clock: Callable[[], float]) -> None:
        self.exchange = exchange
        self.limits = limits
        self._clock = clock
        now = clock()
        self._admitted: Deque[float] = deque()
        self.last_reset_second = now
        self.last_reset_minute = now
        self.throttled = False
        self.ws_only = False
        self._rolled_since_ws_only = False
        self.queue: List[_QueuedRequest] = []

    def roll(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        while self._admitted and now - self._admitted[0] >= MINUTE_SECONDS:
            self._admitted.popleft()
        if now - self.last_reset_second >= SECOND_SECONDS:
            self.last_reset_second = now
        if now - self.last_reset_minute >= MINUTE_SECONDS:
            elapsed = math.floor((now - self.last_reset_minute) / MINUTE_SECONDS)
            self.last_reset_minute += elapsed * MINUTE_SECONDS
            if self.ws_only:
                self._rolled_since_ws_only = True
        usage = self.usage_percent(now)
        if self.ws_only and self._rolled_since_ws_only and usage < RECOVER_BELOW_PCT:
            logger.info("Leaving websocket-only mode", extra={"exchange": self.exchange, "usage_percent": usage})
            self.ws_only = False
            self._rolled_since_ws_only = False
        if usage < RECOVER_BELOW_PCT:
            self.throttled = False

    def requests_this_minute(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        return sum(1 for ts in self._admitted if now - ts < MINUTE_SECONDS)

    def requests_this_second(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        count = 0
        for ts in reversed(self._admitted):
            if now - ts >= SECOND_SECONDS:
                break
            count += 1
        return count

    def usage_percent(self, now: Optional[float] = None) -> float:
        limit = self.limits.effective_limit
        if limit <= 0:
            return 100.0
        return self.requests_this_minute(now) / limit * 100.0

    def can_admit(self, priority: str, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        minute = self.requests_this_minute(now)
        if priority == "critical":
            return minute < self.limits.hard_limit_per_minute
        if self.ws_only:
            return False
        if self.requests_this_second(now) >= self.limits.effective_limit_per_second:
            return False
        return minute < self.limits.effective_limit

    def record(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        self._admitted.append(now)
        usage = self.usage_percent(now)
        if usage >= WS_ONLY_ENTER_PCT:
            if not self.ws_only:
                logger.warning(
                    "Entering websocket-only mode",
                    extra={"exchange": self.exchange, "usage_percent": round(usage, 2)},
                )
            self.ws_only = True
            self._rolled_since_ws_only = False
            self.throttled = True
        elif usage >= THROTTLE_ENTER_PCT:
            self.throttled = True
        elif usage < RECOVER_BELOW_PCT:
            self.throttled = False

    @property
    def state(self) -> str:
        if self.ws_only:
            return "ws_only"
        if self.throttled:
            return "throttled"
        return "normal"

    def snapshot(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self._clock() if now is None else now
        minute = self.requests_this_minute(now)
        limit = self.limits.effective_limit
        until_reset = MINUTE_SECONDS - (now - self.last_reset_minute)
        return {
            "exchange": self.exchange,
            "requests_this_minute": minute,
            "requests_this_second": self.requests_this_second(now),
            "limit": limit,
            "hard_limit": self.limits.hard_limit_per_minute,
            "usage_percent": round(min(100.0, self.usage_percent(now)), 2),
            "remaining": max(0, limit - minute),
            "ms_until_reset": max(0, int(until_reset * 1000)),
            "throttled": self.throttled,
            "ws_only": self.ws_only,
            "state": self.state,
            "queue_length": len(self.queue),
        }


class RateLimitCoordinator:
    """
    Per-exchange admission control with a priority queue.

    ``submit`` runs the operation immediately when the exchange has room,
    otherwise parks it in the exchange queue; a single drainer admits queued
    work in priority order every 100 ms.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, ExchangeLimits]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        queue_soft_cap: int = DEFAULT_QUEUE_SOFT_CAP,
        drain_interval_seconds: float = DRAIN_INTERVAL_SECONDS,
        auto_drain: bool = True,
    ) -> None:
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._clock = clock
        self._sleep = sleep
        self.queue_soft_cap = max(1, queue_soft_cap)
        self.drain_interval_seconds = drain_interval_seconds
        self.auto_drain = auto_drain
        self._limiters: Dict[str, ExchangeLimiter] = {}
        self._seq = itertools.count()
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._inflight: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_env(cls) -> "RateLimitCoordinator":
        return cls(queue_soft_cap=env_int("RATE_LIMIT_QUEUE_SOFT_CAP", DEFAULT_QUEUE_SOFT_CAP, minimum=1))

    def limiter(self, exchange: str) -> ExchangeLimiter:
        key = exchange.strip().lower()
        limiter = self._limiters.get(key)
        if limiter is None:
            limits = self._limits.get(key, FALLBACK_LIMITS)
            limiter = ExchangeLimiter(key, limits, self._clock)
            self._limiters[key] = limiter
        return limiter

    def configure(self, exchange: str, limits: ExchangeLimits) -> None:
        key = exchange.strip().lower()
        self._limits[key] = limits
        existing = self._limiters.get(key)
        if existing is not None:
            existing.limits = limits

    def try_acquire(self, exchange: str, priority: str = "normal") -> bool:
        """Record and admit a request if there is room right now; never queues."""
        self._check_priority(priority)
        limiter = self.limiter(exchange)
        limiter.roll()
        if limiter.queue and PRIORITY_RANK[priority] >= limiter.queue[0].rank:
            return False
        if not limiter.can_admit(priority):
            return False
        limiter.record()
        return True

    async def submit(
        self,
        exchange: str,
        operation: Callable[[], Awaitable[T]],
        *,
        priority: str = "normal",
    ) -> T:
        if self.try_acquire(exchange, priority):
            return await operation()
        limiter = self.limiter(exchange)
        if priority in SHEDDABLE_PRIORITIES and len(limiter.queue) >= self.queue_soft_cap:
            raise QueueFull(
                f"Rate-limit queue for {limiter.exchange} is full",
                details={"exchange": limiter.exchange, "queue_length": len(limiter.queue), "priority": priority},
            )
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        heapq.heappush(
            limiter.queue,
            _QueuedRequest(
                rank=PRIORITY_RANK[priority],
                seq=next(self._seq),
                priority=priority,
                operation=operation,
                future=future,
                enqueued_at=self._clock(),
            ),
        )
        logger.debug(
            "Queued rate-limited request",
            extra={"exchange": limiter.exchange, "priority": priority, "queue_length": len(limiter.queue)},
        )
        if self.auto_drain:
            self.start()
        return await future

    async def _execute(self, item: _QueuedRequest) -> None:
        if item.future.cancelled():
            return
        try:
            result = await item.operation()
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
            return
        if not item.future.done():
            item.future.set_result(result)

    async def drain_once(self) -> int:
        """Admit as many queued heads as the limits allow; returns how many were started."""
        started = 0
        for limiter in list(self._limiters.values()):
            limiter.roll()
            while limiter.queue:
                head = limiter.queue[0]
                if head.future.cancelled():
                    heapq.heappop(limiter.queue)
                    continue
                if not limiter.can_admit(head.priority):
                    break
                heapq.heappop(limiter.queue)
                limiter.record()
                task = asyncio.create_task(self._execute(head))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                started += 1
        return started

    def queued(self) -> int:
        return sum(len(limiter.queue) for limiter in self._limiters.values())

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()

        async def _run() -> None:
            assert self._stop_event is not None
            while not self._stop_event.is_set():
                try:
                    await self.drain_once()
                except Exception:
                    logger.exception("Rate-limit drainer tick failed")
                await self._sleep(self.drain_interval_seconds)

        self._task = asyncio.create_task(_run(), name="rate-limit-drainer")

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        for limiter in self._limiters.values():
            while limiter.queue:
                item = heapq.heappop(limiter.queue)
                if not item.future.done():
                    item.future.cancel()

    def snapshot(self, exchange: str) -> Dict[str, Any]:
        limiter = self.limiter(exchange)
        limiter.roll()
        return limiter.snapshot()

    def snapshots(self) -> List[Dict[str, Any]]:
        return [self.snapshot(name) for name in sorted(set(self._limits) | set(self._limiters))]

    @staticmethod
    def _check_priority(priority: str) -> None:
        if priority not in PRIORITY_RANK:
            raise Permanent(f"Unknown priority: {priority}", details={"allowed": sorted(PRIORITY_RANK)})


_coordinator: RateLimitCoordinator | None = None


def get_rate_limit_coordinator() -> RateLimitCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = RateLimitCoordinator.from_env()
    return _coordinator

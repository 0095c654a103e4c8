import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hft_fleet.common.database import AsyncSessionLocal
from hft_fleet.common.env import env_int
from hft_fleet.services.failover.controller import FailoverController

logger = logging.getLogger(__name__)


class FailoverMonitorRunner:
    _instance: Optional["FailoverMonitorRunner"] = None

    def __init__(self, controller: Optional[FailoverController] = None) -> None:
        self._controller = controller
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.interval_seconds = env_int("FAILOVER_HEALTH_INTERVAL_SECONDS", 15, minimum=1)
        self.started_at: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None
        self.tick_count = 0

    @classmethod
    def instance(cls) -> "FailoverMonitorRunner":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def controller(self) -> FailoverController:
        if self._controller is None:
            self._controller = FailoverController.from_env()
        return self._controller

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Dict[str, Any]:
        async with AsyncSessionLocal() as session:
            result = await self.controller.health_tick(session)
        self.tick_count += 1
        self.last_tick_at = datetime.now(timezone.utc)
        self.last_result = {
            "checked": result.get("checked"),
            "failover": result.get("failover"),
        }
        return result

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Failover monitor already running")
        self._stop_event = asyncio.Event()
        self.started_at = datetime.now(timezone.utc)
        self.last_error = None

        async def _run() -> None:
            assert self._stop_event is not None
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                    self.last_error = None
                except Exception as exc:
                    self.last_error = str(exc)
                    logger.exception("Failover health tick failed")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass

        self._task = asyncio.create_task(_run(), name="failover-monitor")
        logger.info("Failover monitor started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if not self.is_running:
            return
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def status(self) -> Dict[str, object]:
        return {
            "running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "interval_seconds": self.interval_seconds,
            "tick_count": self.tick_count,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }

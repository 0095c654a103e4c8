import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from hft_fleet.common.database import AsyncSessionLocal
from hft_fleet.common.env import env_int
from hft_fleet.services.recovery.sweeper import RecoverySweeper, get_recovery_sweeper

logger = logging.getLogger(__name__)


class RecoveryRunner:
    _instance: Optional["RecoveryRunner"] = None

    def __init__(self, sweeper: Optional[RecoverySweeper] = None) -> None:
        self.sweeper = sweeper or get_recovery_sweeper()
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.interval_seconds = env_int("RATE_LIMIT_RECOVERY_INTERVAL_SECONDS", 300, minimum=60)
        self.started_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @classmethod
    def instance(cls) -> "RecoveryRunner":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Recovery runner already running")
        self._stop_event = asyncio.Event()
        self.started_at = datetime.now(timezone.utc)

        async def _run() -> None:
            assert self._stop_event is not None
            while not self._stop_event.is_set():
                try:
                    async with AsyncSessionLocal() as session:
                        await self.sweeper.sweep(session)
                    self.last_run_at = datetime.now(timezone.utc)
                    self.last_error = None
                except Exception as exc:
                    self.last_error = str(exc)
                    logger.exception("Rate-limit recovery sweep failed")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass

        self._task = asyncio.create_task(_run(), name="rate-limit-recovery")

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
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "interval_seconds": self.interval_seconds,
            "last_error": self.last_error,
            "last_result": self.sweeper.last_result,
        }

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import Machine
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.store.common import now_utc
from hft_fleet.store.fleet import active_deployment, get_trading_config, list_connected_exchanges
from hft_fleet.store.orders import recent_journal_entries
from hft_fleet.store.signals import latest_balance, recent_signals
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)

SIGNAL_WINDOW = timedelta(minutes=5)
SIGNAL_MIN_CONFIDENCE = 70
RECENT_TRADES = 10

_last_timestamp: Optional[datetime] = None


def _next_timestamp() -> datetime:
    """Wall clock, nudged forward so consecutive documents never share or rewind a timestamp."""
    global _last_timestamp
    stamp = now_utc()
    if _last_timestamp is not None and stamp <= _last_timestamp:
        stamp = _last_timestamp + timedelta(microseconds=1)
    _last_timestamp = stamp
    return stamp


class DashboardAggregator:
    """
    Read-only composite of the state an operator dashboard renders.

    Each section is read independently; a failing read yields
    ``{"error": ...}`` for that section instead of failing the document.
    """

    def __init__(self, control: AgentControlClient) -> None:
        self.control = control

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "DashboardAggregator":
        return cls(AgentControlClient.from_env(transport))

    async def _section(
        self,
        session: AsyncSession,
        name: str,
        reader: Callable[[AsyncSession], Awaitable[Any]],
    ) -> Any:
        try:
            return await reader(session)
        except Exception as exc:
            logger.warning("Dashboard section read failed", extra={"section": name, "error": str(exc)})
            await session.rollback()
            return {"error": str(exc)}

    async def _config(self, session: AsyncSession) -> Dict[str, Any]:
        config = await get_trading_config(session)
        return json_safe(
            {
                "bot_status": config.bot_status,
                "trading_enabled": config.trading_enabled,
                "trading_mode": config.trading_mode,
                "test_mode": config.test_mode,
                "global_kill_switch_enabled": config.global_kill_switch_enabled,
                "max_position_size": config.max_position_size,
                "version": config.version,
                "updated_at": config.updated_at,
            }
        )

    async def _deployment(self, session: AsyncSession) -> Optional[Dict[str, Any]]:
        deployment = await active_deployment(session)
        if deployment is None:
            return None
        machine = await session.get(Machine, deployment.machine_id)
        return json_safe(
            {
                "id": deployment.id,
                "server_id": deployment.server_id,
                "bot_status": deployment.bot_status,
                "updated_at": deployment.updated_at,
                "machine_id": deployment.machine_id,
                "provider": machine.provider if machine else None,
                "ip_address": machine.ip_address if machine else None,
                "machine_status": machine.status if machine else None,
            }
        )

    async def _exchanges(self, session: AsyncSession) -> list:
        return [
            json_safe(
                {
                    "exchange_name": row.exchange_name,
                    "is_connected": row.is_connected,
                    "balance_usdt": row.balance_usdt,
                    "last_ping_ms": row.last_ping_ms,
                }
            )
            for row in await list_connected_exchanges(session)
        ]

    async def _signals(self, session: AsyncSession) -> list:
        rows = await recent_signals(session, since=now_utc() - SIGNAL_WINDOW, min_confidence=SIGNAL_MIN_CONFIDENCE)
        return [
            json_safe(
                {
                    "symbol": row.symbol,
                    "exchange_name": row.exchange_name,
                    "sentiment": row.sentiment,
                    "confidence": row.confidence,
                    "summary": row.summary,
                    "current_price": row.current_price,
                    "created_at": row.created_at,
                }
            )
            for row in rows
        ]

    async def _balance(self, session: AsyncSession) -> Optional[Dict[str, Any]]:
        row = await latest_balance(session)
        if row is None:
            return None
        return json_safe(
            {"total_balance": row.total_balance, "exchange_breakdown": row.exchange_breakdown, "snapshot_time": row.snapshot_time}
        )

    async def _trades(self, session: AsyncSession) -> list:
        return [
            json_safe(
                {
                    "symbol": row.symbol,
                    "exchange": row.exchange,
                    "side": row.side,
                    "entry_price": row.entry_price,
                    "exit_price": row.exit_price,
                    "quantity": row.quantity,
                    "pnl": row.pnl,
                    "is_paper": row.is_paper,
                    "closed_at": row.closed_at,
                }
            )
            for row in await recent_journal_entries(session, limit=RECENT_TRADES)
        ]

    async def _vps_health(self, deployment: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(deployment, dict) or not deployment.get("ip_address"):
            return None
        check = await self.control.health(deployment["ip_address"])
        if not check.ok:
            return {"reachable": False, "error": check.error}
        return {"reachable": True, "latency_ms": check.latency_ms, "health": check.data}

    async def get_state(self, session: AsyncSession, *, include_vps_health: bool = True) -> Dict[str, Any]:
        config = await self._section(session, "config", self._config)
        deployment = await self._section(session, "deployment", self._deployment)
        exchanges = await self._section(session, "exchanges", self._exchanges)
        signals = await self._section(session, "signals", self._signals)
        balance = await self._section(session, "balance", self._balance)
        trades = await self._section(session, "recent_trades", self._trades)

        bot: Dict[str, Any]
        if "error" in config:
            bot = {"error": config["error"]}
        else:
            bot = {
                "status": config["bot_status"],
                "trading_enabled": config["trading_enabled"],
                "mode": "paper" if config["test_mode"] else "live",
                "kill_switch": config["global_kill_switch_enabled"],
                "max_position_size": config["max_position_size"],
            }
        state: Dict[str, Any] = {
            "config": config,
            "deployment": deployment,
            "exchanges": exchanges,
            "signals": signals,
            "balance": balance,
            "recent_trades": trades,
            "bot": bot,
        }
        if include_vps_health:
            state["vps_health"] = await self._vps_health(deployment)
        state["timestamp"] = _next_timestamp().isoformat()
        return state

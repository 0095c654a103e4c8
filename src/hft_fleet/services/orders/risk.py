from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, time as dt_time, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.env import env_int
from hft_fleet.common.errors import Permanent, RiskReject
from hft_fleet.store.common import now_utc
from hft_fleet.store.fleet import get_trading_config
from hft_fleet.store.orders import realized_losses_since, recent_balance_snapshots
from hft_fleet.store.paper import recent_paper_snapshots

logger = logging.getLogger(__name__)

DEFAULT_MAX_POSITION_SIZE = Decimal("10000")
DEFAULT_DRAWDOWN_PCT = Decimal("10")
DEFAULT_DAILY_LOSS_PCT = Decimal("5")
DEFAULT_MAX_SLIPPAGE_PCT = Decimal("0.5")
DEFAULT_MIN_BALANCE = Decimal("100")

DAILY_LOSS_WARN_FRACTION = Decimal("0.8")
DRAWDOWN_WARN_FRACTION = Decimal("0.7")
BALANCE_USAGE_WARN_FRACTION = Decimal("0.95")
DRAWDOWN_WINDOW = 100

REASONS = {
    "KILL_SWITCH": "KILL_SWITCH",
    "MAX_POSITION_SIZE": "MAX_POSITION_SIZE",
    "MAX_DAILY_LOSS": "MAX_DAILY_LOSS",
    "MAX_DRAWDOWN": "MAX_DRAWDOWN",
    "MIN_BALANCE": "MIN_BALANCE",
    "MAX_SLIPPAGE": "MAX_SLIPPAGE",
}

KILL_SWITCH_MESSAGE = "Global kill switch is enabled. Trading is suspended."


@dataclass(frozen=True)
class RiskLimits:
    max_position_size: Decimal
    max_daily_loss: Decimal
    max_drawdown_pct: Decimal
    max_slippage_pct: Decimal
    min_balance: Decimal

    def as_dict(self) -> Dict[str, float]:
        return {key: float(value) for key, value in asdict(self).items()}


@dataclass
class RiskDecision:
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), dt_time.min, tzinfo=timezone.utc)


class RiskManager:
    """Pre-trade checks against the configured limits; limits are cached for a minute."""

    def __init__(self, *, cache_seconds: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._cached: Optional[RiskLimits] = None
        self._cache_expiry = 0.0

    @classmethod
    def from_env(cls) -> "RiskManager":
        return cls(cache_seconds=env_int("RISK_LIMITS_CACHE_SECONDS", 60, minimum=0))

    def invalidate(self) -> None:
        self._cached = None
        self._cache_expiry = 0.0

    async def get_limits(self, session: AsyncSession) -> RiskLimits:
        if self._cached is not None and self._clock() < self._cache_expiry:
            return self._cached
        config = await get_trading_config(session)
        drawdown = config.max_drawdown_pct if config.max_drawdown_pct is not None else DEFAULT_DRAWDOWN_PCT
        daily_loss = config.max_daily_loss
        if daily_loss is None:
            # a bare percentage is read as dollars per percent point
            daily_loss = (config.max_drawdown_pct or DEFAULT_DAILY_LOSS_PCT) * 100
        limits = RiskLimits(
            max_position_size=config.max_position_size or DEFAULT_MAX_POSITION_SIZE,
            max_daily_loss=Decimal(daily_loss),
            max_drawdown_pct=Decimal(drawdown),
            max_slippage_pct=config.max_slippage_pct or DEFAULT_MAX_SLIPPAGE_PCT,
            min_balance=config.min_balance if config.min_balance is not None else DEFAULT_MIN_BALANCE,
        )
        self._cached = limits
        self._cache_expiry = self._clock() + self.cache_seconds
        return limits

    async def _balances(self, session: AsyncSession, *, is_paper: bool) -> List[Decimal]:
        if is_paper:
            rows = await recent_paper_snapshots(session, limit=DRAWDOWN_WINDOW)
            return [Decimal(row.total_equity) for row in rows]
        rows = await recent_balance_snapshots(session, limit=DRAWDOWN_WINDOW)
        return [Decimal(row.total_balance) for row in rows]

    async def daily_loss(self, session: AsyncSession, *, is_paper: bool = False) -> Decimal:
        return await realized_losses_since(session, _start_of_day(now_utc()), is_paper=is_paper)

    @staticmethod
    def drawdown_pct(balances: List[Decimal]) -> Decimal:
        """Drawdown of the newest balance from the peak of the window, in percent."""
        if len(balances) < 2:
            return Decimal("0")
        peak = max(balances)
        if peak <= 0:
            return Decimal("0")
        return (peak - balances[0]) / peak * 100

    async def evaluate(
        self,
        session: AsyncSession,
        *,
        exchange: str,
        symbol: str,
        side: str,
        amount: Decimal,
        price: Optional[Decimal] = None,
        max_slippage_pct: Optional[Decimal] = None,
        is_paper: bool = False,
    ) -> RiskDecision:
        limits = await self.get_limits(session)
        config = await get_trading_config(session)
        warnings: List[str] = []

        if config.global_kill_switch_enabled:
            return RiskDecision(False, REASONS["KILL_SWITCH"], KILL_SWITCH_MESSAGE)

        order_value = amount * price if price is not None else amount
        if order_value > limits.max_position_size:
            return RiskDecision(
                False,
                REASONS["MAX_POSITION_SIZE"],
                f"Order value {order_value:.2f} exceeds max position size {limits.max_position_size:.2f}",
            )

        daily_loss = await self.daily_loss(session, is_paper=is_paper)
        if daily_loss >= limits.max_daily_loss:
            return RiskDecision(
                False,
                REASONS["MAX_DAILY_LOSS"],
                f"Daily loss {daily_loss:.2f} has reached limit {limits.max_daily_loss:.2f}",
            )
        if limits.max_daily_loss > 0 and daily_loss >= limits.max_daily_loss * DAILY_LOSS_WARN_FRACTION:
            warnings.append(f"Daily loss at {daily_loss / limits.max_daily_loss * 100:.0f}% of limit")

        balances = await self._balances(session, is_paper=is_paper)
        drawdown = self.drawdown_pct(balances)
        if drawdown >= limits.max_drawdown_pct:
            return RiskDecision(
                False,
                REASONS["MAX_DRAWDOWN"],
                f"Current drawdown {drawdown:.1f}% exceeds limit {limits.max_drawdown_pct}%",
            )
        if drawdown >= limits.max_drawdown_pct * DRAWDOWN_WARN_FRACTION:
            warnings.append(f"Drawdown at {drawdown:.1f}% (limit: {limits.max_drawdown_pct}%)")

        balance = balances[0] if balances else None
        if balance is not None and balance < limits.min_balance:
            return RiskDecision(
                False,
                REASONS["MIN_BALANCE"],
                f"Balance {balance:.2f} is below minimum {limits.min_balance:.2f}",
            )
        if max_slippage_pct is not None and max_slippage_pct > limits.max_slippage_pct:
            return RiskDecision(
                False,
                REASONS["MAX_SLIPPAGE"],
                f"Requested slippage {max_slippage_pct}% exceeds limit {limits.max_slippage_pct}%",
            )

        if side == "buy" and balance is not None and order_value > balance * BALANCE_USAGE_WARN_FRACTION:
            warnings.append("Order uses more than 95% of available balance")

        return RiskDecision(True, warnings=warnings)

    async def check_kill_switch(self, session: AsyncSession) -> None:
        """Price-free gate, run before any market data is fetched."""
        config = await get_trading_config(session)
        if config.global_kill_switch_enabled:
            logger.info("Order rejected by risk manager", extra={"code": "KILL_SWITCH"})
            raise RiskReject(KILL_SWITCH_MESSAGE, code="KILL_SWITCH")

    async def check(self, session: AsyncSession, **order: Any) -> List[str]:
        """Raise ``RiskReject`` when the order is denied; otherwise return the warnings."""
        decision = await self.evaluate(session, **order)
        if not decision.allowed:
            logger.info(
                "Order rejected by risk manager",
                extra={"code": decision.code, "exchange": order.get("exchange"), "symbol": order.get("symbol")},
            )
            raise RiskReject(decision.reason or "Order rejected by risk manager", code=decision.code or "RISK")
        for warning in decision.warnings:
            logger.warning("Risk warning: %s", warning, extra={"exchange": order.get("exchange")})
        return decision.warnings

    async def get_risk_metrics(self, session: AsyncSession, *, is_paper: bool = False) -> Dict[str, Any]:
        limits = await self.get_limits(session)
        daily_loss = await self.daily_loss(session, is_paper=is_paper)
        balances = await self._balances(session, is_paper=is_paper)
        drawdown = self.drawdown_pct(balances)
        return {
            "daily_loss": float(daily_loss),
            "drawdown": float(drawdown),
            "current_balance": float(balances[0]) if balances else None,
            "limits": limits.as_dict(),
            "daily_loss_percent": float(daily_loss / limits.max_daily_loss * 100) if limits.max_daily_loss > 0 else 0.0,
            "drawdown_percent": float(drawdown / limits.max_drawdown_pct * 100) if limits.max_drawdown_pct > 0 else 0.0,
        }

    async def update_risk_limits(self, session: AsyncSession, **updates: Optional[Decimal]) -> RiskLimits:
        unknown = set(updates) - set(RiskLimits.__dataclass_fields__)
        if unknown:
            raise Permanent(f"Unknown risk limits: {', '.join(sorted(unknown))}")
        config = await get_trading_config(session)
        for key, value in updates.items():
            if value is None:
                continue
            if Decimal(value) < 0:
                raise Permanent(f"{key} must be non-negative", details={key: str(value)})
            setattr(config, key, Decimal(value))
        config.version = (config.version or 0) + 1
        config.updated_at = now_utc()
        await session.commit()
        self.invalidate()
        logger.info("Risk limits updated", extra={"fields": sorted(k for k, v in updates.items() if v is not None)})
        return await self.get_limits(session)


_risk_manager: RiskManager | None = None


def get_risk_manager() -> RiskManager:
    global _risk_manager
    if _risk_manager is None:
        _risk_manager = RiskManager.from_env()
    return _risk_manager

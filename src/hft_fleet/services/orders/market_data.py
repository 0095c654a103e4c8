from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Protocol

import ccxt.async_support as ccxt

from hft_fleet.common.errors import Permanent, Transient

logger = logging.getLogger(__name__)

_QUOTES = ("USDT", "USDC", "BUSD", "FDUSD", "USD", "BTC", "ETH")


def to_ccxt_symbol(symbol: str) -> str:
    """``BTCUSDT`` / ``BTC-USDT`` / ``BTC_USDT`` -> ``BTC/USDT``."""
    cleaned = symbol.strip().upper().replace("-", "/").replace("_", "/")
    if "/" in cleaned:
        return cleaned
    for quote in _QUOTES:
        if cleaned.endswith(quote) and len(cleaned) > len(quote):
            return f"{cleaned[: -len(quote)]}/{quote}"
    return cleaned


class PriceSource(Protocol):
    async def last_price(self, exchange: str, symbol: str) -> Decimal:
        ...


class CcxtPriceSource:
    """Public ticker prices through one ccxt client per exchange."""

    def __init__(self) -> None:
        self._clients: Dict[str, ccxt.Exchange] = {}

    def _client(self, exchange: str) -> ccxt.Exchange:
        name = exchange.strip().lower()
        client = self._clients.get(name)
        if client is not None:
            return client
        exchange_cls = getattr(ccxt, name, None)
        if exchange_cls is None:
            raise Permanent(f"Exchange {exchange} not supported by ccxt", details={"exchange": exchange})
        client = exchange_cls({"enableRateLimit": True})
        self._clients[name] = client
        return client

    async def last_price(self, exchange: str, symbol: str) -> Decimal:
        market_symbol = to_ccxt_symbol(symbol)
        try:
            ticker = await self._client(exchange).fetch_ticker(market_symbol)
        except ccxt.BadSymbol as exc:
            raise Permanent(f"Unknown symbol {symbol} on {exchange}", details={"exchange": exchange}) from exc
        except ccxt.NetworkError as exc:
            raise Transient(f"Ticker fetch failed for {exchange}: {exc}", details={"exchange": exchange}) from exc
        except ccxt.ExchangeError as exc:
            raise Permanent(f"Ticker fetch rejected by {exchange}: {exc}", details={"exchange": exchange}) from exc
        raw = ticker.get("last") or ticker.get("close")
        try:
            price = Decimal(str(raw))
        except (InvalidOperation, ValueError) as exc:
            raise Transient(f"No last price for {symbol} on {exchange}") from exc
        if price <= 0:
            raise Transient(f"No last price for {symbol} on {exchange}")
        return price

    async def close(self) -> None:
        for name, client in list(self._clients.items()):
            try:
                await client.close()
            except Exception:
                logger.exception("Failed to close ccxt client", extra={"exchange": name})
        self._clients.clear()


from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import httpx

from hft_fleet.common.env import env_float

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


@dataclass
class TelegramNotifier:
    """Operator alerts through the Telegram bot API; a notifier without token/chat is a no-op."""

    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    timeout_seconds: float = 5.0
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "TelegramNotifier":
        return cls(
            bot_token=(os.getenv("TELEGRAM_BOT_TOKEN") or "").strip() or None,
            chat_id=(os.getenv("TELEGRAM_CHAT_ID") or "").strip() or None,
            timeout_seconds=env_float("TELEGRAM_TIMEOUT_SECONDS", 5.0, minimum=0.5),
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, text: str) -> bool:
        if not self.enabled:
            logger.debug("Telegram alert skipped; bot token or chat id not configured")
            return False
        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML", "disable_web_page_preview": True}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Telegram alert failed", extra={"error": str(exc)})
            return False
        if not 200 <= response.status_code < 300:
            logger.warning("Telegram alert rejected", extra={"status_code": response.status_code})
            return False
        return True


def format_failover_alert(*, from_provider: str | None, to_provider: str, reason: str, latency_ms: int | None) -> str:
    lines = [
        "<b>VPS failover</b>",
        f"From: {from_provider or 'none'}",
        f"To: {to_provider}",
        f"Reason: {reason}",
    ]
    if latency_ms is not None:
        lines.append(f"New primary latency: {latency_ms} ms")
    return "\n".join(lines)


def format_benchmark_ranking(results: list[dict]) -> str:
    lines = ["<b>VPS benchmark ranking</b>"]
    for rank, result in enumerate(results, start=1):
        if result.get("error"):
            lines.append(f"{rank}. {result.get('provider')}: failed ({result['error']})")
            continue
        lines.append(
            f"{rank}. {result.get('provider')}: score {result.get('hft_score')} "
            f"avg {result.get('avg_latency'):.1f} ms"
        )
    return "\n".join(lines)


_notifier: TelegramNotifier | None = None


def get_notifier() -> TelegramNotifier:
    global _notifier
    if _notifier is None:
        _notifier = TelegramNotifier.from_env()
    return _notifier

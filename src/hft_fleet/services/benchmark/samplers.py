from __future__ import annotations

import logging
from typing import Dict, Mapping, Protocol

from hft_fleet.common.models import Machine
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.services.benchmark.scoring import FAILED_SAMPLE_MS

logger = logging.getLogger(__name__)

EXCHANGE_ENDPOINTS: Dict[str, str] = {
    "binance": "https://api.binance.com/api/v3/ping",
    "okx": "https://www.okx.com/api/v5/public/time",
    "bybit": "https://api.bybit.com/v5/market/time",
    "kucoin": "https://api.kucoin.com/api/v1/timestamp",
    "hyperliquid": "https://api.hyperliquid.xyz/info",
    "bitget": "https://api.bitget.com/api/v2/public/time",
    "gate": "https://api.gateio.ws/api/v4/spot/time",
    "mexc": "https://api.mexc.com/api/v3/ping",
}


class LatencySampler(Protocol):
    async def sample_round(self, machine: Machine, endpoints: Mapping[str, str]) -> Dict[str, float]:
        """One latency sample (ms) per exchange; failures come back as ``FAILED_SAMPLE_MS``."""
        ...


class AgentPingSampler:
    """Samples measured on the machine itself through the agent's ``/ping-exchanges``."""

    def __init__(self, control: AgentControlClient) -> None:
        self.control = control

    async def sample_round(self, machine: Machine, endpoints: Mapping[str, str]) -> Dict[str, float]:
        samples = {exchange: FAILED_SAMPLE_MS for exchange in endpoints}
        if not machine.ip_address:
            return samples
        check = await self.control.ping_exchanges(machine.ip_address)
        if not check.ok or not isinstance(check.data, dict):
            logger.warning(
                "Exchange ping through agent failed",
                extra={"machine_id": str(machine.id), "error": check.error},
            )
            return samples
        for result in check.data.get("results") or []:
            if not isinstance(result, dict):
                continue
            exchange = str(result.get("exchange") or "").lower()
            if exchange not in samples or not result.get("success"):
                continue
            latency = result.get("latency_ms")
            if isinstance(latency, (int, float)) and latency >= 0:
                samples[exchange] = float(latency)
        return samples

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from hft_fleet.common.env import env_float, env_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndpointCheck:
    ok: bool
    url: str
    timeout_ms: int
    status_code: int | None = None
    latency_ms: int | None = None
    data: Any = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "url": self.url,
            "timeout_ms": self.timeout_ms,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "data": self.data,
            "error": self.error,
        }


@dataclass
class AgentControlClient:
    """
    HTTP client for the on-host agent.

    The control surface (``/health``, ``/control``, ``/ping-exchanges``,
    ``/bot/status``) sits behind the host's control port; order placement
    goes straight to the bot on the order port.
    """

    control_port: int = 80
    order_port: int = 8080
    control_timeout_seconds: float = 10.0
    health_timeout_seconds: float = 5.0
    sample_timeout_seconds: float = 5.0
    order_timeout_seconds: float = 15.0
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "AgentControlClient":
        return cls(
            control_port=env_int("AGENT_CONTROL_PORT", 80, minimum=1),
            order_port=env_int("AGENT_ORDER_PORT", 8080, minimum=1),
            control_timeout_seconds=env_float("AGENT_CONTROL_TIMEOUT_SECONDS", 10.0, minimum=0.1),
            health_timeout_seconds=env_float("AGENT_HEALTH_TIMEOUT_SECONDS", 5.0, minimum=0.1),
            sample_timeout_seconds=env_float("BENCHMARK_SAMPLE_TIMEOUT_SECONDS", 5.0, minimum=0.1),
            order_timeout_seconds=env_float("ORDER_PLACEMENT_TIMEOUT_SECONDS", 15.0, minimum=0.1),
            transport=transport,
        )

    def control_url(self, ip_address: str, path: str) -> str:
        port = "" if self.control_port == 80 else f":{self.control_port}"
        return f"http://{ip_address}{port}{path}"

    def order_url(self, ip_address: str) -> str:
        return f"http://{ip_address}:{self.order_port}/place-order"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        timeout_seconds: float,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> EndpointCheck:
        timeout_ms = int(timeout_seconds * 1000)
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=self.transport) as client:
                response = await client.request(method, url, json=json_body, params=params)
        except httpx.TimeoutException:
            return EndpointCheck(ok=False, url=url, timeout_ms=timeout_ms, error="timeout")
        except httpx.HTTPError as exc:
            return EndpointCheck(ok=False, url=url, timeout_ms=timeout_ms, error=f"{exc.__class__.__name__}: {exc}")
        latency_ms = int((time.perf_counter() - started) * 1000)
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        ok = 200 <= response.status_code < 300
        if ok and isinstance(data, dict) and data.get("success") is False:
            ok = False
        error = None
        if not ok:
            error = (data.get("error") if isinstance(data, dict) else None) or f"HTTP {response.status_code}"
        return EndpointCheck(
            ok=ok,
            url=url,
            timeout_ms=timeout_ms,
            status_code=response.status_code,
            latency_ms=latency_ms,
            data=data,
            error=error,
        )

    async def health(self, ip_address: str) -> EndpointCheck:
        check = await self._request("GET", self.control_url(ip_address, "/health"), timeout_seconds=self.health_timeout_seconds)
        if check.ok and isinstance(check.data, dict) and check.data.get("ok") is False:
            return EndpointCheck(
                ok=False,
                url=check.url,
                timeout_ms=check.timeout_ms,
                status_code=check.status_code,
                latency_ms=check.latency_ms,
                data=check.data,
                error="agent reported unhealthy",
            )
        return check

    async def control(self, ip_address: str, *, action: str, mode: str, env: dict[str, str]) -> EndpointCheck:
        check = await self._request(
            "POST",
            self.control_url(ip_address, "/control"),
            timeout_seconds=self.control_timeout_seconds,
            json_body={"action": action, "mode": mode, "env": env},
        )
        if not check.ok:
            logger.warning(
                "Agent control call failed",
                extra={"ip_address": ip_address, "action": action, "status_code": check.status_code, "error": check.error},
            )
        return check

    async def bot_status(self, ip_address: str) -> EndpointCheck:
        return await self._request("GET", self.control_url(ip_address, "/bot/status"), timeout_seconds=self.health_timeout_seconds)

    async def ping_exchanges(self, ip_address: str) -> EndpointCheck:
        return await self._request(
            "GET",
            self.control_url(ip_address, "/ping-exchanges"),
            timeout_seconds=self.sample_timeout_seconds,
        )

    async def place_order(self, ip_address: str, payload: dict[str, Any]) -> EndpointCheck:
        return await self._request(
            "POST",
            self.order_url(ip_address),
            timeout_seconds=self.order_timeout_seconds,
            json_body=payload,
        )

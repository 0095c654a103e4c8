import json
import uuid
from decimal import Decimal
from typing import Callable, Dict, List

import httpx

from hft_fleet.common.errors import Transient
from hft_fleet.common.models import Deployment, ExchangeConnection, FailoverConfig, Machine
from hft_fleet.remote.crypto import encrypt_secret
from hft_fleet.remote.types import RemoteResult
from hft_fleet.store.common import now_utc


async def seed_machine(
    session,
    *,
    provider: str = "vultr",
    ip_address: str | None = "10.0.0.1",
    status: str = "running",
    region: str = "nrt",
    size: str = "medium",
    monthly_cost: Decimal = Decimal("24"),
) -> Machine:
    machine = Machine(
        id=uuid.uuid4(),
        provider=provider,
        provider_instance_id=f"{provider}-instance",
        client_request_id=uuid.uuid4().hex,
        region=region,
        size=size,
        nickname=f"{provider}-bot",
        ip_address=ip_address,
        status=status,
        bot_status="not_deployed",
        monthly_cost=monthly_cost,
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    session.add(machine)
    await session.flush()
    return machine


async def seed_failover(
    session,
    machine: Machine | None,
    *,
    provider: str | None = None,
    is_primary: bool = False,
    priority: int = 1,
    latency_ms: int | None = None,
) -> FailoverConfig:
    config = FailoverConfig(
        id=uuid.uuid4(),
        provider=provider or machine.provider,
        machine_id=machine.id if machine is not None else None,
        priority=priority,
        is_primary=is_primary,
        is_enabled=True,
        region=machine.region if machine is not None else None,
        latency_ms=latency_ms,
        consecutive_failures=0,
        auto_failover_enabled=True,
        version=1,
        updated_at=now_utc(),
    )
    session.add(config)
    await session.flush()
    return config


async def seed_exchange(session, name: str = "binance") -> ExchangeConnection:
    connection = ExchangeConnection(
        id=uuid.uuid4(),
        exchange_name=name,
        api_key_encrypted=encrypt_secret(f"{name}-key"),
        api_secret_encrypted=encrypt_secret(f"{name}-secret"),
        is_connected=True,
        updated_at=now_utc(),
    )
    session.add(connection)
    await session.flush()
    return connection


async def seed_deployment(session, machine: Machine, *, bot_status: str = "not_deployed") -> Deployment:
    deployment = Deployment(
        id=uuid.uuid4(),
        machine_id=machine.id,
        server_id=f"{machine.provider}:{machine.id}",
        bot_status=bot_status,
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    session.add(deployment)
    await session.flush()
    return deployment


class FixedPriceSource:
    def __init__(self, price: str = "100000"):
        self.price = Decimal(price)
        self.calls: List[tuple] = []

    async def last_price(self, exchange: str, symbol: str) -> Decimal:
        self.calls.append((exchange, symbol))
        return self.price


class UnavailablePriceSource:
    """Market data that is down: every lookup raises Transient."""

    def __init__(self):
        self.calls: List[tuple] = []

    async def last_price(self, exchange: str, symbol: str) -> Decimal:
        self.calls.append((exchange, symbol))
        raise Transient(f"ticker unavailable for {exchange}:{symbol}")


class FakeSsh:
    """Scripted SSH: the first registered substring found in the command picks the reply."""

    def __init__(self, replies: Dict[str, RemoteResult] | None = None, default: RemoteResult | None = None):
        self.replies = replies or {}
        self.default = default or RemoteResult(success=True, output="")
        self.commands: List[tuple] = []

    async def run(self, host: str, command: str, *, private_key: str) -> RemoteResult:
        self.commands.append((host, command))
        for needle, result in self.replies.items():
            if needle in command:
                return result
        return self.default


def agent_transport(handler: Callable[[httpx.Request], httpx.Response], calls: list | None = None) -> httpx.MockTransport:
    def _record(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            body = json.loads(request.content) if request.content else None
            calls.append((request.method, str(request.url), body))
        return handler(request)

    return httpx.MockTransport(_record)


async def no_sleep(_seconds: float) -> None:
    return None

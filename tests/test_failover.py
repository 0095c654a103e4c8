from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import func, select

from hft_fleet.common.errors import InvariantViolation, Permanent
from hft_fleet.common.models import FailoverConfig, FailoverEvent, HealthCheckResult, Order, TimelineEvent
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.services.failover.controller import FailoverController
from hft_fleet.services.orders.base import OrderRequest
from hft_fleet.services.orders.risk import RiskManager
from hft_fleet.services.orders.router import OrderRouter
from hft_fleet.services.rate_limit import RateLimitCoordinator
from hft_fleet.store.common import now_utc
from hft_fleet.store.failover import primary_machine

from factories import FixedPriceSource, agent_transport, seed_exchange, seed_failover, seed_machine


def _agent(down: set[str]):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host in down:
            return httpx.Response(503, json={"error": "unreachable"})
        if request.url.path == "/health":
            return httpx.Response(200, json={"ok": True, "cpu": 12.5, "ram": 40, "disk": 22, "uptime": 3600})
        return httpx.Response(200, json={"success": True, "order_id": "ex-9", "executed_price": "100000"})

    return handler


async def _two_machines(session):
    m1 = await seed_machine(session, provider="vultr", ip_address="10.0.0.1")
    m2 = await seed_machine(session, provider="digitalocean", ip_address="10.0.0.2")
    c1 = await seed_failover(session, m1, is_primary=True, priority=1)
    c2 = await seed_failover(session, m2, priority=2, latency_ms=30)
    await session.commit()
    return m1, m2, c1, c2


async def _primaries(session) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(FailoverConfig)
        .where(FailoverConfig.is_primary.is_(True), FailoverConfig.is_enabled.is_(True))
    )


@pytest.mark.asyncio
async def test_three_failed_probes_demote_primary_and_orders_follow(session):
    calls = []
    m1, m2, _, _ = await _two_machines(session)
    await seed_exchange(session)
    await session.commit()
    transport = agent_transport(_agent({"10.0.0.1"}), calls)
    controller = FailoverController(control=AgentControlClient(transport=transport))

    first = await controller.health_tick(session)
    second = await controller.health_tick(session)
    assert first["failover"] is None
    assert second["failover"] is None
    assert await _primaries(session) == 1

    third = await controller.health_tick(session)

    assert third["failover"]["switched"] is True
    assert (third["failover"]["from"], third["failover"]["to"]) == ("vultr", "digitalocean")
    events = (await session.execute(select(FailoverEvent))).scalars().all()
    assert len(events) == 1
    assert (events[0].from_machine_id, events[0].to_machine_id) == (m1.id, m2.id)
    assert events[0].is_automatic is True
    assert await _primaries(session) == 1
    state = await controller.get_state(session)
    assert state["primary"] == "digitalocean"
    demoted = next(c for c in state["configs"] if c["provider"] == "vultr")
    assert demoted["in_cooldown"] is True

    router = OrderRouter(
        control=AgentControlClient(transport=transport),
        risk=RiskManager(cache_seconds=0),
        rate_limiter=RateLimitCoordinator(auto_drain=False),
        price_source=FixedPriceSource(),
    )
    calls.clear()
    await router.place_order(
        session, OrderRequest.build(exchange="binance", symbol="BTCUSDT", side="buy", amount="0.01")
    )
    assert calls[0][1] == "http://10.0.0.2:8080/place-order"
    order = (await session.execute(select(Order))).scalars().one()
    assert order.machine_id == m2.id


@pytest.mark.asyncio
async def test_health_tick_records_results(session):
    await _two_machines(session)
    controller = FailoverController(control=AgentControlClient(transport=agent_transport(_agent({"10.0.0.1"}))))

    result = await controller.health_tick(session)

    assert result["checked"] == 2
    by_provider = {row["provider"]: row for row in result["results"]}
    assert by_provider["vultr"]["healthy"] is False
    assert by_provider["vultr"]["consecutive_failures"] == 1
    assert by_provider["digitalocean"]["healthy"] is True
    statuses = (await session.execute(select(HealthCheckResult.provider, HealthCheckResult.status))).all()
    assert sorted(statuses) == [("digitalocean", "healthy"), ("vultr", "unhealthy")]


@pytest.mark.asyncio
async def test_no_candidate_keeps_primary_and_records_degraded(session):
    m1 = await seed_machine(session, provider="vultr", ip_address="10.0.0.1")
    await seed_failover(session, m1, is_primary=True)
    await session.commit()
    controller = FailoverController(control=AgentControlClient(transport=agent_transport(_agent({"10.0.0.1"}))))

    for _ in range(5):
        result = await controller.health_tick(session)

    assert result["failover"] == {"switched": False, "degraded": True, "primary": "vultr"}
    assert await session.scalar(select(func.count()).select_from(FailoverEvent)) == 0
    subtypes = (await session.execute(select(TimelineEvent.event_subtype))).scalars().all()
    assert subtypes.count("degraded") == 1


def test_candidate_prefers_latency_then_priority():
    controller = FailoverController(control=AgentControlClient())
    now = now_utc()
    fast = FailoverConfig(provider="a", machine_id=1, priority=5, is_enabled=True, latency_ms=20, consecutive_failures=0)
    tie = FailoverConfig(provider="b", machine_id=2, priority=1, is_enabled=True, latency_ms=20, consecutive_failures=0)
    unknown = FailoverConfig(provider="c", machine_id=3, priority=0, is_enabled=True, latency_ms=None, consecutive_failures=0)
    failing = FailoverConfig(provider="d", machine_id=4, priority=0, is_enabled=True, latency_ms=1, consecutive_failures=3)
    cooling = FailoverConfig(
        provider="e",
        machine_id=5,
        priority=0,
        is_enabled=True,
        latency_ms=1,
        consecutive_failures=0,
        demoted_at=now - timedelta(seconds=10),
    )
    bare = FailoverConfig(provider="f", machine_id=None, priority=0, is_enabled=True, latency_ms=1, consecutive_failures=0)
    parked = FailoverConfig(provider="g", machine_id=7, priority=0, is_enabled=True, latency_ms=1, consecutive_failures=0)
    running = SimpleNamespace(status="running", ip_address="10.0.0.9")
    machines = {
        1: running,
        2: running,
        3: running,
        4: running,
        5: running,
        7: SimpleNamespace(status="rebooting", ip_address="10.0.0.7"),
    }

    picked = controller.pick_candidate(
        [unknown, fast, tie, failing, cooling, bare, parked], current=None, now=now, machines=machines
    )

    assert picked.provider == "b"
    assert controller.pick_candidate([unknown], current=None, now=now, machines=machines).provider == "c"
    assert controller.pick_candidate([unknown], current=None, now=now, machines={}) is None


@pytest.mark.asyncio
async def test_auto_failover_skips_standby_whose_machine_is_down(session):
    m1 = await seed_machine(session, provider="vultr", ip_address="10.0.0.1")
    stopped = await seed_machine(session, provider="digitalocean", ip_address="10.0.0.2", status="stopped")
    m3 = await seed_machine(session, provider="aws", ip_address="10.0.0.3")
    primary = await seed_failover(session, m1, is_primary=True, priority=1)
    await seed_failover(session, stopped, priority=2, latency_ms=5)
    await seed_failover(session, m3, priority=3, latency_ms=40)
    primary.consecutive_failures = 3
    await session.commit()

    result = await FailoverController(control=AgentControlClient()).auto_demote(session)

    assert (result["switched"], result["to"]) == (True, "aws")
    config, machine = await primary_machine(session)
    assert config.provider == "aws"
    assert machine.id == m3.id


@pytest.mark.asyncio
async def test_manual_switch_ignores_cooldown(session):
    _, _, c1, c2 = await _two_machines(session)
    controller = FailoverController(control=AgentControlClient(), cooldown_seconds=3600)

    to_do = await controller.switch_primary(session, to_provider="digitalocean", from_provider="vultr")
    back = await controller.switch_primary(session, to_provider="vultr")

    assert to_do["switched"] is True
    assert back["switched"] is True
    assert back["reason"] == "manual"
    assert (await controller.get_state(session))["primary"] == "vultr"
    assert await _primaries(session) == 1
    events = (await session.execute(select(FailoverEvent))).scalars().all()
    assert len(events) == 2
    assert all(event.is_automatic is False for event in events)


@pytest.mark.asyncio
async def test_switch_checks_expected_primary(session):
    await _two_machines(session)
    controller = FailoverController(control=AgentControlClient())

    with pytest.raises(InvariantViolation):
        await controller.switch_primary(session, to_provider="vultr", from_provider="digitalocean")

    with pytest.raises(Permanent):
        await controller.switch_primary(session, to_provider="aws")


@pytest.mark.asyncio
async def test_switch_to_current_primary_is_noop(session):
    await _two_machines(session)
    controller = FailoverController(control=AgentControlClient())

    result = await controller.switch_primary(session, to_provider="vultr")

    assert result["switched"] is False
    assert await session.scalar(select(func.count()).select_from(FailoverEvent)) == 0

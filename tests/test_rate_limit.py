import asyncio

import pytest

from hft_fleet.common.errors import Permanent, QueueFull
from hft_fleet.services.rate_limit import ExchangeLimits, RateLimitCoordinator
from hft_fleet.services.rate_limit.coordinator import ExchangeLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _settle():
    for _ in range(3):
        await asyncio.sleep(0)


def test_effective_limits():
    limits = ExchangeLimits(hard_limit_per_minute=1200)
    assert limits.effective_limit == 960
    assert limits.effective_limit_per_second == 16
    assert ExchangeLimits(hard_limit_per_minute=10, safety_margin=1.0).effective_limit_per_second == 1


def test_limiter_enters_throttled_then_ws_only():
    clock = FakeClock()
    limiter = ExchangeLimiter("binance", ExchangeLimits(hard_limit_per_minute=100, safety_margin=1.0), clock)

    for second in range(85):
        clock.now = second * 0.5
        limiter.record()
    assert limiter.state == "throttled"
    for second in range(85, 95):
        clock.now = second * 0.5
        limiter.record()
    assert limiter.state == "ws_only"
    assert limiter.can_admit("normal") is False
    assert limiter.can_admit("critical") is True


@pytest.mark.asyncio
async def test_spillover_drains_after_minute_rollover():
    clock = FakeClock()
    coordinator = RateLimitCoordinator(
        {"binance": ExchangeLimits(hard_limit_per_minute=10, safety_margin=1.0)},
        clock=clock,
        auto_drain=False,
    )
    admitted = []

    def _operation(index):
        async def run():
            admitted.append((clock.now, index))
            return index

        return run

    tasks = [asyncio.create_task(coordinator.submit("binance", _operation(i))) for i in range(15)]
    await _settle()
    ws_only_seconds = []
    for second in range(1, 181):
        clock.now = float(second)
        limiter = coordinator.limiter("binance")
        limiter.roll()
        if limiter.ws_only:
            ws_only_seconds.append(second)
        await coordinator.drain_once()
        await _settle()

    results = await asyncio.gather(*tasks)

    assert sorted(results) == list(range(15))
    times = [at for at, _ in admitted]
    assert times[:10] == [float(s) for s in range(10)]
    assert all(60 <= at < 120 for at in times[10:])
    assert len(times) == 15
    assert coordinator.queued() == 0
    assert ws_only_seconds
    # nothing is admitted while the limiter sits in ws_only
    assert not set(times[10:]) & {float(s) for s in ws_only_seconds}
    for start in times:
        assert sum(1 for at in times if start <= at < start + 60) <= 10
    assert coordinator.snapshot("binance")["state"] == "normal"


@pytest.mark.asyncio
async def test_queue_drains_in_priority_order():
    clock = FakeClock()
    coordinator = RateLimitCoordinator(
        {"okx": ExchangeLimits(hard_limit_per_minute=60, safety_margin=1.0)},
        clock=clock,
        auto_drain=False,
    )
    order = []

    def _operation(label):
        async def run():
            order.append(label)

        return run

    await coordinator.submit("okx", _operation("first"))
    tasks = [
        asyncio.create_task(coordinator.submit("okx", _operation(label), priority=priority))
        for label, priority in (("low", "low"), ("normal", "normal"), ("high", "high"), ("normal-2", "normal"))
    ]
    await _settle()
    for second in range(1, 6):
        clock.now = float(second)
        await coordinator.drain_once()
        await _settle()
    await asyncio.gather(*tasks)

    assert order == ["first", "high", "normal", "normal-2", "low"]


@pytest.mark.asyncio
async def test_critical_uses_burst_reserve():
    clock = FakeClock()
    coordinator = RateLimitCoordinator(
        {"binance": ExchangeLimits(hard_limit_per_minute=10, safety_margin=0.5)},
        clock=clock,
        auto_drain=False,
    )
    for second in range(5):
        clock.now = float(second)
        assert coordinator.try_acquire("binance") is True
    clock.now = 5.0
    assert coordinator.try_acquire("binance", "normal") is False
    for _ in range(5):
        assert coordinator.try_acquire("binance", "critical") is True
    assert coordinator.try_acquire("binance", "critical") is False
    snapshot = coordinator.snapshot("binance")
    assert snapshot["requests_this_minute"] == 10
    assert snapshot["remaining"] == 0
    assert snapshot["ws_only"] is True


@pytest.mark.asyncio
async def test_queue_soft_cap_sheds_normal_priority():
    clock = FakeClock()
    coordinator = RateLimitCoordinator(
        {"binance": ExchangeLimits(hard_limit_per_minute=10, safety_margin=1.0)},
        clock=clock,
        queue_soft_cap=1,
        auto_drain=False,
    )

    async def noop():
        return None

    await coordinator.submit("binance", noop)
    parked = asyncio.create_task(coordinator.submit("binance", noop))
    await _settle()

    with pytest.raises(QueueFull):
        await coordinator.submit("binance", noop, priority="low")

    high = asyncio.create_task(coordinator.submit("binance", noop, priority="high"))
    await _settle()
    assert coordinator.queued() == 2
    await coordinator.stop()
    await _settle()
    assert parked.cancelled()
    assert high.cancelled()


@pytest.mark.asyncio
async def test_unknown_priority_is_rejected():
    coordinator = RateLimitCoordinator(auto_drain=False)
    with pytest.raises(Permanent):
        coordinator.try_acquire("binance", "urgent")


@pytest.mark.asyncio
async def test_snapshot_reports_usage():
    clock = FakeClock(100.0)
    coordinator = RateLimitCoordinator(clock=clock, auto_drain=False)
    coordinator.try_acquire("binance")

    snapshot = coordinator.snapshot("binance")

    assert snapshot["exchange"] == "binance"
    assert snapshot["limit"] == 960
    assert snapshot["hard_limit"] == 1200
    assert snapshot["requests_this_minute"] == 1
    assert snapshot["remaining"] == 959
    assert snapshot["ms_until_reset"] == 60000
    assert snapshot["state"] == "normal"
    assert [row["exchange"] for row in coordinator.snapshots()] == ["binance", "okx"]

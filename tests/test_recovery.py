from datetime import datetime, timedelta, timezone

import pytest

from hft_fleet.common.models import RateLimitedResource
from hft_fleet.services.recovery.sweeper import RecoverySweeper, utc_midnight

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _seed(session):
    session.add_all(
        [
            RateLimitedResource(name="binance", cooldown_until=NOW - timedelta(minutes=1), error_count=4),
            RateLimitedResource(
                name="okx",
                daily_usage=990,
                rate_limit_daily=1000,
                last_daily_reset_at=NOW - timedelta(days=1),
            ),
            RateLimitedResource(
                name="bybit",
                current_usage=5,
                daily_usage=960,
                last_reset_at=NOW - timedelta(minutes=2),
                last_daily_reset_at=utc_midnight(NOW) + timedelta(hours=1),
            ),
            RateLimitedResource(name="kucoin", cooldown_until=NOW + timedelta(minutes=10), error_count=2),
            RateLimitedResource(name="mexc", is_enabled=False, daily_usage=50),
        ]
    )
    await session.commit()
    session.expunge_all()


@pytest.mark.asyncio
async def test_sweep_clears_cooldowns_and_resets_counters(session):
    await _seed(session)
    sweeper = RecoverySweeper(clock=FakeClock(), now=lambda: NOW)

    result = await sweeper.sweep(session)

    assert result["cooldowns_cleared"] == 1
    assert result["daily_resets"] == 2
    assert result["minute_resets"] == 1
    assert result["recovery_actions"] == 4
    assert "Reset daily usage for okx (was 990)" in result["details"]
    status = {row["name"]: row for row in result["provider_status"]}
    assert set(status) == {"binance", "bybit", "kucoin", "okx"}
    assert status["binance"]["errors"] == 0
    assert status["okx"]["available"] is True
    assert status["bybit"]["available"] is False
    assert status["kucoin"]["in_cooldown"] is True


@pytest.mark.asyncio
async def test_sweeps_closer_than_a_minute_are_skipped(session):
    await _seed(session)
    clock = FakeClock()
    sweeper = RecoverySweeper(clock=clock, now=lambda: NOW)
    first = await sweeper.sweep(session)

    clock.now += 10
    skipped = await sweeper.sweep(session)
    assert skipped["skipped"] is True
    assert skipped["retry_after_seconds"] == 50.0
    assert skipped["last_result"] is first

    clock.now += 51
    again = await sweeper.sweep(session)
    assert "skipped" not in again
    assert again["recovery_actions"] == 0


@pytest.mark.asyncio
async def test_failed_sweep_does_not_block_the_next_one(session):
    await _seed(session)
    calls = []

    def flaky_now():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("clock unavailable")
        return NOW

    sweeper = RecoverySweeper(clock=FakeClock(), now=flaky_now)

    with pytest.raises(RuntimeError):
        await sweeper.sweep(session)
    assert sweeper.seconds_until_allowed() == 0.0

    retried = await sweeper.sweep(session)
    assert "skipped" not in retried
    assert retried["cooldowns_cleared"] == 1

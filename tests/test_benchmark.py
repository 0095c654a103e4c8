import json
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import select

from hft_fleet.common.errors import NotFound
from hft_fleet.common.models import TimelineEvent, VpsBenchmark
from hft_fleet.services.benchmark.samplers import AgentPingSampler
from hft_fleet.services.benchmark.scoring import FAILED_SAMPLE_MS, BenchmarkStats, hft_score, stddev
from hft_fleet.services.benchmark.service import Benchmarker
from hft_fleet.services.notifications.telegram import TelegramNotifier

from factories import no_sleep, seed_failover, seed_machine

ENDPOINTS = {"binance": "https://binance.test/ping", "okx": "https://okx.test/time"}


class TableSampler:
    """Latencies keyed by machine ip; an ip listed in ``broken`` raises."""

    def __init__(self, table, broken=()):
        self.table = table
        self.broken = set(broken)

    async def sample_round(self, machine, endpoints):
        if machine.ip_address in self.broken:
            raise RuntimeError("agent unreachable")
        return dict(self.table[machine.ip_address])


def _benchmarker(sampler, notifier=None) -> Benchmarker:
    return Benchmarker(
        sampler=sampler,
        notifier=notifier or TelegramNotifier(),
        endpoints=ENDPOINTS,
        samples=3,
        mesh_samples=2,
        sleep=no_sleep,
    )


def test_hft_score_formula():
    assert hft_score(50, 30, 0) == 100
    assert hft_score(200, 200, 10) == 24
    assert hft_score(20, 10, 0) == 100
    assert stddev([2, 4, 4, 4, 5, 5, 7, 9]) == 2.0
    assert stddev([]) == 0.0


def test_stats_fill_failed_exchanges():
    stats = BenchmarkStats.from_samples({"binance": [40.0, 60.0], "okx": []})

    assert stats.exchange_latencies == {"binance": 50, "okx": int(FAILED_SAMPLE_MS)}
    assert stats.avg_latency == 50.0
    assert stats.min_latency == 40.0
    assert stats.raw_results()["stdDev"] == 10.0

    empty = BenchmarkStats.from_samples({})
    assert empty.samples == [FAILED_SAMPLE_MS]


@pytest.mark.asyncio
async def test_agent_samples_use_a_five_second_deadline(monkeypatch):
    monkeypatch.delenv("BENCHMARK_SAMPLE_TIMEOUT_SECONDS", raising=False)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"results": [{"exchange": "binance", "success": True, "latency_ms": 12.5}, {"exchange": "okx", "success": False}]},
        )

    benchmarker = Benchmarker.from_env(httpx.MockTransport(handler))
    assert isinstance(benchmarker.sampler, AgentPingSampler)
    assert benchmarker.sampler.control.sample_timeout_seconds == 5.0

    machine = SimpleNamespace(id="m-1", ip_address="10.0.0.9")
    samples = await benchmarker.sampler.sample_round(machine, ENDPOINTS)

    assert samples == {"binance": 12.5, "okx": FAILED_SAMPLE_MS}
    assert seen[0].url.path == "/ping-exchanges"
    assert seen[0].extensions["timeout"]["read"] == 5.0

    monkeypatch.setenv("BENCHMARK_SAMPLE_TIMEOUT_SECONDS", "2.5")
    assert Benchmarker.from_env().sampler.control.sample_timeout_seconds == 2.5


@pytest.mark.asyncio
async def test_single_run_stores_result_and_timeline(session):
    machine = await seed_machine(session, provider="vultr", ip_address="10.0.0.1")
    await session.commit()
    sampler = TableSampler({"10.0.0.1": {"binance": 50.0, "okx": 50.0}})

    result = await _benchmarker(sampler).run(session, "Vultr")

    assert result["success"] is True
    assert result["hft_score"] == hft_score(50, 50, 0)
    assert result["machine_id"] == str(machine.id)
    row = (await session.execute(select(VpsBenchmark))).scalars().one()
    assert row.exchange_latencies == {"binance": 50, "okx": 50}
    subtypes = (await session.execute(select(TimelineEvent.event_subtype))).scalars().all()
    assert sorted(subtypes) == ["completed", "started"]


@pytest.mark.asyncio
async def test_run_without_running_machine(session):
    await seed_machine(session, provider="vultr", status="stopped")
    await session.commit()

    with pytest.raises(NotFound):
        await _benchmarker(TableSampler({})).run(session, "vultr")


@pytest.mark.asyncio
async def test_mesh_ranks_and_reports_failures(session):
    fast = await seed_machine(session, provider="vultr", ip_address="10.0.0.1")
    slow = await seed_machine(session, provider="aws", ip_address="10.0.0.2")
    broken = await seed_machine(session, provider="gcp", ip_address="10.0.0.3")
    for priority, machine in enumerate((slow, fast, broken), start=1):
        await seed_failover(session, machine, priority=priority)
    await session.commit()
    sent = []

    def telegram(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    notifier = TelegramNotifier(bot_token="t", chat_id="c", transport=httpx.MockTransport(telegram))
    sampler = TableSampler(
        {"10.0.0.1": {"binance": 40.0, "okx": 45.0}, "10.0.0.2": {"binance": 180.0, "okx": 220.0}},
        broken={"10.0.0.3"},
    )

    result = await _benchmarker(sampler, notifier).run_mesh(session)

    assert result["success"] is True
    assert [row["provider"] for row in result["results"]] == ["vultr", "aws"]
    assert result["best"]["provider"] == "vultr"
    assert result["failures"] == [{"provider": "gcp", "error": "agent unreachable"}]
    assert len((await session.execute(select(VpsBenchmark))).scalars().all()) == 2
    assert len(sent) == 1
    assert "1. vultr" in sent[0]["text"]
    assert "gcp: failed" in sent[0]["text"]

    compared = await _benchmarker(sampler).compare(session)
    assert [row["provider"] for row in compared] == ["vultr", "aws"]
    assert all(row["run_count"] == 1 for row in compared)


@pytest.mark.asyncio
async def test_mesh_without_machines(session):
    result = await _benchmarker(TableSampler({})).run_mesh(session)
    assert result == {"success": False, "error": "No running VPS instances found", "results": []}

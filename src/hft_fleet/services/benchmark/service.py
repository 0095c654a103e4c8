from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.errors import NotFound
from hft_fleet.common.models import Machine
from hft_fleet.remote.control import AgentControlClient
from hft_fleet.services.benchmark.samplers import EXCHANGE_ENDPOINTS, AgentPingSampler, LatencySampler
from hft_fleet.services.benchmark.scoring import FAILED_SAMPLE_MS, BenchmarkStats
from hft_fleet.services.notifications.telegram import TelegramNotifier, format_benchmark_ranking
from hft_fleet.store.benchmarks import benchmark_stats, insert_benchmark, latest_benchmarks
from hft_fleet.store.failover import list_failover_configs, machine_is_routable
from hft_fleet.store.fleet import list_machines
from hft_fleet.store.timeline import append_timeline_event
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)

MESH_PROVIDER = "MESH"


@dataclass
class Benchmarker:
    sampler: LatencySampler
    notifier: TelegramNotifier = field(default_factory=TelegramNotifier)
    endpoints: Mapping[str, str] = field(default_factory=lambda: dict(EXCHANGE_ENDPOINTS))
    samples: int = 5
    mesh_samples: int = 3
    sample_interval_seconds: float = 0.1
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_env(cls, transport: httpx.AsyncBaseTransport | None = None) -> "Benchmarker":
        return cls(
            sampler=AgentPingSampler(AgentControlClient.from_env(transport)),
            notifier=TelegramNotifier.from_env(transport),
        )

    async def measure(self, machine: Machine, *, samples: int) -> BenchmarkStats:
        per_exchange: Dict[str, List[float]] = {exchange: [] for exchange in self.endpoints}
        for index in range(samples):
            round_samples = await self.sampler.sample_round(machine, self.endpoints)
            for exchange in per_exchange:
                per_exchange[exchange].append(round_samples.get(exchange, FAILED_SAMPLE_MS))
            if index < samples - 1:
                await self.sleep(self.sample_interval_seconds)
        return BenchmarkStats.from_samples(per_exchange)

    async def _machine_for(self, session: AsyncSession, provider: str) -> Machine:
        provider = provider.strip().lower()
        for config in await list_failover_configs(session):
            if config.provider == provider and config.machine_id is not None:
                machine = await session.get(Machine, config.machine_id)
                if machine_is_routable(machine):
                    return machine
        for machine in await list_machines(session):
            if machine.provider == provider and machine_is_routable(machine):
                return machine
        raise NotFound(f"No running machine found for {provider}", details={"provider": provider})

    async def _store(self, session: AsyncSession, machine: Machine, stats: BenchmarkStats) -> str:
        row = await insert_benchmark(
            session,
            provider=machine.provider,
            machine_id=machine.id,
            score=Decimal(str(round(stats.avg_latency, 3))),
            hft_score=stats.hft_score,
            exchange_latencies=stats.exchange_latencies,
            raw_results=stats.raw_results(),
        )
        return str(row.id)

    @staticmethod
    def _summary(machine: Machine, stats: BenchmarkStats) -> Dict[str, Any]:
        return {
            "provider": machine.provider,
            "machine_id": str(machine.id),
            "hft_score": stats.hft_score,
            "avg_latency": round(stats.avg_latency, 2),
            "min_latency": stats.min_latency,
            "max_latency": stats.max_latency,
            "std_dev": round(stats.std_dev, 2),
            "exchange_latencies": stats.exchange_latencies,
        }

    async def run(self, session: AsyncSession, provider: str) -> Dict[str, Any]:
        machine = await self._machine_for(session, provider)
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="benchmark",
            event_subtype="started",
            title="Benchmark Started",
            description=f"Running performance tests on {machine.provider}",
            metadata={"ip": machine.ip_address},
        )
        await session.commit()

        stats = await self.measure(machine, samples=self.samples)
        benchmark_id = await self._store(session, machine, stats)
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="benchmark",
            event_subtype="completed",
            title="Benchmark Completed",
            description=f"HFT Score: {stats.hft_score}/100, Avg Latency: {round(stats.avg_latency)}ms",
            metadata={"hft_score": stats.hft_score, "avg_latency": stats.avg_latency, "exchange_latencies": stats.exchange_latencies},
        )
        await session.commit()
        logger.info("Benchmark completed", extra={"provider": machine.provider, "hft_score": stats.hft_score})
        return {"success": True, "benchmark_id": benchmark_id, **self._summary(machine, stats)}

    async def run_mesh(self, session: AsyncSession) -> Dict[str, Any]:
        machines: List[Machine] = []
        for config in await list_failover_configs(session, enabled_only=True):
            machine = await session.get(Machine, config.machine_id) if config.machine_id else None
            if machine_is_routable(machine):
                machines.append(machine)
        if not machines:
            return {"success": False, "error": "No running VPS instances found", "results": []}

        await append_timeline_event(
            session,
            provider=MESH_PROVIDER,
            event_type="benchmark",
            event_subtype="started",
            title="Mesh Benchmark Started",
            description=f"Running benchmarks on {len(machines)} providers",
            metadata={"providers": [machine.provider for machine in machines]},
        )
        await session.commit()

        outcomes = await asyncio.gather(
            *(self.measure(machine, samples=self.mesh_samples) for machine in machines),
            return_exceptions=True,
        )
        results: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []
        for machine, outcome in zip(machines, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Mesh benchmark failed for machine",
                    extra={"provider": machine.provider, "error": str(outcome)},
                )
                failures.append({"provider": machine.provider, "error": str(outcome)})
                continue
            await self._store(session, machine, outcome)
            results.append(self._summary(machine, outcome))
        results.sort(key=lambda item: item["hft_score"], reverse=True)

        best = results[0] if results else None
        await append_timeline_event(
            session,
            provider=MESH_PROVIDER,
            event_type="benchmark",
            event_subtype="completed",
            title="Mesh Benchmark Completed",
            description=f"Best: {best['provider']} (Score: {best['hft_score']})" if best else "No successful runs",
            metadata={
                "results": [
                    {"provider": r["provider"], "hft_score": r["hft_score"], "avg_latency": r["avg_latency"]}
                    for r in results
                ],
                "failures": failures,
            },
        )
        await session.commit()
        if results:
            await self.notifier.send(format_benchmark_ranking(results + failures))
        return {"success": bool(results), "results": results, "failures": failures, "best": best}

    async def get_results(self, session: AsyncSession) -> List[Dict[str, Any]]:
        rows = await latest_benchmarks(session)
        return [
            json_safe(
                {
                    "id": row.id,
                    "provider": row.provider,
                    "machine_id": row.machine_id,
                    "benchmark_type": row.benchmark_type,
                    "score": row.score,
                    "hft_score": row.hft_score,
                    "exchange_latencies": row.exchange_latencies,
                    "raw_results": row.raw_results,
                    "run_at": row.run_at,
                }
            )
            for row in rows
        ]

    async def compare(self, session: AsyncSession) -> List[Dict[str, Any]]:
        latest = {row.provider: row for row in await latest_benchmarks(session)}
        stats = await benchmark_stats(session)
        comparison = [
            {
                "provider": provider,
                "latest_score": latest[provider].hft_score if provider in latest else None,
                "latest_avg_latency": float(latest[provider].score) if provider in latest else None,
                "average_score": info["average_score"],
                "run_count": info["run_count"],
            }
            for provider, info in stats.items()
        ]
        comparison.sort(key=lambda item: item["latest_score"] or 0, reverse=True)
        return comparison

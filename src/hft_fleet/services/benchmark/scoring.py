from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence

FAILED_SAMPLE_MS = 999.0


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def stddev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((value - mean) ** 2 for value in values) / len(values))


def hft_score(mean_ms: float, min_ms: float, stddev_ms: float) -> int:
    latency_score = _clamp(100 - (mean_ms - 50) / 1.5)
    consistency_score = _clamp(100 - stddev_ms * 2)
    best_case_score = _clamp(100 - (min_ms - 30) / 1.7)
    return round(0.5 * latency_score + 0.3 * consistency_score + 0.2 * best_case_score)


@dataclass(frozen=True)
class BenchmarkStats:
    exchange_latencies: Dict[str, int]
    samples: List[float]
    avg_latency: float
    min_latency: float
    max_latency: float
    std_dev: float
    hft_score: int

    @classmethod
    def from_samples(cls, per_exchange: Dict[str, List[float]]) -> "BenchmarkStats":
        all_samples = [sample for samples in per_exchange.values() for sample in samples]
        if not all_samples:
            all_samples = [FAILED_SAMPLE_MS]
        avg = sum(all_samples) / len(all_samples)
        low = min(all_samples)
        deviation = stddev(all_samples)
        return cls(
            exchange_latencies={
                exchange: round(sum(samples) / len(samples)) if samples else int(FAILED_SAMPLE_MS)
                for exchange, samples in per_exchange.items()
            },
            samples=all_samples,
            avg_latency=avg,
            min_latency=low,
            max_latency=max(all_samples),
            std_dev=deviation,
            hft_score=hft_score(avg, low, deviation),
        )

    def raw_results(self) -> Dict[str, object]:
        return {
            "samples": self.samples,
            "avgLatency": self.avg_latency,
            "minLatency": self.min_latency,
            "maxLatency": self.max_latency,
            "stdDev": self.std_dev,
        }

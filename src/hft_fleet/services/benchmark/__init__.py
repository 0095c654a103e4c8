from hft_fleet.services.benchmark.scoring import BenchmarkStats, hft_score
from hft_fleet.services.benchmark.service import Benchmarker

__all__ = ["BenchmarkStats", "Benchmarker", "hft_score"]

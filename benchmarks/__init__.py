"""Benchmark registry exports."""

from benchmarks.base import BaseBenchmark, BenchmarkEntry, get_benchmark, register_benchmark
from benchmarks.jsonl_bench import PolyglotBenchmark, SWEBenchmark

__all__ = [
    "BaseBenchmark",
    "BenchmarkEntry",
    "get_benchmark",
    "register_benchmark",
    "PolyglotBenchmark",
    "SWEBenchmark",
]

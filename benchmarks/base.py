"""Benchmark abstractions for sandboxed variant evaluation."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


@dataclass
class BenchmarkEntry:
    """One benchmark instance a variant is asked to solve inside a sandbox."""

    instance_id: str
    image: str
    problem_statement: str = ""
    repo_dir: str = "/testbed"
    install_commands: list[str] = field(default_factory=list)
    test_command: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseBenchmark(ABC):
    """Pluggable benchmark interface."""

    name: str = "base"
    subset_dir: str = "subsets"

    @abstractmethod
    def load_entries(self, data_path: str, instance_ids: Optional[list[str]] = None) -> list[BenchmarkEntry]:
        """Load benchmark entries, optionally restricted to ``instance_ids``."""

    def load_subset(self, subset_path: str | Path) -> list[str]:
        """Read a JSON list of instance ids (e.g. ``subsets/small.json``)."""

        payload = json.loads(Path(subset_path).read_text(encoding="utf-8"))
        if not isinstance(payload, list):
            raise ValueError(f"Subset file must contain a JSON list: {subset_path}")
        return [str(item) for item in payload]

    def subset_path(self, root: str | Path, size: str) -> Path:
        return Path(root) / self.subset_dir / f"{size}.json"


BENCHMARK_REGISTRY: dict[str, type[BaseBenchmark]] = {}


def register_benchmark(name: str):
    """Register a benchmark class by name."""

    def decorator(cls: type[BaseBenchmark]) -> type[BaseBenchmark]:
        BENCHMARK_REGISTRY[name] = cls
        cls.name = name
        return cls

    return decorator


def get_benchmark(name: str, **kwargs) -> BaseBenchmark:
    """Instantiate a registered benchmark implementation."""

    if name not in BENCHMARK_REGISTRY:
        available = ", ".join(sorted(BENCHMARK_REGISTRY)) or "<none>"
        raise ValueError(f"Unknown benchmark {name}. Available: {available}")
    return BENCHMARK_REGISTRY[name](**kwargs)

"""Parent and task selection for self-improvement attempts."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from core.archive import Archive
from core.config import SELECTION_METHODS, ConfigError
from core.fitness import INITIAL_ID, load_variant_metadata
from core.mutation import META_TASK_EMPTY_PATCHES, META_TASK_STOCHASTICITY, SelfImproveEntry

EMPTY_PATCH_RATIO = 0.1
META_TASK_PROBABILITY = 0.25


@dataclass
class CandidateInfo:
    """Per-archived-variant view used for selection."""

    accuracy_score: float
    resolved_ids: list[str] = field(default_factory=list)
    unresolved_ids: list[str] = field(default_factory=list)
    empty_patch_ids: list[str] = field(default_factory=list)
    children_count: int = 0

    @property
    def total_submitted(self) -> int:
        return len(self.resolved_ids) + len(self.unresolved_ids) + len(self.empty_patch_ids)


def score_weight(accuracy_score: float) -> float:
    """Sigmoid centred on 0.5 so mid-range scores dominate the spread."""

    return 1.0 / (1.0 + math.exp(-10.0 * (float(accuracy_score) - 0.5)))


class SelectionEngine:
    """Sample parents from the archive and pick what each should work on."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def compute_candidates(self, archive: Archive, output_dir: str | Path) -> dict[str, CandidateInfo]:
        candidates: dict[str, CandidateInfo] = {}
        parents: list[Optional[str]] = []
        for variant_id in archive.ids:
            metadata = load_variant_metadata(output_dir, variant_id)
            if variant_id != INITIAL_ID:
                parents.append(metadata.parent_commit if metadata is not None else None)
            if metadata is None or metadata.overall_performance is None:
                print(f"[Select] {variant_id} not eligible as parent: no performance data")
                continue
            performance = metadata.overall_performance
            candidates[variant_id] = CandidateInfo(
                accuracy_score=performance.accuracy_score,
                resolved_ids=list(performance.resolved_ids),
                unresolved_ids=list(performance.unresolved_ids),
                empty_patch_ids=list(performance.empty_patch_ids),
            )

        for parent in parents:
            if parent is not None and parent in candidates:
                candidates[parent].children_count += 1
        return candidates

    def select_parents(
        self,
        candidates: dict[str, CandidateInfo],
        n: int,
        method: str,
        run_baseline: Optional[str] = None,
    ) -> list[str]:
        ids = list(candidates)
        if not ids or n <= 0:
            return []

        if run_baseline == "no_darwin":
            return [ids[-1]] * n

        if method == "score_prop":
            weights = [score_weight(candidates[item].accuracy_score) for item in ids]
            return self.weighted_sample(ids, self._normalize(weights), n)

        if method == "score_child_prop":
            weights = [
                score_weight(candidates[item].accuracy_score) / (1.0 + candidates[item].children_count)
                for item in ids
            ]
            return self.weighted_sample(ids, self._normalize(weights), n)

        if method == "best":
            ranked = sorted(ids, key=lambda item: candidates[item].accuracy_score, reverse=True)
            top = ranked[: min(n, len(ranked))]
            selected = list(top)
            while len(selected) < n:
                selected.append(top[self.rng.randrange(len(top))])
            return selected

        if method not in SELECTION_METHODS:
            raise ConfigError(f"Unknown selection method: {method}")
        return [ids[self.rng.randrange(len(ids))] for _ in range(n)]

    @staticmethod
    def _normalize(weights: list[float]) -> list[float]:
        total = sum(weights)
        if total <= 0:
            return [1.0 / len(weights)] * len(weights)
        return [weight / total for weight in weights]

    def weighted_sample(self, items: Sequence[str], probabilities: Sequence[float], n: int) -> list[str]:
        """Roulette-wheel sampling with replacement."""

        selected: list[str] = []
        for _ in range(n):
            r = self.rng.random()
            cumulative = 0.0
            choice = items[-1]
            for item, probability in zip(items, probabilities):
                cumulative += probability
                if cumulative >= r:
                    choice = item
                    break
            selected.append(choice)
        return selected

    def select_entry_for_parent(self, candidate: CandidateInfo, polyglot: bool = False) -> Optional[str]:
        if polyglot:
            pool = candidate.empty_patch_ids + candidate.unresolved_ids
            if not pool:
                pool = candidate.resolved_ids + candidate.empty_patch_ids + candidate.unresolved_ids
            if not pool:
                return None
            return pool[self.rng.randrange(len(pool))]

        if (
            len(candidate.empty_patch_ids) >= EMPTY_PATCH_RATIO * candidate.total_submitted
            and self.rng.random() < META_TASK_PROBABILITY
        ):
            return META_TASK_EMPTY_PATCHES
        if self.rng.random() < META_TASK_PROBABILITY:
            return META_TASK_STOCHASTICITY
        if not candidate.unresolved_ids:
            return None
        return candidate.unresolved_ids[self.rng.randrange(len(candidate.unresolved_ids))]

    def choose_selfimproves(
        self,
        archive: Archive,
        selfimprove_size: int,
        output_dir: str | Path,
        method: str,
        run_baseline: Optional[str] = None,
        polyglot: bool = False,
    ) -> list[SelfImproveEntry]:
        """Pick this generation's batch of (parent, task) attempts."""

        candidates = self.compute_candidates(archive, output_dir)
        if not candidates:
            return []

        parents = self.select_parents(candidates, selfimprove_size, method, run_baseline=run_baseline)
        entries: list[SelfImproveEntry] = []
        for parent in parents:
            entry = self.select_entry_for_parent(candidates[parent], polyglot=polyglot)
            if entry is None:
                print(f"[Select] no task available for parent {parent}; slot dropped")
                continue
            entries.append(SelfImproveEntry(parent_commit=parent, entry=entry))
        return entries

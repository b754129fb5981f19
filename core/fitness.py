"""Fitness records and per-variant metadata files."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

METADATA_FILENAME = "metadata.json"
MODEL_PATCH_FILENAME = "model_patch.diff"
INITIAL_ID = "initial"

OUTCOME_RESOLVED = "resolved"
OUTCOME_UNRESOLVED = "unresolved"
OUTCOME_EMPTY_PATCH = "empty_patch"
OUTCOME_ERROR = "error"
OUTCOMES = (OUTCOME_RESOLVED, OUTCOME_UNRESOLVED, OUTCOME_EMPTY_PATCH, OUTCOME_ERROR)


@dataclass
class FitnessRecord:
    """Aggregate benchmark performance of one variant.

    Errored entries are never part of ``submitted``. ``accuracy_score`` is
    whatever the metadata file recorded; use ``from_outcomes`` or
    ``recompute`` to derive it from the id lists.
    """

    accuracy_score: float = 0.0
    resolved_ids: list[str] = field(default_factory=list)
    unresolved_ids: list[str] = field(default_factory=list)
    empty_patch_ids: list[str] = field(default_factory=list)

    @property
    def total_resolved_instances(self) -> int:
        return len(self.resolved_ids)

    @property
    def total_unresolved_instances(self) -> int:
        return len(self.unresolved_ids)

    @property
    def total_empty_patch_instances(self) -> int:
        return len(self.empty_patch_ids)

    @property
    def total_submitted_instances(self) -> int:
        return self.total_resolved_instances + self.total_unresolved_instances + self.total_empty_patch_instances

    def recompute(self) -> "FitnessRecord":
        submitted = self.total_submitted_instances
        self.accuracy_score = self.total_resolved_instances / submitted if submitted > 0 else 0.0
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "accuracy_score": self.accuracy_score,
            "total_resolved_instances": self.total_resolved_instances,
            "total_unresolved_instances": self.total_unresolved_instances,
            "total_empty_patch_instances": self.total_empty_patch_instances,
            "total_submitted_instances": self.total_submitted_instances,
            "resolved_ids": list(self.resolved_ids),
            "unresolved_ids": list(self.unresolved_ids),
            "empty_patch_ids": list(self.empty_patch_ids),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FitnessRecord":
        record = cls(
            resolved_ids=[str(item) for item in payload.get("resolved_ids", []) or []],
            unresolved_ids=[str(item) for item in payload.get("unresolved_ids", []) or []],
            empty_patch_ids=[str(item) for item in payload.get("empty_patch_ids", []) or []],
        )
        if payload.get("accuracy_score") is None:
            return record.recompute()
        record.accuracy_score = float(payload["accuracy_score"])
        return record

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[tuple[str, str]]) -> "FitnessRecord":
        """Build a record from ``(instance_id, outcome)`` pairs."""

        record = cls()
        buckets = {
            OUTCOME_RESOLVED: record.resolved_ids,
            OUTCOME_UNRESOLVED: record.unresolved_ids,
            OUTCOME_EMPTY_PATCH: record.empty_patch_ids,
        }
        for instance_id, outcome in outcomes:
            bucket = buckets.get(outcome)
            if bucket is not None and instance_id not in bucket:
                bucket.append(instance_id)
        return record.recompute()


@dataclass
class VariantMetadata:
    """Contents of ``<workspace>/<variant-id>/metadata.json``."""

    parent_commit: Optional[str] = None
    run_id: str = ""
    entry: Optional[str] = None
    problem_statement: Optional[str] = None
    model_patch_exists: bool = False
    model_patch_notempty: bool = False
    overall_performance: Optional[FitnessRecord] = None
    is_compiled: Optional[bool] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = (
        "parent_commit",
        "run_id",
        "entry",
        "problem_statement",
        "model_patch_exists",
        "model_patch_notempty",
        "overall_performance",
        "is_compiled",
    )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "run_id": self.run_id,
                "parent_commit": self.parent_commit,
                "entry": self.entry,
                "problem_statement": self.problem_statement,
                "model_patch_exists": bool(self.model_patch_exists),
                "model_patch_notempty": bool(self.model_patch_notempty),
                "overall_performance": (
                    self.overall_performance.to_dict() if self.overall_performance is not None else None
                ),
                "is_compiled": self.is_compiled,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "VariantMetadata":
        performance = payload.get("overall_performance")
        parent = payload.get("parent_commit")
        compiled = payload.get("is_compiled")
        return cls(
            parent_commit=str(parent) if parent else None,
            run_id=str(payload.get("run_id", "") or ""),
            entry=payload.get("entry"),
            problem_statement=payload.get("problem_statement"),
            model_patch_exists=bool(payload.get("model_patch_exists", False)),
            model_patch_notempty=bool(payload.get("model_patch_notempty", False)),
            overall_performance=FitnessRecord.from_dict(performance) if isinstance(performance, dict) else None,
            is_compiled=None if compiled is None else bool(compiled),
            extra={key: value for key, value in payload.items() if key not in cls._KNOWN_KEYS},
        )


def metadata_path(output_dir: str | Path, variant_id: str) -> Path:
    return Path(output_dir) / variant_id / METADATA_FILENAME


def load_variant_metadata(output_dir: str | Path, variant_id: str) -> Optional[VariantMetadata]:
    """Load a variant's metadata.json, or None when missing or unreadable."""

    path = metadata_path(output_dir, variant_id)
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return VariantMetadata.from_dict(payload)


def load_fitness(output_dir: str | Path, variant_id: str) -> Optional[FitnessRecord]:
    metadata = load_variant_metadata(output_dir, variant_id)
    if metadata is None:
        return None
    return metadata.overall_performance


def save_variant_metadata(output_dir: str | Path, variant_id: str, metadata: VariantMetadata) -> Path:
    path = metadata_path(output_dir, variant_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def is_compiled_self_improve(metadata: VariantMetadata, num_entries: Optional[Iterable[int]] = None) -> bool:
    """Whether a self-improvement attempt produced a usable, evaluated patch.

    ``num_entries`` lists the sizes of the evaluation tiers that were run;
    the smallest one is the minimum number of submitted entries required.
    """

    if not metadata.model_patch_exists or not metadata.model_patch_notempty:
        return False
    performance = metadata.overall_performance
    if performance is None:
        return False
    if num_entries is not None:
        sizes = list(num_entries)
        if sizes and performance.total_submitted_instances < min(sizes):
            return False
    return performance.accuracy_score > 0.0 or performance.total_resolved_instances > 0


def get_model_patch_paths(output_dir: str | Path, variant_id: str) -> list[Path]:
    """Patch chain needed to rebuild ``variant_id``, oldest ancestor first.

    Walks ``parent_commit`` pointers back to the baseline. The baseline
    itself contributes no patch; ancestors without a patch file are skipped.
    """

    chain: list[Path] = []
    seen: set[str] = set()
    current: Optional[str] = variant_id
    while current and current != INITIAL_ID and current not in seen:
        seen.add(current)
        patch_path = Path(output_dir) / current / MODEL_PATCH_FILENAME
        if patch_path.is_file():
            chain.append(patch_path)
        metadata = load_variant_metadata(output_dir, current)
        current = metadata.parent_commit if metadata is not None else None
    chain.reverse()
    return chain

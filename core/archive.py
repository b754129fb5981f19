"""Append-only variant archive with JSONL generation log persistence."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Optional

from core.config import ConfigError
from core.fitness import INITIAL_ID, load_fitness

GENERATION_LOG_FILENAME = "dgm_metadata.jsonl"
# Absorbs float error in (baseline - leeway), e.g. 0.8 - 0.1 != 0.7.
SCORE_TOLERANCE = 1e-9


class Archive:
    """Ordered, deduplicated set of variant ids eligible to act as parents."""

    def __init__(self, ids: Optional[Iterable[str]] = None) -> None:
        self._ids: list[str] = []
        for variant_id in ([INITIAL_ID] if ids is None else ids):
            self.add(str(variant_id), quiet=True)

    @classmethod
    def from_ids(cls, ids: Iterable[str]) -> "Archive":
        return cls(list(ids))

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, variant_id: object) -> bool:
        return variant_id in self._ids

    def __iter__(self):
        return iter(list(self._ids))

    def latest(self) -> Optional[str]:
        return self._ids[-1] if self._ids else None

    def add(self, variant_id: str, quiet: bool = False) -> bool:
        """Append ``variant_id`` unless it is already archived."""

        if variant_id in self._ids:
            return False
        self._ids.append(variant_id)
        if not quiet:
            print(f"[Archive] added {variant_id} (size={len(self._ids)})")
        return True

    def update(
        self,
        new_ids: Iterable[str],
        policy: str,
        output_dir: str | Path,
        noise_leeway: float,
    ) -> list[str]:
        """Apply an archive update policy and return the ids accepted."""

        new_ids = list(new_ids)
        if policy == "keep_all":
            return [variant_id for variant_id in new_ids if self.add(variant_id)]
        if policy == "keep_better":
            return self._update_keep_better(new_ids, Path(output_dir), float(noise_leeway))
        raise ConfigError(f"Unknown archive update method: {policy}")

    def _update_keep_better(self, new_ids: list[str], output_dir: Path, noise_leeway: float) -> list[str]:
        baseline = load_fitness(output_dir, INITIAL_ID)
        original_score = baseline.accuracy_score if baseline is not None else 0.0
        threshold = original_score - noise_leeway

        accepted: list[str] = []
        for variant_id in new_ids:
            fitness = load_fitness(output_dir, variant_id)
            if fitness is None:
                print(f"[Archive] rejected {variant_id} (no performance data)")
                continue
            score = fitness.accuracy_score
            if score >= threshold - SCORE_TOLERANCE:
                if self.add(variant_id, quiet=True):
                    accepted.append(variant_id)
                print(f"[Archive] accepted {variant_id} (score={score:.3f} >= threshold={threshold:.3f})")
            else:
                print(f"[Archive] rejected {variant_id} (score={score:.3f} < threshold={threshold:.3f})")
        return accepted

    @classmethod
    def load(cls, log_path: str | Path) -> "Archive":
        archive, _ = cls.load_with_generation(log_path)
        return archive

    @classmethod
    def load_with_generation(cls, log_path: str | Path) -> tuple["Archive", Optional[int]]:
        """Restore the archive snapshot from the last generation record.

        Returns a fresh archive and ``None`` when the log is absent or empty.
        """

        last = read_last_record(log_path)
        if last is None:
            return cls(), None
        snapshot = last.get("archive")
        if not isinstance(snapshot, list):
            raise ValueError(f"Generation record in {log_path} has no archive snapshot")
        generation = last.get("generation")
        return cls.from_ids(str(item) for item in snapshot), (int(generation) if generation is not None else None)

    def save(
        self,
        log_path: str | Path,
        generation: int,
        selfimprove_entries: Iterable[tuple[str, str]],
        children: Iterable[str],
        children_compiled: Iterable[str],
    ) -> dict[str, Any]:
        """Append one self-contained generation record to the log."""

        record = {
            "generation": int(generation),
            "selfimprove_entries": [[str(parent), str(entry)] for parent, entry in selfimprove_entries],
            "children": list(children),
            "children_compiled": list(children_compiled),
            "archive": list(self._ids),
        }
        append_record(log_path, record)
        print(f"[Archive] saved generation {generation} (archive size={len(self._ids)})")
        return record


def append_record(log_path: str | Path, record: dict[str, Any]) -> None:
    """Append one JSON line, repairing a missing trailing newline first."""

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    needs_newline = False
    if path.exists() and path.stat().st_size > 0:
        with path.open("rb") as file_obj:
            file_obj.seek(-1, 2)
            needs_newline = file_obj.read(1) != b"\n"
    with path.open("a", encoding="utf-8") as file_obj:
        if needs_newline:
            file_obj.write("\n")
        file_obj.write(json.dumps(record, ensure_ascii=False) + "\n")


def read_last_record(log_path: str | Path) -> Optional[dict[str, Any]]:
    path = Path(log_path)
    if not path.exists():
        return None
    lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    if not lines:
        return None
    payload = json.loads(lines[-1])
    if not isinstance(payload, dict):
        raise ValueError(f"Malformed generation record in {log_path}")
    return payload

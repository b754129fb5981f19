"""Sandboxed benchmark evaluation of one variant."""

from __future__ import annotations

import hashlib
import json
import os
import re
import sys
import tempfile
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Iterable, Optional

from tqdm import tqdm

from benchmarks.base import BenchmarkEntry
from core.config import HarnessConfig
from core.fitness import (
    MODEL_PATCH_FILENAME,
    OUTCOME_EMPTY_PATCH,
    OUTCOME_ERROR,
    OUTCOME_RESOLVED,
    OUTCOME_UNRESOLVED,
    OUTCOMES,
    FitnessRecord,
    VariantMetadata,
    get_model_patch_paths,
    load_variant_metadata,
    save_variant_metadata,
)
from core.sandbox import SandboxController, SandboxError, SandboxTimeoutError, teardown

PATCH_DIR_IN_SANDBOX = "/tmp/dgm_patches"
PROBLEM_FILE_IN_SANDBOX = "/tmp/dgm_problem_statement.txt"


@dataclass
class EvaluationResult:
    """Outcome of one benchmark entry for one variant."""

    instance_id: str
    outcome: str
    model_patch: str = ""
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "model_patch": self.model_patch,
            "outcome": self.outcome,
            "error": self.error,
            "duration_seconds": round(float(self.duration_seconds), 3),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EvaluationResult":
        outcome = str(payload.get("outcome", OUTCOME_ERROR))
        if outcome not in OUTCOMES:
            outcome = OUTCOME_ERROR
        error = payload.get("error")
        return cls(
            instance_id=str(payload.get("instance_id", "")),
            outcome=outcome,
            model_patch=str(payload.get("model_patch", "") or ""),
            error=str(error) if error is not None else None,
            duration_seconds=float(payload.get("duration_seconds", 0.0) or 0.0),
        )


def aggregate(results: Iterable[EvaluationResult]) -> FitnessRecord:
    """Fold entry results into a fitness record keyed by instance id."""

    ordered = sorted(results, key=lambda item: item.instance_id)
    return FitnessRecord.from_outcomes((item.instance_id, item.outcome) for item in ordered)


def _safe_name(value: str) -> str:
    """Docker-safe container name; the digest keeps distinct raw values apart."""

    digest = hashlib.sha1(value.encode("utf-8")).hexdigest()[:10]
    readable = re.sub(r"[^A-Za-z0-9_.-]+", "-", value).strip("-")[:110] or "x"
    return f"{readable}-{digest}"


class EvaluationHarness:
    """Run benchmark entries for a variant in disposable sandboxes.

    ``max_workers`` caps live sandboxes across every ``evaluate`` call made
    on this harness, including concurrent calls from different threads.
    """

    def __init__(
        self,
        controller: SandboxController,
        config: HarnessConfig | None = None,
        agent_dir: str | Path | None = None,
    ) -> None:
        self.controller = controller
        self.config = config or HarnessConfig()
        self.config.validate()
        self.agent_dir = Path(agent_dir) if agent_dir is not None else None
        self._slots = threading.BoundedSemaphore(int(self.config.max_workers))
        self._live_lock = threading.Lock()
        self.live_sandboxes = 0
        self.peak_live_sandboxes = 0

    @staticmethod
    def result_path(output_dir: str | Path, instance_id: str) -> Path:
        return Path(output_dir) / f"{instance_id}.json"

    def load_existing(self, output_dir: str | Path, instance_id: str) -> Optional[EvaluationResult]:
        path = self.result_path(output_dir, instance_id)
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            print(f"[Harness] Warning: ignoring unreadable result {path}: {exc}", file=sys.stderr)
            return None
        if not isinstance(payload, dict):
            return None
        return EvaluationResult.from_dict(payload)

    def evaluate(
        self,
        variant_id: str,
        entries: list[BenchmarkEntry],
        output_dir: str | Path,
        workspace_dir: str | Path | None = None,
    ) -> tuple[FitnessRecord, list[EvaluationResult]]:
        """Evaluate ``variant_id`` on ``entries`` and aggregate its fitness."""

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        patch_chain = get_model_patch_paths(workspace_dir, variant_id) if workspace_dir is not None else []

        results: dict[str, EvaluationResult] = {}
        if not entries:
            return aggregate([]), []

        with ThreadPoolExecutor(max_workers=int(self.config.max_workers)) as executor:
            futures = {
                executor.submit(self._evaluate_entry, variant_id, entry, output_path, patch_chain): entry
                for entry in entries
            }
            for future in tqdm(as_completed(futures), total=len(futures), desc=f"eval:{variant_id}"):
                entry = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    traceback.print_exception(type(exc), exc, exc.__traceback__)
                    result = EvaluationResult(instance_id=entry.instance_id, outcome=OUTCOME_ERROR, error=str(exc))
                results[entry.instance_id] = result

        ordered = [results[entry.instance_id] for entry in entries if entry.instance_id in results]
        fitness = aggregate(ordered)
        errors = sum(1 for item in ordered if item.outcome == OUTCOME_ERROR)
        print(
            f"[Harness] {variant_id}: accuracy={fitness.accuracy_score:.4f} "
            f"resolved={fitness.total_resolved_instances} submitted={fitness.total_submitted_instances} "
            f"errors={errors}"
        )
        return fitness, ordered

    def evaluate_variant(
        self,
        variant_id: str,
        entries: list[BenchmarkEntry],
        workspace_dir: str | Path,
        parent_commit: Optional[str] = None,
    ) -> FitnessRecord:
        """Evaluate and record ``overall_performance`` in the variant's metadata.json."""

        variant_dir = Path(workspace_dir) / variant_id
        fitness, _ = self.evaluate(
            variant_id,
            entries,
            output_dir=variant_dir / "predictions",
            workspace_dir=workspace_dir,
        )
        metadata = load_variant_metadata(workspace_dir, variant_id) or VariantMetadata(parent_commit=parent_commit)
        if parent_commit is not None:
            metadata.parent_commit = parent_commit
        metadata.overall_performance = fitness
        save_variant_metadata(workspace_dir, variant_id, metadata)
        return fitness

    def _acquire_slot(self) -> None:
        self._slots.acquire()
        with self._live_lock:
            self.live_sandboxes += 1
            self.peak_live_sandboxes = max(self.peak_live_sandboxes, self.live_sandboxes)

    def _release_slot(self) -> None:
        with self._live_lock:
            self.live_sandboxes -= 1
        self._slots.release()

    def _evaluate_entry(
        self,
        variant_id: str,
        entry: BenchmarkEntry,
        output_dir: Path,
        patch_chain: list[Path],
    ) -> EvaluationResult:
        existing = self.load_existing(output_dir, entry.instance_id)
        if existing is not None:
            print(f"[Harness] {variant_id}/{entry.instance_id}: reusing existing result ({existing.outcome})")
            return existing

        started = perf_counter()
        self._acquire_slot()
        try:
            result = self._run_in_sandbox(variant_id, entry, output_dir, patch_chain)
        finally:
            self._release_slot()
        result.duration_seconds = perf_counter() - started
        self._write_result(output_dir, result)
        return result

    def _run_in_sandbox(
        self,
        variant_id: str,
        entry: BenchmarkEntry,
        output_dir: Path,
        patch_chain: list[Path],
    ) -> EvaluationResult:
        cfg = self.config
        call_timeout = float(cfg.sandbox_timeout_seconds)
        name = _safe_name(f"{cfg.container_prefix}-{variant_id}-{entry.instance_id}")
        sandbox_id: Optional[str] = None
        model_patch = ""
        try:
            sandbox_id = self.controller.create(
                entry.image or cfg.image_name,
                name=name,
                workdir=entry.repo_dir,
                env={"DGM_INSTANCE_ID": entry.instance_id},
            )
            self.controller.start(sandbox_id)
            self.prepare_agent(sandbox_id, patch_chain, call_timeout)
            for command in entry.install_commands:
                self.checked_exec(sandbox_id, command, call_timeout, "install")

            self._copy_text_in(sandbox_id, entry.problem_statement, PROBLEM_FILE_IN_SANDBOX)
            solve_command = cfg.solve_command.format(
                artifact_dir=cfg.artifact_dir,
                repo_dir=entry.repo_dir,
                problem_file=PROBLEM_FILE_IN_SANDBOX,
                transcript_file=cfg.transcript_path,
                instance_id=entry.instance_id,
            )
            solve = self.controller.exec(sandbox_id, solve_command, timeout=float(cfg.timeout_seconds))
            if not solve.ok:
                print(f"[Harness] {variant_id}/{entry.instance_id}: solver exited with {solve.exit_code}")

            diff = self.controller.exec(sandbox_id, f"cd {entry.repo_dir} && {cfg.diff_command}", timeout=call_timeout)
            if not diff.ok:
                raise SandboxError(f"diff command failed ({diff.exit_code}): {diff.output[-500:]}")
            model_patch = diff.output
            self._extract_artifacts(sandbox_id, entry, output_dir, model_patch)

            if not model_patch.strip():
                return EvaluationResult(instance_id=entry.instance_id, outcome=OUTCOME_EMPTY_PATCH)

            test_command = entry.test_command or cfg.default_test_command
            if not test_command:
                raise SandboxError(f"No test command configured for {entry.instance_id}")
            check = self.controller.exec(sandbox_id, f"cd {entry.repo_dir} && {test_command}", timeout=call_timeout)
            outcome = OUTCOME_RESOLVED if check.ok else OUTCOME_UNRESOLVED
            return EvaluationResult(instance_id=entry.instance_id, outcome=outcome, model_patch=model_patch)
        except SandboxTimeoutError as exc:
            print(f"[Harness] {variant_id}/{entry.instance_id}: timeout: {exc}", file=sys.stderr)
            return EvaluationResult(
                instance_id=entry.instance_id,
                outcome=OUTCOME_ERROR,
                model_patch=model_patch,
                error=f"timeout: {exc}",
            )
        except SandboxError as exc:
            print(f"[Harness] {variant_id}/{entry.instance_id}: sandbox error: {exc}", file=sys.stderr)
            return EvaluationResult(
                instance_id=entry.instance_id,
                outcome=OUTCOME_ERROR,
                model_patch=model_patch,
                error=str(exc),
            )
        finally:
            if sandbox_id is not None:
                teardown(self.controller, sandbox_id)

    def checked_exec(self, sandbox_id: str, command: str, timeout: float, stage: str) -> None:
        result = self.controller.exec(sandbox_id, command, timeout=timeout)
        if not result.ok:
            tail = result.output[-500:]
            raise SandboxError(f"{stage} command failed ({result.exit_code}): {command}\n{tail}")

    def prepare_agent(self, sandbox_id: str, patch_chain: list[Path], timeout: float) -> None:
        """Install the variant: base agent code, then its ancestors' patches in order."""

        cfg = self.config
        if self.agent_dir is not None:
            self.controller.copy_in(sandbox_id, self.agent_dir, cfg.artifact_dir)
        for index, patch_path in enumerate(patch_chain):
            target = f"{PATCH_DIR_IN_SANDBOX}/{index:03d}_{MODEL_PATCH_FILENAME}"
            self.controller.copy_in(sandbox_id, patch_path, target)
            self.checked_exec(sandbox_id, f"cd {cfg.artifact_dir} && git apply --reject {target}", timeout, "patch")
        if cfg.agent_install_command:
            self.checked_exec(
                sandbox_id,
                f"cd {cfg.artifact_dir} && {cfg.agent_install_command}",
                timeout,
                "agent install",
            )

    def _copy_text_in(self, sandbox_id: str, text: str, dst: str) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            local = Path(tmp_dir) / "payload.txt"
            local.write_text(text, encoding="utf-8")
            self.controller.copy_in(sandbox_id, local, dst)

    def _extract_artifacts(self, sandbox_id: str, entry: BenchmarkEntry, output_dir: Path, model_patch: str) -> None:
        """Persist the patch and transcript for an entry; failures only warn."""

        artifact_dir = output_dir / entry.instance_id
        try:
            artifact_dir.mkdir(parents=True, exist_ok=True)
            (artifact_dir / MODEL_PATCH_FILENAME).write_text(model_patch, encoding="utf-8")
        except OSError as exc:
            print(f"[Harness] Warning: could not write patch for {entry.instance_id}: {exc}", file=sys.stderr)
            return
        transcript_name = Path(self.config.transcript_path).name
        try:
            self.controller.copy_out(sandbox_id, self.config.transcript_path, artifact_dir / transcript_name)
        except (SandboxError, OSError) as exc:
            print(f"[Harness] Warning: could not copy transcript for {entry.instance_id}: {exc}", file=sys.stderr)

    def _write_result(self, output_dir: Path, result: EvaluationResult) -> None:
        path = self.result_path(output_dir, result.instance_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(json.dumps(result.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

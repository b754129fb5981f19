"""Sandbox-backed self-improvement step used as the default mutator."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from benchmarks.base import BenchmarkEntry
from core.config import generate_run_id
from core.evaluator import EvaluationHarness, EvaluationResult, aggregate
from core.fitness import (
    MODEL_PATCH_FILENAME,
    OUTCOME_RESOLVED,
    FitnessRecord,
    VariantMetadata,
    get_model_patch_paths,
    is_compiled_self_improve,
    save_variant_metadata,
)
from core.mutation import MutationOutcome
from core.sandbox import SandboxError, teardown

DEFAULT_IMPROVE_COMMAND = (
    "python {artifact_dir}/self_improve_step.py --entry {entry} "
    "--git_dir {artifact_dir} --chat_history_file {transcript_file}"
)
SNAPSHOT_COMMAND = (
    "cd {artifact_dir} && git init -q && git add -A && "
    "git -c user.name=dgm -c user.email=dgm@localhost commit -q --allow-empty -m parent"
)
CHILD_DIFF_COMMAND = "cd {artifact_dir} && git add -A && git diff --cached --no-color"
# Minimum accuracy on a tier before the next, larger tier is run.
ESCALATION_MIN_ACCURACY = 0.4


@dataclass
class EvaluationTier:
    """A named benchmark subset used as one evaluation stage."""

    name: str
    entries: list[BenchmarkEntry]


class SandboxSelfImprover:
    """Let a parent agent modify its own code in a sandbox, then score the child.

    The agent's code and prompts live in ``agent_dir``/the image; this class
    only moves code, patches and results around.
    """

    def __init__(
        self,
        harness: EvaluationHarness,
        workspace_dir: str | Path,
        entries: list[BenchmarkEntry],
        improve_command: str = DEFAULT_IMPROVE_COMMAND,
        problem_statements: Optional[dict[str, str]] = None,
        escalation_tiers: Optional[list[EvaluationTier]] = None,
        num_evals: int = 1,
        escalation_min_accuracy: float = ESCALATION_MIN_ACCURACY,
        post_improve_diagnose: bool = False,
    ) -> None:
        self.harness = harness
        self.workspace_dir = Path(workspace_dir)
        self.entries = list(entries)
        self.improve_command = improve_command
        self.problem_statements = dict(problem_statements or {})
        self.escalation_tiers = list(escalation_tiers or [])
        self.num_evals = max(1, int(num_evals))
        self.escalation_min_accuracy = float(escalation_min_accuracy)
        self.post_improve_diagnose = post_improve_diagnose

    def mutate(self, parent_commit: str, entry: str) -> MutationOutcome:
        child_id = generate_run_id()
        child_dir = self.workspace_dir / child_id
        child_dir.mkdir(parents=True, exist_ok=True)
        metadata = VariantMetadata(
            run_id=child_id,
            parent_commit=parent_commit,
            entry=entry,
            problem_statement=self.problem_statements.get(entry),
        )

        patch = self._produce_patch(child_id, parent_commit, entry)
        patch_path = child_dir / MODEL_PATCH_FILENAME
        if patch is not None:
            patch_path.write_text(patch, encoding="utf-8")
        metadata.model_patch_exists = patch_path.exists()
        metadata.model_patch_notempty = bool(patch and patch.strip())
        save_variant_metadata(self.workspace_dir, child_id, metadata)

        if metadata.model_patch_notempty:
            metadata.overall_performance, tier_sizes, results = self._evaluate_child(child_id)
            if self.post_improve_diagnose:
                metadata.extra["post_improve_diagnosis"] = diagnose_results(results)
        else:
            tier_sizes = [len(self.entries)]
        metadata.is_compiled = is_compiled_self_improve(metadata, tier_sizes)
        save_variant_metadata(self.workspace_dir, child_id, metadata)
        print(f"[SelfImprove] {child_id} parent={parent_commit} entry={entry} compiled={metadata.is_compiled}")
        return MutationOutcome(child_id=child_id, compiled=bool(metadata.is_compiled))

    def _produce_patch(self, child_id: str, parent_commit: str, entry: str) -> Optional[str]:
        harness = self.harness
        cfg = harness.config
        controller = harness.controller
        call_timeout = float(cfg.sandbox_timeout_seconds)
        sandbox_id: Optional[str] = None
        try:
            sandbox_id = controller.create(
                cfg.image_name,
                name=f"{cfg.container_prefix}-selfimprove-{child_id}",
                workdir=cfg.artifact_dir,
                env={"DGM_ENTRY": entry},
            )
            controller.start(sandbox_id)
            harness.prepare_agent(sandbox_id, get_model_patch_paths(self.workspace_dir, parent_commit), call_timeout)
            harness.checked_exec(sandbox_id, SNAPSHOT_COMMAND.format(artifact_dir=cfg.artifact_dir), call_timeout, "snapshot")
            command = self.improve_command.format(
                artifact_dir=cfg.artifact_dir,
                entry=entry,
                transcript_file=cfg.transcript_path,
            )
            result = controller.exec(sandbox_id, command, timeout=float(cfg.timeout_seconds))
            if not result.ok:
                print(f"[SelfImprove] {child_id}: improve step exited with {result.exit_code}")
            diff = controller.exec(sandbox_id, CHILD_DIFF_COMMAND.format(artifact_dir=cfg.artifact_dir), timeout=call_timeout)
            try:
                controller.copy_out(sandbox_id, cfg.transcript_path, self.workspace_dir / child_id / Path(cfg.transcript_path).name)
            except (SandboxError, OSError) as exc:
                print(f"[SelfImprove] Warning: no transcript for {child_id}: {exc}", file=sys.stderr)
            return diff.output if diff.ok else None
        except SandboxError as exc:
            print(f"[SelfImprove] {child_id}: sandbox error: {exc}", file=sys.stderr)
            return None
        finally:
            if sandbox_id is not None:
                teardown(controller, sandbox_id)

    def _evaluate_child(self, child_id: str) -> tuple[FitnessRecord, list[int], list[EvaluationResult]]:
        """Score a child tier by tier, stopping once it falls below the escalation bar.

        Each tier is evaluated ``num_evals`` times into its own predictions
        directory. Id lists come from the first repeat; with more than one
        repeat the accuracy is the mean over repeats.
        """

        tiers = [EvaluationTier("small", self.entries)] + self.escalation_tiers
        repeats: list[list[EvaluationResult]] = [[] for _ in range(self.num_evals)]
        tier_sizes: list[int] = []
        fitness = aggregate([])
        for index, tier in enumerate(tiers):
            if index > 0 and fitness.accuracy_score < self.escalation_min_accuracy:
                print(
                    f"[SelfImprove] {child_id}: accuracy {fitness.accuracy_score:.3f} below "
                    f"{self.escalation_min_accuracy:.3f}; skipping {tier.name} and later tiers"
                )
                break
            for repeat in range(self.num_evals):
                _, results = self.harness.evaluate(
                    child_id,
                    tier.entries,
                    output_dir=self.workspace_dir / child_id / "predictions" / f"{tier.name}_{repeat}",
                    workspace_dir=self.workspace_dir,
                )
                repeats[repeat].extend(results)
            tier_sizes.append(len(tier.entries))
            fitness = aggregate(repeats[0])
            if self.num_evals > 1:
                scores = [aggregate(results).accuracy_score for results in repeats]
                fitness.accuracy_score = sum(scores) / len(scores)
        return fitness, tier_sizes, repeats[0]


def diagnose_results(results: list[EvaluationResult]) -> dict[str, Any]:
    """Summarise what a child got wrong, grouped by outcome."""

    failures: dict[str, list[dict[str, Any]]] = {}
    for result in results:
        if result.outcome == OUTCOME_RESOLVED:
            continue
        detail: dict[str, Any] = {"instance_id": result.instance_id}
        if result.error:
            detail["error"] = result.error[:500]
        failures.setdefault(result.outcome, []).append(detail)
    return {
        "evaluated": len(results),
        "failed": sum(len(items) for items in failures.values()),
        "failures": failures,
    }

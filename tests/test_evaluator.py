from __future__ import annotations

import json
import threading
import time
import unittest
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path
from tempfile import TemporaryDirectory

from benchmarks.base import BenchmarkEntry
from core.config import HarnessConfig
from core.evaluator import EvaluationHarness, EvaluationResult, _safe_name, aggregate
from core.fitness import load_fitness
from core.sandbox import ExecResult, SandboxTimeoutError


class _FakeController:
    """In-memory sandbox controller recording lifecycle calls."""

    def __init__(
        self,
        patches: dict[str, str] | None = None,
        hang: set[str] | None = None,
        delay: float = 0.0,
        broken_diff: set[str] | None = None,
    ) -> None:
        self.patches = dict(patches or {})
        self.broken_diff = set(broken_diff or ())
        self.hang = set(hang or ())
        self.delay = delay
        self.lock = threading.Lock()
        self.live = 0
        self.peak = 0
        self.created: list[str] = []
        self.removed: list[str] = []
        self.instances: dict[str, str] = {}

    def create(self, image, name, workdir="/", env=None):
        with self.lock:
            self.live += 1
            self.peak = max(self.peak, self.live)
            sandbox_id = f"sb-{len(self.created)}"
            self.created.append(name)
            self.instances[sandbox_id] = (env or {}).get("DGM_INSTANCE_ID", "")
        return sandbox_id

    def start(self, sandbox_id):
        return None

    def exec(self, sandbox_id, cmd, timeout):
        instance_id = self.instances[sandbox_id]
        if "coding_agent.py" in cmd:
            if self.delay:
                time.sleep(self.delay)
            if instance_id in self.hang:
                raise SandboxTimeoutError(f"Command timed out after {timeout}s in {sandbox_id}")
            return ExecResult(output="", exit_code=0)
        if "diff" in cmd:
            if instance_id in self.broken_diff:
                return ExecResult(output="fatal: not a git repository", exit_code=128)
            return ExecResult(output=self.patches.get(instance_id, ""), exit_code=0)
        if "run_tests" in cmd:
            return ExecResult(output="", exit_code=0 if instance_id.startswith("pass") else 1)
        return ExecResult(output="", exit_code=0)

    def copy_in(self, sandbox_id, src, dst):
        return None

    def copy_out(self, sandbox_id, src, dst):
        Path(dst).write_text("transcript", encoding="utf-8")

    def stop(self, sandbox_id, timeout=10):
        return None

    def remove(self, sandbox_id, force=True):
        with self.lock:
            self.live -= 1
            self.removed.append(sandbox_id)


def _entries(*instance_ids: str) -> list[BenchmarkEntry]:
    return [BenchmarkEntry(instance_id=item, image="img", test_command="./run_tests") for item in instance_ids]


def _quiet_harness(controller: _FakeController, max_workers: int = 2) -> EvaluationHarness:
    return EvaluationHarness(controller, HarnessConfig(max_workers=max_workers, agent_install_command=""))


class EvaluationHarnessTests(unittest.TestCase):
    def test_outcomes_are_classified_and_aggregated(self) -> None:
        controller = _FakeController(patches={"pass-1": "diff --git a b", "fail-1": "diff --git c d"})
        harness = _quiet_harness(controller)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            fitness, results = harness.evaluate("v1", _entries("pass-1", "fail-1", "empty-1"), td)
            artifact = Path(td) / "pass-1" / "model_patch.diff"
            self.assertEqual(artifact.read_text(encoding="utf-8"), "diff --git a b")
            self.assertTrue((Path(td) / "pass-1" / "chat_history.md").is_file())

        self.assertEqual([item.instance_id for item in results], ["pass-1", "fail-1", "empty-1"])
        self.assertEqual([item.outcome for item in results], ["resolved", "unresolved", "empty_patch"])
        self.assertEqual(fitness.resolved_ids, ["pass-1"])
        self.assertEqual(fitness.unresolved_ids, ["fail-1"])
        self.assertEqual(fitness.empty_patch_ids, ["empty-1"])
        self.assertAlmostEqual(fitness.accuracy_score, 1 / 3)

    def test_never_exceeds_max_workers(self) -> None:
        ids = [f"pass-{index}" for index in range(8)]
        controller = _FakeController(patches={item: "patch" for item in ids}, delay=0.05)
        harness = _quiet_harness(controller, max_workers=3)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            fitness, _ = harness.evaluate("v1", _entries(*ids), td)

        self.assertEqual(fitness.total_resolved_instances, 8)
        self.assertLessEqual(controller.peak, 3)
        self.assertLessEqual(harness.peak_live_sandboxes, 3)
        self.assertEqual(controller.live, 0)

    def test_concurrent_evaluations_share_the_cap(self) -> None:
        controller = _FakeController(patches={f"pass-{index}": "patch" for index in range(6)}, delay=0.05)
        harness = _quiet_harness(controller, max_workers=2)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            threads = [
                threading.Thread(
                    target=harness.evaluate,
                    args=(variant, _entries(*[f"pass-{index}" for index in range(6)]), Path(td) / variant),
                )
                for variant in ("v1", "v2")
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        self.assertLessEqual(controller.peak, 2)

    def test_existing_result_is_not_rerun(self) -> None:
        controller = _FakeController(patches={"pass-2": "patch"})
        harness = _quiet_harness(controller)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            previous = EvaluationResult(instance_id="pass-1", outcome="resolved", model_patch="old")
            Path(td, "pass-1.json").write_text(json.dumps(previous.to_dict()), encoding="utf-8")
            fitness, results = harness.evaluate("v1", _entries("pass-1", "pass-2"), td)
            self.assertTrue(Path(td, "pass-2.json").is_file())

        self.assertEqual(len(controller.created), 1)
        self.assertIn("pass-2", controller.created[0])
        self.assertEqual(results[0].model_patch, "old")
        self.assertEqual(fitness.resolved_ids, ["pass-1", "pass-2"])

    def test_timeout_marks_error_and_tears_down(self) -> None:
        controller = _FakeController(patches={"pass-1": "patch"}, hang={"slow-1"})
        harness = _quiet_harness(controller)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            fitness, results = harness.evaluate("v1", _entries("slow-1", "pass-1"), td)
            stored = json.loads(Path(td, "slow-1.json").read_text(encoding="utf-8"))

        self.assertEqual(results[0].outcome, "error")
        self.assertIn("timeout", results[0].error)
        self.assertEqual(stored["outcome"], "error")
        self.assertEqual(len(controller.removed), 2)
        self.assertEqual(controller.live, 0)
        self.assertEqual(fitness.total_submitted_instances, 1)
        self.assertEqual(fitness.accuracy_score, 1.0)

    def test_failed_diff_is_an_error_not_an_empty_patch(self) -> None:
        controller = _FakeController(patches={"pass-1": "patch"}, broken_diff={"broken-1"})
        harness = _quiet_harness(controller)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            fitness, results = harness.evaluate("v1", _entries("broken-1", "pass-1"), td)

        self.assertEqual(results[0].outcome, "error")
        self.assertIn("diff command failed", results[0].error)
        self.assertEqual(fitness.empty_patch_ids, [])
        self.assertEqual(fitness.accuracy_score, 1.0)
        self.assertEqual(controller.live, 0)

    def test_similar_instance_ids_get_distinct_sandbox_names(self) -> None:
        controller = _FakeController()
        harness = _quiet_harness(controller)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            harness.evaluate("v1", _entries("a/b", "a-b"), td)
        self.assertEqual(len(set(controller.created)), 2)

    def test_sandbox_names_are_bounded_and_docker_safe(self) -> None:
        long_name = _safe_name("dgm-v1-" + "x" * 300)
        self.assertLessEqual(len(long_name), 128)
        self.assertNotEqual(_safe_name("dgm-v1-a/b"), _safe_name("dgm-v1-a-b"))
        self.assertRegex(_safe_name("dgm-v1-a b/c"), r"^[A-Za-z0-9_.-]+$")

    def test_evaluate_variant_records_overall_performance(self) -> None:
        controller = _FakeController(patches={"pass-1": "patch"})
        harness = _quiet_harness(controller)
        with TemporaryDirectory() as td, redirect_stdout(StringIO()), redirect_stderr(StringIO()):
            harness.evaluate_variant("child", _entries("pass-1", "fail-1"), td, parent_commit="initial")
            fitness = load_fitness(td, "child")
            self.assertTrue(Path(td, "child", "predictions", "pass-1.json").is_file())

        self.assertIsNotNone(fitness)
        self.assertEqual(fitness.resolved_ids, ["pass-1"])
        self.assertEqual(fitness.empty_patch_ids, ["fail-1"])


class AggregateTests(unittest.TestCase):
    def test_errors_are_excluded_from_accuracy(self) -> None:
        fitness = aggregate(
            [
                EvaluationResult(instance_id="b", outcome="resolved"),
                EvaluationResult(instance_id="a", outcome="unresolved"),
                EvaluationResult(instance_id="c", outcome="error"),
                EvaluationResult(instance_id="d", outcome="error"),
            ]
        )
        self.assertEqual(fitness.total_submitted_instances, 2)
        self.assertEqual(fitness.accuracy_score, 0.5)

    def test_order_does_not_change_result(self) -> None:
        results = [
            EvaluationResult(instance_id="x", outcome="resolved"),
            EvaluationResult(instance_id="y", outcome="empty_patch"),
            EvaluationResult(instance_id="z", outcome="unresolved"),
        ]
        self.assertEqual(aggregate(results).to_dict(), aggregate(list(reversed(results))).to_dict())

    def test_no_submissions_scores_zero(self) -> None:
        self.assertEqual(aggregate([EvaluationResult(instance_id="a", outcome="error")]).accuracy_score, 0.0)


if __name__ == "__main__":
    unittest.main()

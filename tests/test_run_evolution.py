from __future__ import annotations

import json
import unittest
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path
from tempfile import TemporaryDirectory

from benchmarks import SWEBenchmark
from run_evolution import build_parser, load_evaluation_tiers


def _write_fixture(root: Path, subsets: dict[str, list[str]]) -> Path:
    data_path = root / "entries.jsonl"
    ids = sorted({item for items in subsets.values() for item in items})
    data_path.write_text("\n".join(json.dumps({"instance_id": item}) for item in ids) + "\n", encoding="utf-8")
    subset_dir = root / SWEBenchmark.subset_dir
    subset_dir.mkdir(parents=True)
    for name, items in subsets.items():
        (subset_dir / f"{name}.json").write_text(json.dumps(items), encoding="utf-8")
    return data_path


class LoadEvaluationTiersTests(unittest.TestCase):
    def test_later_tiers_drop_ids_already_scored(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            root = Path(td)
            data_path = _write_fixture(
                root,
                {"small": ["a", "b"], "medium": ["a", "c", "d"], "big": ["b", "c", "e"]},
            )
            tiers = load_evaluation_tiers(SWEBenchmark(), root, str(data_path), ("small", "medium", "big"))

        self.assertEqual([tier.name for tier in tiers], ["small", "medium", "big"])
        self.assertEqual([[entry.instance_id for entry in tier.entries] for tier in tiers], [["a", "b"], ["c", "d"], ["e"]])

    def test_missing_subset_stops_escalation(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()) as out:
            root = Path(td)
            data_path = _write_fixture(root, {"small": ["a"], "big": ["b"]})
            tiers = load_evaluation_tiers(SWEBenchmark(), root, str(data_path), ("small", "medium", "big"))

        self.assertEqual([tier.name for tier in tiers], ["small"])
        self.assertIn("no medium subset", out.getvalue())

    def test_tier_with_only_repeated_ids_is_skipped(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            root = Path(td)
            data_path = _write_fixture(root, {"small": ["a", "b"], "medium": ["b"], "big": ["c"]})
            tiers = load_evaluation_tiers(SWEBenchmark(), root, str(data_path), ("small", "medium", "big"))

        self.assertEqual([tier.name for tier in tiers], ["small", "big"])

    def test_small_subset_is_required(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            root = Path(td)
            data_path = _write_fixture(root, {"medium": ["a"]})
            with self.assertRaises(FileNotFoundError):
                load_evaluation_tiers(SWEBenchmark(), root, str(data_path), ("small",))


class ParserTests(unittest.TestCase):
    def test_depth_flags_are_parsed(self) -> None:
        args = build_parser().parse_args(["--shallow-eval", "--no-full-eval", "--num-swe-evals", "3"])
        self.assertTrue(args.shallow_eval)
        self.assertTrue(args.no_full_eval)
        self.assertEqual(args.num_swe_evals, 3)

    def test_subset_flag_is_gone(self) -> None:
        with redirect_stderr(StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["--subset", "small"])


if __name__ == "__main__":
    unittest.main()

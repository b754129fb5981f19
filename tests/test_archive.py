from __future__ import annotations

import json
import unittest
from contextlib import redirect_stdout
from io import StringIO
from pathlib import Path
from tempfile import TemporaryDirectory

from core.archive import GENERATION_LOG_FILENAME, Archive, append_record, read_last_record
from core.config import ConfigError
from core.fitness import FitnessRecord, VariantMetadata, save_variant_metadata


def _write_score(output_dir: str, variant_id: str, score: float, parent: str | None = "initial") -> None:
    record = FitnessRecord(accuracy_score=score, resolved_ids=["a"], unresolved_ids=["b"])
    save_variant_metadata(output_dir, variant_id, VariantMetadata(parent_commit=parent, overall_performance=record))


class ArchiveTests(unittest.TestCase):
    def test_fresh_archive_is_seeded_with_initial(self) -> None:
        self.assertEqual(Archive().ids, ["initial"])
        self.assertEqual(Archive([]).ids, [])

    def test_add_is_idempotent(self) -> None:
        archive = Archive()
        with redirect_stdout(StringIO()):
            self.assertTrue(archive.add("child"))
            self.assertFalse(archive.add("child"))
        self.assertEqual(len(archive), 2)
        self.assertEqual(archive.latest(), "child")
        self.assertIn("child", archive)

    def test_keep_all_appends_in_input_order(self) -> None:
        archive = Archive()
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            accepted = archive.update(["c2", "c1", "c2"], "keep_all", td, 0.1)
        self.assertEqual(accepted, ["c2", "c1"])
        self.assertEqual(archive.ids, ["initial", "c2", "c1"])

    def test_keep_better_threshold_is_inclusive(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            _write_score(td, "initial", 0.8, parent=None)
            _write_score(td, "at_threshold", 0.7)
            _write_score(td, "below_threshold", 0.699999)
            archive = Archive()
            accepted = archive.update(["at_threshold", "below_threshold"], "keep_better", td, 0.1)
        self.assertEqual(accepted, ["at_threshold"])
        self.assertEqual(archive.ids, ["initial", "at_threshold"])

    def test_keep_better_rejects_children_without_performance(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            _write_score(td, "initial", 0.2, parent=None)
            save_variant_metadata(td, "unscored", VariantMetadata(parent_commit="initial"))
            archive = Archive()
            accepted = archive.update(["unscored", "missing"], "keep_better", td, 0.1)
        self.assertEqual(accepted, [])
        self.assertEqual(archive.ids, ["initial"])

    def test_unknown_policy_raises(self) -> None:
        with TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                Archive().update(["x"], "keep_some", td, 0.1)


class GenerationLogTests(unittest.TestCase):
    def test_save_then_load_restores_last_snapshot(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            log_path = Path(td) / GENERATION_LOG_FILENAME
            archive = Archive()
            archive.save(log_path, 0, [("initial", "django__django-1")], ["c1"], [])
            archive.add("c2")
            archive.save(log_path, 1, [("initial", "solve_stochasticity")], ["c2"], ["c2"])

            lines = log_path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            self.assertEqual(json.loads(lines[0])["archive"], ["initial"])

            restored, generation = Archive.load_with_generation(log_path)
        self.assertEqual(restored.ids, ["initial", "c2"])
        self.assertEqual(generation, 1)

    def test_record_fields(self) -> None:
        with TemporaryDirectory() as td, redirect_stdout(StringIO()):
            log_path = Path(td) / "run" / GENERATION_LOG_FILENAME
            Archive().save(log_path, 3, [("initial", "x")], ["c1", "c2"], ["c2"])
            record = read_last_record(log_path)
        self.assertEqual(
            record,
            {
                "generation": 3,
                "selfimprove_entries": [["initial", "x"]],
                "children": ["c1", "c2"],
                "children_compiled": ["c2"],
                "archive": ["initial"],
            },
        )

    def test_append_repairs_missing_trailing_newline(self) -> None:
        with TemporaryDirectory() as td:
            log_path = Path(td) / GENERATION_LOG_FILENAME
            log_path.write_text(json.dumps({"generation": 0, "archive": ["initial"]}), encoding="utf-8")
            append_record(log_path, {"generation": 1, "archive": ["initial", "c1"]})
            lines = log_path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            self.assertEqual(json.loads(lines[1])["generation"], 1)
            self.assertEqual(Archive.load(log_path).ids, ["initial", "c1"])

    def test_absent_or_empty_log_gives_fresh_archive(self) -> None:
        with TemporaryDirectory() as td:
            log_path = Path(td) / GENERATION_LOG_FILENAME
            archive, generation = Archive.load_with_generation(log_path)
            self.assertEqual(archive.ids, ["initial"])
            self.assertIsNone(generation)

            log_path.write_text("\n", encoding="utf-8")
            archive, generation = Archive.load_with_generation(log_path)
            self.assertEqual(archive.ids, ["initial"])
            self.assertIsNone(generation)


if __name__ == "__main__":
    unittest.main()

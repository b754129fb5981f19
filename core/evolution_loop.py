"""Generation driver for the open-ended self-improvement loop (select -> mutate -> archive)."""

from __future__ import annotations

import json
import random
import shutil
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from core.archive import GENERATION_LOG_FILENAME, Archive
from core.config import EvolutionConfig, generate_run_id
from core.fitness import INITIAL_ID
from core.mutation import MutationOutcome, Mutator, SelfImproveEntry
from core.selection import SelectionEngine

STATE_INITIALIZING = "initializing"
STATE_EVOLVING = "evolving"
STATE_COMPLETED = "completed"


class BaselineMissingError(FileNotFoundError):
    """The pre-evaluated baseline fixture is missing on a fresh run."""


def resolve_run_dir(config: EvolutionConfig, run_id: Optional[str] = None) -> tuple[str, Path]:
    """Run id and output directory; a resumed run keeps its directory name."""

    if config.continue_from:
        resumed = Path(config.continue_from)
        return run_id or resumed.name, resumed
    if run_id is None:
        run_id = generate_run_id()
    return run_id, Path(config.output_root) / run_id


class GenerationDriver:
    """Drive generations of parent selection, mutation and archive updates.

    The archive and the generation log are only touched from the thread
    calling ``run``; mutation attempts run on a bounded worker pool.
    """

    def __init__(
        self,
        mutator: Mutator,
        config: EvolutionConfig | None = None,
        selection: SelectionEngine | None = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.config = config or EvolutionConfig()
        self.config.validate()
        self.mutator = mutator
        self.selection = selection or SelectionEngine(random.Random(self.config.seed))

        self.run_id, self.output_dir = resolve_run_dir(self.config, run_id)
        self.log_path = self.output_dir / GENERATION_LOG_FILENAME
        self.logs_dir = self.output_dir / "_logs"
        self.generation_trace_path = self.logs_dir / "generation_trace.jsonl"
        self._log_lock = threading.Lock()

        self.state = STATE_INITIALIZING
        self.archive: Archive | None = None
        self.next_generation = 0

    def initialize(self) -> tuple[Archive, int]:
        """Recover or seed the archive and return it with the first generation to run."""

        self.output_dir.mkdir(parents=True, exist_ok=True)
        start_generation = 0
        if self.config.continue_from:
            prev_log = Path(self.config.continue_from) / GENERATION_LOG_FILENAME
            archive, last_generation = Archive.load_with_generation(prev_log)
            if last_generation is not None:
                start_generation = last_generation + 1
            print(f"[Init] resuming from {prev_log} at generation {start_generation}")
        else:
            archive = Archive()

        initial_dst = self.output_dir / INITIAL_ID
        if not self.config.continue_from and not initial_dst.exists():
            initial_src = Path(self.config.fixture_root) / self.config.initial_fixture_name
            if not initial_src.is_dir():
                raise BaselineMissingError(
                    f"Need evaluation results for the initial version at {initial_src} "
                    "before starting a fresh run."
                )
            shutil.copytree(initial_src, initial_dst)

        self.archive = archive
        self.next_generation = start_generation
        return archive, start_generation

    def run(self) -> dict[str, Any]:
        """Run every remaining generation and return a run summary."""

        archive, start_generation = self.initialize()
        self.state = STATE_EVOLVING
        self._append_jsonl(
            self.generation_trace_path,
            {
                "run_id": self.run_id,
                "event": "run_start",
                "time": self._now_iso(),
                "start_generation": start_generation,
                "max_generation": self.config.max_generation,
                "selfimprove_size": self.config.selfimprove_size,
                "selfimprove_workers": self.config.selfimprove_workers,
                "method": self.config.choose_selfimproves_method,
                "update_archive": self.config.update_archive,
                "archive": archive.ids,
            },
        )
        print(f"[Run {self.run_id}] output={self.output_dir} archive={archive.ids}")

        history: list[dict[str, Any]] = []
        for generation in range(start_generation, self.config.max_generation):
            record = self.run_generation(generation)
            if record is not None:
                history.append(record)
            self.next_generation = generation + 1

        self.state = STATE_COMPLETED
        self._append_jsonl(
            self.generation_trace_path,
            {
                "run_id": self.run_id,
                "event": "run_end",
                "time": self._now_iso(),
                "archive": archive.ids,
                "generations_recorded": len(history),
            },
        )
        print(f"[Run {self.run_id}] completed; archive size={len(archive)}")
        return {
            "run_id": self.run_id,
            "output_dir": str(self.output_dir),
            "archive": archive.ids,
            "history": history,
            "log_files": {
                "generation_log": str(self.log_path),
                "generation_trace": str(self.generation_trace_path),
            },
        }

    def run_generation(self, generation: int) -> Optional[dict[str, Any]]:
        """Run one generation; returns the persisted record, or None when skipped."""

        if self.archive is None:
            raise RuntimeError("GenerationDriver.initialize() must run before run_generation()")
        archive = self.archive
        cfg = self.config
        print(f"\n[Gen {generation}] archive size={len(archive)}")

        entries = self.selection.choose_selfimproves(
            archive,
            cfg.selfimprove_size,
            self.output_dir,
            cfg.choose_selfimproves_method,
            run_baseline=cfg.run_baseline,
            polyglot=cfg.polyglot,
        )
        if not entries:
            print(f"[Gen {generation}] no self-improvement entries selected; skipping")
            self._append_jsonl(
                self.generation_trace_path,
                {"run_id": self.run_id, "event": "generation_skipped", "time": self._now_iso(), "generation": generation},
            )
            return None

        self._append_jsonl(
            self.generation_trace_path,
            {
                "run_id": self.run_id,
                "event": "generation_start",
                "time": self._now_iso(),
                "generation": generation,
                "selfimprove_entries": [list(entry.as_pair()) for entry in entries],
            },
        )
        for entry in entries:
            kind = "meta-task" if entry.is_meta_task else "entry"
            print(f"[Gen {generation}] self-improve parent={entry.parent_commit} {kind}={entry.entry}")

        outcomes = self._dispatch(generation, entries)
        children = [outcome.child_id for outcome in outcomes if outcome is not None]
        children_compiled = [outcome.child_id for outcome in outcomes if outcome is not None and outcome.compiled]

        accepted = archive.update(children_compiled, cfg.update_archive, self.output_dir, cfg.eval_noise)
        record = archive.save(
            self.log_path,
            generation,
            [entry.as_pair() for entry in entries],
            children,
            children_compiled,
        )
        self._append_jsonl(
            self.generation_trace_path,
            {
                "run_id": self.run_id,
                "event": "generation_end",
                "time": self._now_iso(),
                "generation": generation,
                "children": children,
                "children_compiled": children_compiled,
                "accepted": accepted,
                "archive_size": len(archive),
            },
        )
        print(
            f"[Gen {generation}] children={len(children)} compiled={len(children_compiled)} "
            f"accepted={len(accepted)} archive size={len(archive)}"
        )
        return record

    def _dispatch(self, generation: int, entries: list[SelfImproveEntry]) -> list[Optional[MutationOutcome]]:
        """Run every entry on the mutation pool; results keep input order."""

        outcomes: list[Optional[MutationOutcome]] = [None] * len(entries)
        workers = max(1, min(int(self.config.selfimprove_workers), len(entries)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.mutator.mutate, entry.parent_commit, entry.entry): index
                for index, entry in enumerate(entries)
            }
            for future in as_completed(futures):
                index = futures[future]
                entry = entries[index]
                try:
                    outcome = future.result()
                except Exception as exc:
                    traceback.print_exception(type(exc), exc, exc.__traceback__)
                    print(f"[Gen {generation}] self-improve failed parent={entry.parent_commit} entry={entry.entry}: {exc}")
                    self._append_jsonl(
                        self.generation_trace_path,
                        {
                            "run_id": self.run_id,
                            "event": "selfimprove_failed",
                            "time": self._now_iso(),
                            "generation": generation,
                            "parent_commit": entry.parent_commit,
                            "entry": entry.entry,
                            "error": str(exc)[:500],
                        },
                    )
                    continue
                if outcome is None or not getattr(outcome, "child_id", ""):
                    continue
                outcomes[index] = outcome
        return outcomes

    @staticmethod
    def _now_iso() -> str:
        return datetime.now().isoformat(timespec="seconds")

    def _append_jsonl(self, path: Path, payload: dict[str, Any]) -> None:
        with self._log_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as file_obj:
                file_obj.write(json.dumps(payload, ensure_ascii=False) + "\n")

"""Run configuration for the evolution loop and the evaluation harness."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

SELECTION_METHODS = ("random", "score_prop", "score_child_prop", "best")
ARCHIVE_POLICIES = ("keep_better", "keep_all")
RUN_BASELINES = ("no_darwin",)
EVALUATION_TIERS = ("small", "medium", "big")


class ConfigError(ValueError):
    """Raised when a run configuration is invalid."""


@dataclass
class EvolutionConfig:
    """Config for the generation driver."""

    max_generation: int = 80
    selfimprove_size: int = 2
    selfimprove_workers: int = 2
    choose_selfimproves_method: str = "score_child_prop"
    continue_from: Optional[str] = None
    update_archive: str = "keep_all"
    num_swe_evals: int = 1
    post_improve_diagnose: bool = False
    shallow_eval: bool = False
    polyglot: bool = False
    eval_noise: float = 0.1
    no_full_eval: bool = False
    run_baseline: Optional[str] = None
    output_root: str = "output_dgm"
    fixture_root: str = "."
    seed: Optional[int] = None

    def validate(self) -> None:
        if int(self.max_generation) <= 0:
            raise ConfigError("max_generation must be greater than 0")
        if int(self.selfimprove_size) <= 0:
            raise ConfigError("selfimprove_size must be greater than 0")
        if int(self.selfimprove_workers) <= 0:
            raise ConfigError("selfimprove_workers must be greater than 0")
        if int(self.num_swe_evals) <= 0:
            raise ConfigError("num_swe_evals must be greater than 0")
        if self.choose_selfimproves_method not in SELECTION_METHODS:
            raise ConfigError(
                f"Invalid choose_selfimproves_method: {self.choose_selfimproves_method}. "
                f"Must be one of: {list(SELECTION_METHODS)}"
            )
        if self.update_archive not in ARCHIVE_POLICIES:
            raise ConfigError(
                f"Invalid update_archive method: {self.update_archive}. "
                f"Must be one of: {list(ARCHIVE_POLICIES)}"
            )
        if not 0.0 <= float(self.eval_noise) <= 1.0:
            raise ConfigError(f"eval_noise must be between 0.0 and 1.0, got: {self.eval_noise}")
        if self.run_baseline is not None and self.run_baseline not in RUN_BASELINES:
            raise ConfigError(
                f"Invalid run_baseline: {self.run_baseline}. Must be one of: {list(RUN_BASELINES)}"
            )

    @property
    def initial_fixture_name(self) -> str:
        return "initial_polyglot" if self.polyglot else "initial"

    @property
    def evaluation_tiers(self) -> tuple[str, ...]:
        """Benchmark subsets a child is scored on, cheapest first."""

        if self.shallow_eval:
            return EVALUATION_TIERS[:1]
        if self.no_full_eval:
            return EVALUATION_TIERS[:2]
        return EVALUATION_TIERS


@dataclass
class HarnessConfig:
    """Config for sandboxed benchmark evaluation."""

    max_workers: int = 5
    timeout_seconds: int = 3600
    sandbox_timeout_seconds: int = 1800
    image_name: str = "dgm"
    container_prefix: str = "dgm"
    artifact_dir: str = "/dgm"
    agent_install_command: str = "python -m pip install -q -r requirements.txt"
    solve_command: str = (
        "python {artifact_dir}/coding_agent.py --problem_statement_file {problem_file} "
        "--git_dir {repo_dir} --chat_history_file {transcript_file} --instance_id {instance_id}"
    )
    diff_command: str = "git -c core.fileMode=false diff --no-color"
    default_test_command: str = ""
    transcript_path: str = "/tmp/chat_history.md"

    def validate(self) -> None:
        if int(self.max_workers) <= 0:
            raise ConfigError("max_workers must be greater than 0")
        if int(self.timeout_seconds) <= 0:
            raise ConfigError("timeout_seconds must be greater than 0")
        if int(self.sandbox_timeout_seconds) <= 0:
            raise ConfigError("sandbox_timeout_seconds must be greater than 0")
        if not str(self.image_name).strip():
            raise ConfigError("image_name must not be empty")


def generate_run_id() -> str:
    """Timestamp id used for run directories and fresh variants."""

    return datetime.now().strftime("%Y%m%d%H%M%S_%f")


def load_experiment_config(path: str | None, allow_missing: bool = False) -> dict[str, Any]:
    """Load JSON/YAML experiment config file."""

    if not path:
        return {}

    config_path = Path(path)
    if not config_path.exists():
        if allow_missing:
            return {}
        raise FileNotFoundError(f"Config file not found: {path}")

    if config_path.suffix.lower() == ".json":
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        return payload if isinstance(payload, dict) else {}

    import yaml

    payload = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    return payload if isinstance(payload, dict) else {}


def config_from_section(cls, section: Any, **overrides: Any):
    """Build a config dataclass from a mapping, ignoring unknown keys.

    ``None`` overrides are skipped so CLI defaults do not mask file values.
    """

    known = {item.name for item in fields(cls)}
    values: dict[str, Any] = {}
    if isinstance(section, dict):
        values.update({key: value for key, value in section.items() if key in known})
    values.update({key: value for key, value in overrides.items() if key in known and value is not None})
    return cls(**values)

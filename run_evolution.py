"""CLI entrypoint for running the self-improvement evolution loop."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from benchmarks import BaseBenchmark, get_benchmark
from core.config import EvolutionConfig, HarnessConfig, config_from_section, load_experiment_config
from core.env_utils import harness_config_from_env, load_env_file
from core.evaluator import EvaluationHarness
from core.evolution_loop import GenerationDriver, resolve_run_dir
from core.sandbox import DockerSandboxController
from core.self_improve import EvaluationTier, SandboxSelfImprover


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Open-ended evolution of self-improving coding agents")
    default_config_path = "configs/evolution.yaml"
    parser.add_argument(
        "--config",
        default=default_config_path,
        help=f"Path to YAML/JSON experiment config (default: {default_config_path})",
    )
    parser.add_argument("--no-config", action="store_true", help="Ignore config file and use only CLI args + env vars")
    parser.add_argument("--env-file", default=".env", help="Path to env file (default: .env)")

    parser.add_argument("--max-generation", type=int, default=None, help="Maximum number of evolution iterations")
    parser.add_argument("--selfimprove-size", type=int, default=None, help="Self-improvement attempts per generation")
    parser.add_argument("--selfimprove-workers", type=int, default=None, help="Parallel self-improvement workers")
    parser.add_argument(
        "--choose-selfimproves-method",
        default=None,
        choices=["random", "score_prop", "score_child_prop", "best"],
        help="Parent selection method",
    )
    parser.add_argument("--continue-from", default=None, help="Run directory to resume")
    parser.add_argument("--update-archive", default=None, choices=["keep_better", "keep_all"])
    parser.add_argument("--num-swe-evals", type=int, default=None, help="Evaluation repeats per tier")
    parser.add_argument("--post-improve-diagnose", action="store_true", default=None, help="Record a failure summary per child")
    parser.add_argument("--shallow-eval", action="store_true", default=None, help="Score children on the small subset only")
    parser.add_argument("--polyglot", action="store_true", default=None, help="Use the polyglot benchmark")
    parser.add_argument("--eval-noise", type=float, default=None, help="Noise leeway for keep_better")
    parser.add_argument("--no-full-eval", action="store_true", default=None, help="Stop at the medium subset")
    parser.add_argument("--run-baseline", default=None, choices=["no_darwin"])
    parser.add_argument("--output-root", default=None, help="Parent directory of run directories")
    parser.add_argument("--fixture-root", default=None, help="Directory holding initial/ and initial_polyglot/")
    parser.add_argument("--seed", type=int, default=None)

    parser.add_argument("--data-path", default=None, help="Benchmark entries JSONL")
    parser.add_argument("--agent-dir", default=None, help="Base agent code copied into every sandbox")
    parser.add_argument("--max-workers", type=int, default=None, help="Concurrent evaluation sandboxes")
    parser.add_argument("--eval-timeout", type=int, default=None, help="Per-entry solve timeout in seconds")
    parser.add_argument("--sandbox-timeout", type=int, default=None, help="Timeout for other sandbox calls")
    parser.add_argument("--image-name", default=None, help="Agent sandbox image")
    return parser


def load_evaluation_tiers(
    benchmark: BaseBenchmark,
    fixture_root: Path,
    data_path: str,
    tier_names: Sequence[str],
) -> list[EvaluationTier]:
    """Load each subset tier; the first is required and a missing later one ends the list."""

    tiers: list[EvaluationTier] = []
    seen: set[str] = set()
    for index, name in enumerate(tier_names):
        subset_path = benchmark.subset_path(fixture_root, name)
        if index > 0 and not Path(subset_path).is_file():
            print(f"[Config] no {name} subset at {subset_path}; evaluation stops at {tiers[-1].name}")
            break
        subset_ids = [item for item in benchmark.load_subset(subset_path) if item not in seen]
        if index > 0 and not subset_ids:
            continue
        seen.update(subset_ids)
        entries = benchmark.load_entries(data_path, instance_ids=subset_ids)
        print(f"Loaded {len(entries)} {benchmark.name} entries ({name})")
        tiers.append(EvaluationTier(name, entries))
    return tiers


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    default_config_path = "configs/evolution.yaml"
    config_doc: dict[str, Any] = (
        {}
        if args.no_config
        else load_experiment_config(args.config, allow_missing=(args.config == default_config_path))
    )
    load_env_file(args.env_file)

    evolution_cfg = config_from_section(
        EvolutionConfig,
        config_doc.get("evolution"),
        max_generation=args.max_generation,
        selfimprove_size=args.selfimprove_size,
        selfimprove_workers=args.selfimprove_workers,
        choose_selfimproves_method=args.choose_selfimproves_method,
        continue_from=args.continue_from,
        update_archive=args.update_archive,
        num_swe_evals=args.num_swe_evals,
        post_improve_diagnose=args.post_improve_diagnose,
        shallow_eval=args.shallow_eval,
        polyglot=args.polyglot,
        eval_noise=args.eval_noise,
        no_full_eval=args.no_full_eval,
        run_baseline=args.run_baseline,
        output_root=args.output_root,
        fixture_root=args.fixture_root,
        seed=args.seed,
    )
    harness_cfg = harness_config_from_env(config_from_section(HarnessConfig, config_doc.get("evaluation")))
    harness_cfg = config_from_section(
        HarnessConfig,
        vars(harness_cfg),
        max_workers=args.max_workers,
        timeout_seconds=args.eval_timeout,
        sandbox_timeout_seconds=args.sandbox_timeout,
        image_name=args.image_name,
    )
    evolution_cfg.validate()
    harness_cfg.validate()

    benchmark_doc = config_doc.get("benchmark") if isinstance(config_doc.get("benchmark"), dict) else {}
    benchmark = get_benchmark("polyglot" if evolution_cfg.polyglot else "swe-bench")
    fixture_root = Path(evolution_cfg.fixture_root)
    data_path = args.data_path or benchmark_doc.get("data_path")
    if not data_path:
        raise SystemExit("--data-path (or benchmark.data_path in the config) is required")
    tiers = load_evaluation_tiers(benchmark, fixture_root, str(data_path), evolution_cfg.evaluation_tiers)
    entries = tiers[0].entries
    all_entries = [entry for tier in tiers for entry in tier.entries]

    controller = DockerSandboxController()
    harness = EvaluationHarness(controller, harness_cfg, agent_dir=args.agent_dir)
    run_id, output_dir = resolve_run_dir(evolution_cfg)
    mutator = SandboxSelfImprover(
        harness,
        workspace_dir=output_dir,
        entries=entries,
        problem_statements={entry.instance_id: entry.problem_statement for entry in all_entries},
        escalation_tiers=tiers[1:],
        num_evals=evolution_cfg.num_swe_evals,
        post_improve_diagnose=evolution_cfg.post_improve_diagnose,
    )
    driver = GenerationDriver(mutator=mutator, config=evolution_cfg, run_id=run_id)
    summary = driver.run()
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

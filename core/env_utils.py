"""Environment helpers used once at start-up to build run configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Mapping, Optional

from core.config import HarnessConfig


def parse_env_lines(lines: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=value`` / ``export KEY=value`` lines, stripping matching quotes."""

    values: dict[str, str] = {}
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key] = value
    return values


def load_env_file(path: str | None, override: bool = False) -> bool:
    """Load a .env-style file into ``os.environ``; False when nothing was read."""

    if not path or not Path(path).is_file():
        return False
    values = parse_env_lines(Path(path).read_text(encoding="utf-8").splitlines())
    for key, value in values.items():
        if override or key not in os.environ:
            os.environ[key] = value
    return bool(values)


def first_env(keys: Iterable[str], environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return first non-empty env value from candidate keys."""

    source = os.environ if environ is None else environ
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def env_int(keys: Iterable[str], default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    """Positive int from the environment, otherwise ``default``."""

    raw = first_env(keys, environ)
    try:
        value = int(float(raw)) if raw is not None else int(default)
    except ValueError:
        return int(default)
    return value if value > 0 else int(default)


def env_float(keys: Iterable[str], default: float, environ: Optional[Mapping[str, str]] = None) -> float:
    """Positive float from the environment, otherwise ``default``."""

    raw = first_env(keys, environ)
    try:
        value = float(raw) if raw is not None else float(default)
    except ValueError:
        return float(default)
    return value if value > 0 else float(default)


def harness_config_from_env(
    base: HarnessConfig | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> HarnessConfig:
    """Overlay ``DGM_*`` environment settings onto a harness config."""

    cfg = base or HarnessConfig()
    source = os.environ if environ is None else environ
    return HarnessConfig(
        max_workers=env_int(["DGM_MAX_WORKERS"], cfg.max_workers, source),
        timeout_seconds=env_int(["DGM_EVAL_TIMEOUT_SECONDS"], cfg.timeout_seconds, source),
        sandbox_timeout_seconds=env_int(["DGM_SANDBOX_TIMEOUT_SECONDS"], cfg.sandbox_timeout_seconds, source),
        image_name=first_env(["DGM_IMAGE_NAME"], source) or cfg.image_name,
        container_prefix=cfg.container_prefix,
        artifact_dir=cfg.artifact_dir,
        agent_install_command=cfg.agent_install_command,
        solve_command=cfg.solve_command,
        diff_command=cfg.diff_command,
        default_test_command=cfg.default_test_command,
        transcript_path=cfg.transcript_path,
    )

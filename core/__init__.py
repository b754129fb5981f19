"""Core runtime exports for the self-improvement evolution loop."""

from core.archive import Archive
from core.config import ConfigError, EvolutionConfig, HarnessConfig
from core.evaluator import EvaluationHarness, EvaluationResult, aggregate
from core.evolution_loop import BaselineMissingError, GenerationDriver
from core.fitness import FitnessRecord, VariantMetadata, is_compiled_self_improve
from core.mutation import MutationOutcome, Mutator, SelfImproveEntry
from core.sandbox import (
    DockerSandboxController,
    ExecResult,
    SandboxController,
    SandboxCopyError,
    SandboxError,
    SandboxTimeoutError,
)
from core.selection import CandidateInfo, SelectionEngine
from core.self_improve import SandboxSelfImprover

__all__ = [
    "Archive",
    "ConfigError",
    "EvolutionConfig",
    "HarnessConfig",
    "EvaluationHarness",
    "EvaluationResult",
    "aggregate",
    "BaselineMissingError",
    "GenerationDriver",
    "FitnessRecord",
    "VariantMetadata",
    "is_compiled_self_improve",
    "MutationOutcome",
    "Mutator",
    "SelfImproveEntry",
    "DockerSandboxController",
    "ExecResult",
    "SandboxController",
    "SandboxCopyError",
    "SandboxError",
    "SandboxTimeoutError",
    "CandidateInfo",
    "SelectionEngine",
    "SandboxSelfImprover",
]

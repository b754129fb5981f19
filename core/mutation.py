"""Contract for the external collaborator that produces child variants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

META_TASK_EMPTY_PATCHES = "solve_empty_patches"
META_TASK_STOCHASTICITY = "solve_stochasticity"
META_TASKS = (META_TASK_EMPTY_PATCHES, META_TASK_STOCHASTICITY)


@dataclass(frozen=True)
class SelfImproveEntry:
    """One self-improvement attempt: a parent and the task it should work on."""

    parent_commit: str
    entry: str

    @property
    def is_meta_task(self) -> bool:
        return self.entry in META_TASKS

    def as_pair(self) -> tuple[str, str]:
        return self.parent_commit, self.entry


@dataclass(frozen=True)
class MutationOutcome:
    child_id: str
    compiled: bool


class Mutator(Protocol):
    """Runs one self-modification of ``parent_commit`` targeting ``entry``.

    Implementations are expected to evaluate the child and write its
    ``metadata.json`` before returning.
    """

    def mutate(self, parent_commit: str, entry: str) -> MutationOutcome:
        ...

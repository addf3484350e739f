"""Structural contracts for the collaborators driven by the orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, List, Protocol, Sequence, runtime_checkable

from pydantic import TypeAdapter

from .memory.schema import Location, Modification, Task, VerificationReport

if TYPE_CHECKING:
    from .phases.analyze import RepositoryProfile
    from .phases.understand import TaskUnderstanding
    from .policy.autonomy import AutonomyDecision

_MODIFICATIONS_ADAPTER = TypeAdapter(List[Modification])


@runtime_checkable
class TaskInterpreter(Protocol):
    def understand(self, task: Task) -> "TaskUnderstanding": ...


@runtime_checkable
class RepositoryAnalyzer(Protocol):
    def analyze(self, repo_root: Path) -> "RepositoryProfile": ...


@runtime_checkable
class TargetLocator(Protocol):
    def locate(self, keywords: Sequence[str]) -> List[Location]: ...


@runtime_checkable
class ChangeProducer(Protocol):
    def produce(self, task: Task, locations: Sequence[Location]) -> List[Modification]: ...


@runtime_checkable
class Verifier(Protocol):
    def verify(self, modifications: Sequence[Modification]) -> VerificationReport: ...


@runtime_checkable
class Finalizer(Protocol):
    def finalize(self, modifications: Sequence[Modification], task: Task) -> str: ...


@runtime_checkable
class Confirmer(Protocol):
    def __call__(self, action: str, decision: "AutonomyDecision") -> bool: ...


def coerce_modifications(payload: Iterable[Any]) -> List[Modification]:
    """Validate producer output (models or plain mappings) into modifications."""
    return _MODIFICATIONS_ADAPTER.validate_python(list(payload))


class StaticChangeProducer:
    """Change producer returning a modification list computed ahead of time."""

    def __init__(self, modifications: Iterable[Modification | dict[str, Any]]) -> None:
        self._modifications = coerce_modifications(modifications)

    def produce(self, task: Task, locations: Sequence[Location]) -> List[Modification]:
        return list(self._modifications)


__all__ = [
    "ChangeProducer",
    "Confirmer",
    "Finalizer",
    "RepositoryAnalyzer",
    "StaticChangeProducer",
    "TargetLocator",
    "TaskInterpreter",
    "Verifier",
    "coerce_modifications",
]

"""Typed records describing tasks, change sets, and execution trajectories."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..phases import StepKind


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class FrozenRecord(RecordModel):
    """Record that cannot be mutated once constructed."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class ModificationType(str, Enum):
    """Kinds of file mutation understood by the file modifier."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class ErrorKind(str, Enum):
    """Classification attached to failed runs."""

    POLICY = "policy"
    PRECONDITION = "precondition"
    TRANSIENT = "transient"
    VERIFICATION = "verification"
    INTERNAL = "internal"


class Task(FrozenRecord):
    """Problem statement driving one pipeline run."""

    id: str
    statement: str
    title: str = ""
    repository: str = ""
    labels: Tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="before")
    @classmethod
    def _derive_title(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("title"):
            statement = str(data.get("statement") or "").strip()
            first_line = statement.splitlines()[0] if statement else ""
            data = {**data, "title": first_line[:120]}
        return data

    @classmethod
    def from_text(cls, text: str, *, repository: str = "") -> "Task":
        """Build a task from free-form text with a generated local identifier."""
        return cls(
            id=f"local-{int(time.time() * 1000)}",
            statement=text,
            repository=repository,
        )


class Modification(FrozenRecord):
    """Single file mutation supplied by the change producer."""

    file: str
    type: ModificationType
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _require_new_content(self) -> "Modification":
        if self.type in (ModificationType.CREATE, ModificationType.MODIFY) and self.new_content is None:
            raise ValueError(f"new_content is required for {self.type.value} modifications")
        return self


class Location(FrozenRecord):
    """Candidate location returned by a target locator."""

    file: str
    line: Optional[int] = None
    context: Optional[str] = None


class VerificationReport(FrozenRecord):
    """Outcome of post-apply verification checks."""

    passed_count: int = 0
    failed_count: int = 0
    failure_details: Tuple[str, ...] = ()
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.failed_count == 0

    def summary(self) -> str:
        return f"{self.passed_count} passed, {self.failed_count} failed"


class Step(FrozenRecord):
    """Immutable record of one executed pipeline step."""

    id: str
    kind: StepKind
    input: Any = None
    output: Any = None
    success: bool
    started_at: datetime
    duration_ms: int
    error: Optional[str] = None


class RollbackOutcome(FrozenRecord):
    """What happened when the change set was rolled back."""

    attempted: bool = False
    succeeded: bool = False
    restored_paths: Tuple[str, ...] = ()
    error: Optional[str] = None


class RunResult(FrozenRecord):
    """Terminal outcome of an orchestrator run."""

    task_id: str
    trajectory_id: str
    success: bool
    summary: str = ""
    modifications: Tuple[Modification, ...] = ()
    verification: Optional[VerificationReport] = None
    finalize_handle: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    failed_step: Optional[StepKind] = None
    rollback: Optional[RollbackOutcome] = None
    requires_confirmation: bool = False
    pending_action: Optional[str] = None
    warnings: Tuple[str, ...] = ()


class TrajectoryMetadata(FrozenRecord):
    """Run-level metadata stored alongside the trajectory."""

    model: str
    duration_ms: int
    retry_count: int = 0


class Trajectory(FrozenRecord):
    """Complete, frozen audit trail for one task run."""

    id: str
    task: Task
    repository: str
    steps: Tuple[Step, ...]
    result: RunResult
    metadata: TrajectoryMetadata
    created_at: datetime = Field(default_factory=utc_now)

    def step_kinds(self) -> list[StepKind]:
        return [step.kind for step in self.steps]


__all__ = [
    "ErrorKind",
    "FrozenRecord",
    "Location",
    "Modification",
    "ModificationType",
    "RecordModel",
    "RollbackOutcome",
    "RunResult",
    "Step",
    "Task",
    "Trajectory",
    "TrajectoryMetadata",
    "VerificationReport",
    "utc_now",
]

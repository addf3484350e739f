"""High-level orchestration loop driving one task through the pipeline.

A run walks the fixed step sequence (understand, analyze, locate, produce,
apply, verify, finalize), records every step in a trajectory, consults the
autonomy gate before risky steps, and rolls back the change set on any
failure after mutation has begun. ``Orchestrator.run`` never raises for
step-level failures; it returns a structured :class:`RunResult`.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, is_dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from .events import EventBus, EventHandler, EventKind, PipelineEvent
from .memory.schema import (
    ErrorKind,
    Location,
    Modification,
    RollbackOutcome,
    RunResult,
    Step,
    Task,
    Trajectory,
    TrajectoryMetadata,
    VerificationReport,
    utc_now,
)
from .memory.store import TrajectoryStore
from .phases import MUTATING_STEPS, StepKind
from .phases.analyze import FilesystemRepositoryAnalyzer
from .phases.understand import HeuristicTaskInterpreter
from .policy.autonomy import (
    ActionForbiddenError,
    AutonomyDecision,
    AutonomyGate,
    AutonomyPolicy,
    ConfirmationRequiredError,
    PolicyError,
    SafetyContext,
)
from .protocols import (
    ChangeProducer,
    Confirmer,
    Finalizer,
    RepositoryAnalyzer,
    TargetLocator,
    TaskInterpreter,
    Verifier,
    coerce_modifications,
)
from .tools.modifier import DEFAULT_BACKUP_DIR, FileModifier, ModificationError, RollbackError
from .tools.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    RetryPolicy,
    is_retryable_error,
    retry,
    with_timeout,
)
from .tools.search import KeywordLocator
from .tools.vcs import DEFAULT_COMMIT_TEMPLATE, GitFinalizer, GitRepository
from .tools.verifier import CommandVerifier

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("swe.telemetry")

_COLLABORATOR_ROLES = ("locate", "produce", "verify", "finalize")


class PreconditionError(RuntimeError):
    """Raised when the pipeline cannot continue with what it was given."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class VerificationFailedError(RuntimeError):
    """Raised when post-apply verification reports failing checks."""

    def __init__(self, report: VerificationReport) -> None:
        super().__init__(f"Verification failed: {report.failed_count} failing check(s)")
        self.report = report


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_pipeline_event(event: str, **fields: Any) -> None:
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def _jsonable(value: Any) -> Any:
    """Snapshot step payloads into plain JSON-compatible data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        to_dict = getattr(value, "to_dict", None)
        if callable(to_dict):
            return _jsonable(to_dict())
    if isinstance(value, Mapping):
        return {str(key): _jsonable(child) for key, child in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return _serialise_event_value(value)


@dataclass(slots=True)
class OrchestratorSettings:
    """Runtime knobs loaded from ``config.yaml``."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    step_timeout: Optional[float] = None
    circuit_threshold: int = 5
    circuit_reset_timeout: float = 30.0
    model: str = "unspecified"
    backup_dir: str = DEFAULT_BACKUP_DIR
    trajectories_dir: Optional[Path] = None
    test_command: Optional[str] = None
    test_timeout: Optional[float] = None
    finalize_enabled: bool = False
    commit_template: str = DEFAULT_COMMIT_TEMPLATE

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None, *, base_dir: Path | None = None) -> "OrchestratorSettings":
        data = dict(config or {})

        def section(name: str) -> Mapping[str, Any]:
            value = data.get(name)
            return value if isinstance(value, Mapping) else {}

        resilience = section("resilience")
        verification = section("verification")
        finalize = section("finalize")
        models = section("models")
        paths = section("paths")
        defaults = cls()

        trajectories: Optional[Path] = None
        raw_trajectories = paths.get("trajectories")
        if raw_trajectories:
            trajectories = Path(str(raw_trajectories))
            if base_dir is not None and not trajectories.is_absolute():
                trajectories = base_dir / trajectories

        step_timeout = resilience.get("step_timeout")
        test_timeout = verification.get("timeout")
        test_command = verification.get("command")
        return cls(
            retry=RetryPolicy.from_config(resilience),
            step_timeout=float(step_timeout) if step_timeout is not None else None,
            circuit_threshold=int(resilience.get("circuit_threshold", defaults.circuit_threshold)),
            circuit_reset_timeout=float(resilience.get("circuit_reset_timeout", defaults.circuit_reset_timeout)),
            model=str(models.get("default") or defaults.model),
            backup_dir=str(paths.get("backups") or defaults.backup_dir),
            trajectories_dir=trajectories,
            test_command=str(test_command) if test_command else None,
            test_timeout=float(test_timeout) if test_timeout is not None else None,
            finalize_enabled=bool(finalize.get("enabled", defaults.finalize_enabled)),
            commit_template=str(finalize.get("commit_template") or defaults.commit_template),
        )


@dataclass(slots=True)
class _RunState:
    """Mutable bookkeeping for one run; frozen into a trajectory at the end."""

    task: Task
    repo_root: Path
    trajectory_id: str
    created_at: datetime
    started: float
    steps: List[Step] = field(default_factory=list)
    modifications: List[Modification] = field(default_factory=list)
    verification: Optional[VerificationReport] = None
    finalize_handle: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    failed_step: Optional[StepKind] = None
    mutation_started: bool = False
    retry_count: int = 0

    def warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)


class Orchestrator:
    """Coordinate collaborators, the autonomy gate, and the file modifier."""

    def __init__(
        self,
        *,
        producer: ChangeProducer,
        locator: TargetLocator | None = None,
        verifier: Verifier | None = None,
        finalizer: Finalizer | None = None,
        interpreter: TaskInterpreter | None = None,
        analyzer: RepositoryAnalyzer | None = None,
        gate: AutonomyGate | None = None,
        settings: OrchestratorSettings | None = None,
        events: EventBus | None = None,
        confirm: Confirmer | Callable[[str, AutonomyDecision], bool] | None = None,
        store: TrajectoryStore | None = None,
        risky_steps: Iterable[StepKind] = MUTATING_STEPS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.gate = gate or AutonomyGate()
        self.events = events or EventBus()
        self._producer = producer
        self._locator = locator
        self._verifier = verifier
        self._finalizer = finalizer
        self._interpreter = interpreter or HeuristicTaskInterpreter()
        self._analyzer = analyzer or FilesystemRepositoryAnalyzer()
        self._confirm = confirm
        self._risky_steps = frozenset(risky_steps) | {StepKind.APPLY_CHANGE_SET, StepKind.FINALIZE_CHANGE_SET}
        self._sleep = sleep
        if store is None and self.settings.trajectories_dir is not None:
            store = TrajectoryStore(self.settings.trajectories_dir)
        self._store = store
        self.breakers: Dict[str, CircuitBreaker] = {
            role: CircuitBreaker(
                self.settings.circuit_threshold,
                self.settings.circuit_reset_timeout,
                name=role,
            )
            for role in _COLLABORATOR_ROLES
        }
        self.trajectory: Trajectory | None = None
        self.last_artifact_path: Path | None = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any] | None,
        *,
        producer: ChangeProducer,
        base_dir: Path | None = None,
        **overrides: Any,
    ) -> "Orchestrator":
        """Build an orchestrator from a parsed ``config.yaml`` mapping."""
        data = dict(config or {})
        autonomy = data.get("autonomy")
        overrides.setdefault("gate", AutonomyGate(AutonomyPolicy.from_config(autonomy if isinstance(autonomy, Mapping) else None)))
        overrides.setdefault("settings", OrchestratorSettings.from_config(data, base_dir=base_dir))
        return cls(producer=producer, **overrides)

    def on(self, kind: EventKind | str, handler: EventHandler) -> None:
        """Register an observer for step notifications."""
        self.events.on(kind, handler)

    # ------------------------------------------------------------------ run
    def run(self, task: Task, repository: Path | str) -> RunResult:
        """Drive ``task`` against ``repository`` and return the terminal result."""
        state = _RunState(
            task=task,
            repo_root=Path(repository).resolve(),
            trajectory_id=uuid4().hex,
            created_at=utc_now(),
            started=time.perf_counter(),
        )
        modifier = FileModifier(state.repo_root, backup_dir_name=self.settings.backup_dir)
        LOGGER.info("Starting run %s for task %s", state.trajectory_id, task.id)

        try:
            result = self._drive(state, modifier)
        except Exception as error:
            result = self._handle_failure(state, modifier, error)

        self._freeze(state, result)
        return result

    def _drive(self, state: _RunState, modifier: FileModifier) -> RunResult:
        task = state.task
        repo_root = state.repo_root
        if not repo_root.is_dir():
            raise PreconditionError(f"Repository not found: {repo_root}", details={"repository": str(repo_root)})

        locator = self._locator or self._default_locator(repo_root)
        verifier = self._resolve_verifier(repo_root)
        finalizer = self._resolve_finalizer(repo_root)

        understanding = self._run_step(
            state,
            StepKind.UNDERSTAND_TASK,
            {"task_id": task.id, "title": task.title},
            lambda: self._interpreter.understand(task),
        )
        keywords: Sequence[str] = list(getattr(understanding, "keywords", None) or [])

        self._run_step(
            state,
            StepKind.ANALYZE_TARGET,
            {"repository": repo_root.as_posix()},
            lambda: self._analyzer.analyze(repo_root),
        )

        def locate() -> List[Location]:
            found = list(self._call_collaborator(state, "locate", lambda: locator.locate(keywords)))
            if not found:
                raise PreconditionError(
                    "No relevant locations found for task",
                    details={"keywords": list(keywords)},
                )
            return found

        locations: List[Location] = self._run_step(
            state, StepKind.LOCATE_RELEVANT_CONTENT, {"keywords": list(keywords)}, locate
        )

        def produce() -> List[Modification]:
            raw = self._call_collaborator(state, "produce", lambda: self._producer.produce(task, locations))
            modifications = coerce_modifications(raw or [])
            if not modifications:
                raise PreconditionError("Change producer returned no modifications")
            return modifications

        modifications: List[Modification] = self._run_step(
            state,
            StepKind.PRODUCE_CHANGE_SET,
            {"locations": len(locations)},
            produce,
        )
        state.modifications = list(modifications)

        self._authorise(state, StepKind.APPLY_CHANGE_SET, SafetyContext(has_backup=True))

        def apply() -> Dict[str, Any]:
            state.mutation_started = True
            modifier.apply_all(modifications)
            return {"files": modifier.modified_files()}

        self._run_step(
            state,
            StepKind.APPLY_CHANGE_SET,
            {"modifications": [item.file for item in modifications]},
            apply,
        )
        for path in modifier.appended_paths:
            state.warn(f"New content was appended to the end of {path} because no matching lines were found")

        def verify() -> VerificationReport:
            if verifier is None:
                report = VerificationReport()
            else:
                report = self._call_collaborator(state, "verify", lambda: verifier.verify(modifications))
            state.verification = report
            if report.failed_count > 0:
                raise VerificationFailedError(report)
            return report

        report: VerificationReport = self._run_step(
            state,
            StepKind.VERIFY_CHANGE_SET,
            {"modifications": len(modifications)},
            verify,
        )

        if finalizer is not None:
            self._authorise(state, StepKind.FINALIZE_CHANGE_SET, SafetyContext(has_backup=True, test_passing=report.ok))
            handle = self._run_step(
                state,
                StepKind.FINALIZE_CHANGE_SET,
                {"modifications": [item.file for item in modifications]},
                lambda: self._call_collaborator(state, "finalize", lambda: finalizer.finalize(modifications, task)),
            )
            state.finalize_handle = str(handle) if handle is not None else None

        modifier.cleanup()

        summary = f"Applied {len(modifications)} modification(s); {report.summary()}"
        if state.finalize_handle:
            summary += f"; finalized as {state.finalize_handle}"
        return RunResult(
            task_id=task.id,
            trajectory_id=state.trajectory_id,
            success=True,
            summary=summary,
            modifications=tuple(modifications),
            verification=report,
            finalize_handle=state.finalize_handle,
            warnings=tuple(state.warnings),
        )

    # -------------------------------------------------------------- steps
    def _run_step(
        self,
        state: _RunState,
        kind: StepKind,
        payload: Any,
        action: Callable[[], T],
    ) -> T:
        """Record and notify around one step; failures are recorded then re-raised."""
        if kind not in (StepKind.APPLY_CHANGE_SET, StepKind.FINALIZE_CHANGE_SET, StepKind.ROLLBACK):
            self._maybe_authorise(state, kind)

        step_id = uuid4().hex
        started_at = utc_now()
        timer = time.perf_counter()
        snapshot = _jsonable(payload)
        _emit_pipeline_event("step.started", task_id=state.task.id, step_id=step_id, kind=kind)
        self._notify(state, EventKind.STEP_STARTED, step_id=step_id, step_kind=kind, data={"input": snapshot})

        try:
            output = action()
        except Exception as error:
            duration_ms = int((time.perf_counter() - timer) * 1000)
            state.steps.append(
                Step(
                    id=step_id,
                    kind=kind,
                    input=snapshot,
                    output=None,
                    success=False,
                    started_at=started_at,
                    duration_ms=duration_ms,
                    error=str(error),
                )
            )
            if kind != StepKind.ROLLBACK and state.failed_step is None:
                state.failed_step = kind
            _emit_pipeline_event(
                "step.failed",
                task_id=state.task.id,
                step_id=step_id,
                kind=kind,
                duration_ms=duration_ms,
                error=str(error),
            )
            self._notify(state, EventKind.STEP_FAILED, step_id=step_id, step_kind=kind, error=str(error))
            raise

        duration_ms = int((time.perf_counter() - timer) * 1000)
        result_snapshot = _jsonable(output)
        state.steps.append(
            Step(
                id=step_id,
                kind=kind,
                input=snapshot,
                output=result_snapshot,
                success=True,
                started_at=started_at,
                duration_ms=duration_ms,
            )
        )
        _emit_pipeline_event("step.ended", task_id=state.task.id, step_id=step_id, kind=kind, duration_ms=duration_ms)
        self._notify(state, EventKind.STEP_ENDED, step_id=step_id, step_kind=kind, data={"output": result_snapshot})
        return output

    def _notify(self, state: _RunState, kind: EventKind, **fields: Any) -> None:
        self.events.emit(PipelineEvent(kind=kind, task_id=state.task.id, **fields))

    def _call_collaborator(self, state: _RunState, role: str, call: Callable[[], T]) -> T:
        """Run ``call`` as ``breaker(retry(timeout(call)))`` for collaborator ``role``."""
        timeout = self.settings.step_timeout

        def attempt() -> T:
            if timeout is None:
                return call()
            return with_timeout(call, timeout, f"{role} timed out after {timeout}s")

        user_callback = self.settings.retry.on_retry

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            state.retry_count += 1
            LOGGER.info("Retrying %s (attempt %d) in %.2fs: %s", role, attempt_number, delay, error)
            if user_callback is not None:
                user_callback(attempt_number, error, delay)

        policy = replace(self.settings.retry, on_retry=on_retry)
        return self.breakers[role].execute(lambda: retry(attempt, policy, sleep=self._sleep))

    # -------------------------------------------------------------- policy
    def _maybe_authorise(self, state: _RunState, kind: StepKind) -> None:
        if kind in self._risky_steps:
            self._authorise(state, kind, SafetyContext(has_backup=True))

    def _authorise(self, state: _RunState, kind: StepKind, context: SafetyContext) -> AutonomyDecision:
        decision = self.gate.can_execute(kind, len(state.steps), context)
        for warning in decision.warnings:
            state.warn(warning)

        if not decision.allowed:
            state.failed_step = kind
            raise ActionForbiddenError(
                decision.reason or f"Action '{kind.value}' is not allowed",
                action=kind.value,
                decision=decision,
            )

        if decision.requires_confirmation:
            confirmed = bool(self._confirm(kind.value, decision)) if self._confirm is not None else False
            if not confirmed:
                state.failed_step = kind
                raise ConfirmationRequiredError(
                    f"Action '{kind.value}' requires confirmation",
                    action=kind.value,
                    decision=decision,
                )
            LOGGER.info("Action %s confirmed", kind.value)
        return decision

    # ------------------------------------------------------------- failure
    @staticmethod
    def _classify(error: BaseException) -> ErrorKind:
        if isinstance(error, PolicyError):
            return ErrorKind.POLICY
        if isinstance(error, VerificationFailedError):
            return ErrorKind.VERIFICATION
        if isinstance(error, (PreconditionError, ModificationError, ValidationError, FileNotFoundError)):
            return ErrorKind.PRECONDITION
        if isinstance(error, CircuitOpenError) or is_retryable_error(error):
            return ErrorKind.TRANSIENT
        return ErrorKind.INTERNAL

    def _handle_failure(self, state: _RunState, modifier: FileModifier, error: Exception) -> RunResult:
        error_kind = self._classify(error)
        if error_kind == ErrorKind.INTERNAL:
            LOGGER.exception("Run %s failed unexpectedly", state.trajectory_id)
        else:
            LOGGER.warning("Run %s failed (%s): %s", state.trajectory_id, error_kind.value, error)

        rollback: Optional[RollbackOutcome] = None
        if state.mutation_started:
            rollback = self._rollback(state, modifier)

        failed_step = state.failed_step
        summary = f"{failed_step.value if failed_step else 'run'} failed: {error}"
        if rollback is not None:
            summary += "; rollback " + ("succeeded" if rollback.succeeded else "failed")

        requires_confirmation = False
        pending_action: Optional[str] = None
        if isinstance(error, PolicyError):
            requires_confirmation = error.decision.requires_confirmation
            pending_action = error.action if requires_confirmation else None

        return RunResult(
            task_id=state.task.id,
            trajectory_id=state.trajectory_id,
            success=False,
            summary=summary,
            modifications=tuple(state.modifications),
            verification=state.verification,
            finalize_handle=state.finalize_handle,
            error=str(error),
            error_kind=error_kind,
            failed_step=failed_step,
            rollback=rollback,
            requires_confirmation=requires_confirmation,
            pending_action=pending_action,
            warnings=tuple(state.warnings),
        )

    def _rollback(self, state: _RunState, modifier: FileModifier) -> RollbackOutcome:
        timeout = self.gate.rollback_timeout
        pending = modifier.modified_files()
        try:
            restored = self._run_step(
                state,
                StepKind.ROLLBACK,
                {"paths": pending},
                lambda: with_timeout(modifier.rollback, timeout, f"Rollback timed out after {timeout}s"),
            )
        except Exception as rollback_error:
            LOGGER.error("Rollback failed for run %s: %s", state.trajectory_id, rollback_error)
            state.warn(f"Rollback failed: {rollback_error}")
            restored_paths: tuple[str, ...] = ()
            if isinstance(rollback_error, RollbackError):
                restored_paths = tuple(path for path in pending if path not in rollback_error.failures)
            outcome = RollbackOutcome(
                attempted=True,
                succeeded=False,
                restored_paths=restored_paths,
                error=str(rollback_error),
            )
        else:
            outcome = RollbackOutcome(attempted=True, succeeded=True, restored_paths=tuple(restored))

        _emit_pipeline_event(
            "rollback.completed",
            task_id=state.task.id,
            succeeded=outcome.succeeded,
            restored=list(outcome.restored_paths),
        )
        self._notify(
            state,
            EventKind.ROLLBACK_COMPLETED,
            step_kind=StepKind.ROLLBACK,
            error=outcome.error,
            data={"restored": list(outcome.restored_paths), "succeeded": outcome.succeeded},
        )
        return outcome

    # -------------------------------------------------------------- freeze
    def _freeze(self, state: _RunState, result: RunResult) -> None:
        duration_ms = int((time.perf_counter() - state.started) * 1000)
        self.trajectory = Trajectory(
            id=state.trajectory_id,
            task=state.task,
            repository=state.repo_root.as_posix(),
            steps=tuple(state.steps),
            result=result,
            metadata=TrajectoryMetadata(
                model=self.settings.model,
                duration_ms=duration_ms,
                retry_count=state.retry_count,
            ),
            created_at=state.created_at,
        )

        self.last_artifact_path = None
        if self._store is not None:
            try:
                self.last_artifact_path = self._store.save(self.trajectory)
            except OSError as error:
                LOGGER.warning("Failed to write trajectory artifact: %s", error)

        _emit_pipeline_event(
            "run.completed",
            task_id=state.task.id,
            trajectory_id=state.trajectory_id,
            success=result.success,
            error_kind=result.error_kind,
            duration_ms=duration_ms,
            steps=len(state.steps),
        )
        self._notify(
            state,
            EventKind.RUN_COMPLETED,
            error=result.error,
            data={"success": result.success, "trajectory_id": state.trajectory_id},
        )

    # ------------------------------------------------------------ defaults
    def _default_locator(self, repo_root: Path) -> KeywordLocator:
        ignore_paths: List[Path] = []
        if self._store is not None:
            ignore_paths.append(self._store.root)
        return KeywordLocator(repo_root, ignore_dirs=(self.settings.backup_dir,), ignore_paths=ignore_paths)

    def _resolve_verifier(self, repo_root: Path) -> Verifier | None:
        if self._verifier is not None:
            return self._verifier
        if self.settings.test_command:
            return CommandVerifier(repo_root, self.settings.test_command, timeout=self.settings.test_timeout)
        return None

    def _resolve_finalizer(self, repo_root: Path) -> Finalizer | None:
        if self._finalizer is not None:
            return self._finalizer
        if self.settings.finalize_enabled:
            return GitFinalizer(GitRepository(repo_root), message_template=self.settings.commit_template)
        return None


__all__ = [
    "Orchestrator",
    "OrchestratorSettings",
    "PreconditionError",
    "VerificationFailedError",
]

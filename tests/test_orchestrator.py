from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Sequence

import pytest

from swe.events import EventKind, PipelineEvent
from swe.memory.schema import (
    ErrorKind,
    Location,
    Modification,
    ModificationType,
    Task,
    VerificationReport,
)
from swe.memory.store import TrajectoryStore
from swe.orchestrator import Orchestrator, OrchestratorSettings
from swe.phases import StepKind
from swe.policy.autonomy import AutonomyGate, AutonomyLevel, AutonomyPolicy
from swe.protocols import StaticChangeProducer
from swe.tools.modifier import FileModifier
from swe.tools.resilience import RetryPolicy
from swe.tools.vcs import GitError, GitFinalizer, GitRepository

STATEMENT = "Update const x in a.ts"
HAPPY_STEPS = [
    StepKind.UNDERSTAND_TASK,
    StepKind.ANALYZE_TARGET,
    StepKind.LOCATE_RELEVANT_CONTENT,
    StepKind.PRODUCE_CHANGE_SET,
    StepKind.APPLY_CHANGE_SET,
    StepKind.VERIFY_CHANGE_SET,
]


class StubVerifier:
    def __init__(self, report: VerificationReport) -> None:
        self.report = report
        self.calls: List[Sequence[Modification]] = []

    def verify(self, modifications: Sequence[Modification]) -> VerificationReport:
        self.calls.append(list(modifications))
        return self.report


class FlakyProducer:
    """Raise the queued errors first, then return the change set."""

    def __init__(self, errors: Sequence[Exception], modifications: Sequence[Modification]) -> None:
        self._errors = list(errors)
        self._modifications = list(modifications)
        self.calls = 0

    def produce(self, task: Task, locations: Sequence[Location]) -> List[Modification]:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return list(self._modifications)


def _task() -> Task:
    return Task(id="task-1", statement=STATEMENT)


def _bump_x() -> Modification:
    return Modification(
        file="a.ts",
        type=ModificationType.MODIFY,
        old_content="const x = 1;",
        new_content="const x = 2;",
        description="bump x",
    )


def _gate(level: AutonomyLevel = AutonomyLevel.AUTO, **overrides) -> AutonomyGate:
    return AutonomyGate(AutonomyPolicy(level=level, **overrides))


def _passing() -> StubVerifier:
    return StubVerifier(VerificationReport(passed_count=1))


def _quick_settings(**overrides) -> OrchestratorSettings:
    overrides.setdefault("retry", RetryPolicy(max_retries=0))
    return OrchestratorSettings(**overrides)


def test_successful_run_applies_and_verifies(tiny_repo) -> None:
    verifier = _passing()
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=verifier,
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is True
    assert result.error is None
    assert result.summary == "Applied 1 modification(s); 1 passed, 0 failed"
    assert tiny_repo.read("a.ts") == "const x = 2;\nexport default x;\n"
    assert not (tiny_repo.root / ".swe-backup").exists()
    assert len(verifier.calls) == 1

    trajectory = orchestrator.trajectory
    assert trajectory is not None
    assert trajectory.step_kinds() == HAPPY_STEPS
    assert all(step.success for step in trajectory.steps)
    assert trajectory.result == result
    assert trajectory.metadata.retry_count == 0

    locate_step = trajectory.steps[2]
    assert {"file": "a.ts", "line": 1, "context": "const x = 1;"} in locate_step.output


def test_failed_verification_rolls_back(tiny_repo) -> None:
    report = VerificationReport(failed_count=1, failure_details=("tests/test_a.py::test_x",))
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=StubVerifier(report),
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is False
    assert "Verification failed" in (result.error or "")
    assert result.error_kind == ErrorKind.VERIFICATION
    assert result.failed_step == StepKind.VERIFY_CHANGE_SET
    assert result.verification == report
    assert result.rollback is not None and result.rollback.succeeded
    assert result.rollback.restored_paths == ("a.ts",)
    assert result.summary.endswith("; rollback succeeded")
    assert tiny_repo.read("a.ts") == "const x = 1;\nexport default x;\n"

    steps = orchestrator.trajectory.steps
    assert [step.kind for step in steps] == HAPPY_STEPS + [StepKind.ROLLBACK]
    assert steps[5].success is False
    assert steps[6].success is True


def test_no_locations_is_a_precondition_failure_without_mutation(tiny_repo) -> None:
    producer = FlakyProducer([], [_bump_x()])
    orchestrator = Orchestrator(producer=producer, gate=_gate(), settings=_quick_settings())

    result = orchestrator.run(Task(id="task-2", statement="Investigate zzzqqq behaviour"), tiny_repo.root)

    assert result.success is False
    assert result.error == "No relevant locations found for task"
    assert result.error_kind == ErrorKind.PRECONDITION
    assert result.failed_step == StepKind.LOCATE_RELEVANT_CONTENT
    assert result.rollback is None
    assert producer.calls == 0
    assert orchestrator.trajectory.step_kinds() == HAPPY_STEPS[:3]


def test_empty_change_set_is_a_precondition_failure(tiny_repo) -> None:
    orchestrator = Orchestrator(producer=StaticChangeProducer([]), gate=_gate(), settings=_quick_settings())

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.error_kind == ErrorKind.PRECONDITION
    assert result.failed_step == StepKind.PRODUCE_CHANGE_SET
    assert result.rollback is None


def test_apply_failure_rolls_back_partial_changes(tiny_repo) -> None:
    broken = Modification(file="missing.py", type=ModificationType.MODIFY, old_content="a", new_content="b")
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x(), broken]),
        verifier=_passing(),
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is False
    assert result.failed_step == StepKind.APPLY_CHANGE_SET
    assert result.error_kind == ErrorKind.PRECONDITION
    assert "File not found" in (result.error or "")
    assert result.rollback is not None and result.rollback.succeeded
    assert tiny_repo.read("a.ts") == "const x = 1;\nexport default x;\n"
    assert orchestrator.trajectory.step_kinds()[-1] == StepKind.ROLLBACK


def test_forbidden_apply_never_mutates(tiny_repo) -> None:
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        gate=_gate(forbidden_actions={"apply-change-set"}),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is False
    assert result.error_kind == ErrorKind.POLICY
    assert result.failed_step == StepKind.APPLY_CHANGE_SET
    assert result.requires_confirmation is False
    assert result.rollback is None
    assert tiny_repo.read("a.ts") == "const x = 1;\nexport default x;\n"
    assert orchestrator.trajectory.step_kinds() == HAPPY_STEPS[:4]


def test_step_limit_stops_before_apply(tiny_repo) -> None:
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        gate=_gate(AutonomyLevel.AUTONOMOUS, max_auto_steps=4),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is False
    assert result.error == "Step limit reached (4)"
    assert result.requires_confirmation is True
    assert result.pending_action == "apply-change-set"
    assert tiny_repo.read("a.ts") == "const x = 1;\nexport default x;\n"


def test_default_gate_requires_confirmation_for_apply(tiny_repo) -> None:
    orchestrator = Orchestrator(producer=StaticChangeProducer([_bump_x()]), settings=_quick_settings())

    result = orchestrator.run(_task(), tiny_repo.root)

    assert orchestrator.gate.level == AutonomyLevel.ASSIST
    assert result.success is False
    assert result.error_kind == ErrorKind.POLICY
    assert result.requires_confirmation is True
    assert result.pending_action == "apply-change-set"
    assert tiny_repo.read("a.ts") == "const x = 1;\nexport default x;\n"


def test_confirmer_approval_lets_the_run_proceed(tiny_repo) -> None:
    asked = []

    def confirm(action, decision) -> bool:
        asked.append((action, decision.requires_confirmation))
        return True

    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        confirm=confirm,
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is True
    assert asked == [("apply-change-set", True)]
    assert tiny_repo.read("a.ts").startswith("const x = 2;")


def test_events_are_delivered_in_order_and_handler_errors_are_contained(
    tiny_repo, caplog: pytest.LogCaptureFixture
) -> None:
    seen: List[PipelineEvent] = []

    def explode(event: PipelineEvent) -> None:
        raise RuntimeError("observer bug")

    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        gate=_gate(),
        settings=_quick_settings(),
    )
    orchestrator.on(EventKind.STEP_STARTED, explode)
    for kind in EventKind:
        orchestrator.on(kind, seen.append)

    with caplog.at_level(logging.ERROR, logger="swe.events"):
        result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is True
    assert any(record.exc_info and "observer bug" in str(record.exc_info[1]) for record in caplog.records)

    starts = [event.step_kind for event in seen if event.kind == EventKind.STEP_STARTED]
    ends = [event.step_kind for event in seen if event.kind == EventKind.STEP_ENDED]
    assert starts == HAPPY_STEPS
    assert ends == HAPPY_STEPS
    assert seen[-1].kind == EventKind.RUN_COMPLETED
    assert seen[-1].data["success"] is True
    assert all(event.task_id == "task-1" for event in seen)


def test_rollback_event_is_emitted_after_failure(tiny_repo) -> None:
    seen: List[PipelineEvent] = []
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=StubVerifier(VerificationReport(failed_count=2)),
        gate=_gate(),
        settings=_quick_settings(),
    )
    orchestrator.on(EventKind.STEP_FAILED, seen.append)
    orchestrator.on(EventKind.ROLLBACK_COMPLETED, seen.append)

    orchestrator.run(_task(), tiny_repo.root)

    assert [event.kind for event in seen] == [EventKind.STEP_FAILED, EventKind.ROLLBACK_COMPLETED]
    assert seen[0].step_kind == StepKind.VERIFY_CHANGE_SET
    assert seen[1].data == {"restored": ["a.ts"], "succeeded": True}


def test_trajectory_artifact_is_written(tiny_repo, tmp_path: Path) -> None:
    store_dir = tmp_path / "trajectories"
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        gate=_gate(),
        settings=_quick_settings(trajectories_dir=store_dir, model="test-model"),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    artifact = orchestrator.last_artifact_path
    assert artifact is not None and artifact.parent == store_dir
    assert artifact.name.startswith("task-1__")
    payload = json.loads(artifact.read_text(encoding="utf-8"))
    assert payload["result"]["success"] is True
    assert payload["metadata"]["model"] == "test-model"

    loaded = TrajectoryStore(store_dir).load(artifact)
    assert loaded.id == result.trajectory_id
    assert loaded.step_kinds() == HAPPY_STEPS


def test_git_finalizer_commits_change_set(tiny_git_repo) -> None:
    repo = GitRepository(tiny_git_repo.root)
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        finalizer=GitFinalizer(repo),
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_git_repo.root)

    assert result.success is True
    head = tiny_git_repo.git("rev-parse", "HEAD").stdout.strip()
    assert result.finalize_handle == head
    assert result.summary.endswith(f"; finalized as {head}")
    assert orchestrator.trajectory.step_kinds() == HAPPY_STEPS + [StepKind.FINALIZE_CHANGE_SET]
    subject = tiny_git_repo.git("log", "-1", "--format=%s").stdout.strip()
    assert subject == f"fix: {STATEMENT} (task-1)"
    assert tiny_git_repo.git("status", "--porcelain").stdout.strip() == ""


def test_finalize_needs_confirmation_at_assist(tiny_git_repo) -> None:
    asked = []

    def confirm(action, decision) -> bool:
        asked.append(action)
        return action == StepKind.APPLY_CHANGE_SET.value

    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        finalizer=GitFinalizer(GitRepository(tiny_git_repo.root)),
        confirm=confirm,
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_git_repo.root)

    assert asked == ["apply-change-set", "finalize-change-set"]
    assert result.success is False
    assert result.pending_action == "finalize-change-set"
    assert result.rollback is not None and result.rollback.succeeded
    assert tiny_git_repo.read("a.ts") == "const x = 1;\nexport default x;\n"


def test_transient_producer_errors_are_retried(tiny_repo) -> None:
    producer = FlakyProducer([ConnectionError("network blip")], [_bump_x()])
    delays = []
    orchestrator = Orchestrator(
        producer=producer,
        verifier=_passing(),
        gate=_gate(),
        settings=OrchestratorSettings(retry=RetryPolicy(max_retries=2, initial_delay=0.01)),
        sleep=delays.append,
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is True
    assert producer.calls == 2
    assert len(delays) == 1
    assert orchestrator.trajectory.metadata.retry_count == 1


def test_exhausted_retries_are_classified_transient(tiny_repo) -> None:
    producer = FlakyProducer([ConnectionError("down")] * 3, [_bump_x()])
    orchestrator = Orchestrator(
        producer=producer,
        gate=_gate(),
        settings=OrchestratorSettings(retry=RetryPolicy(max_retries=2, initial_delay=0.01)),
        sleep=lambda _: None,
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert producer.calls == 3
    assert result.error_kind == ErrorKind.TRANSIENT
    assert result.failed_step == StepKind.PRODUCE_CHANGE_SET
    assert orchestrator.trajectory.metadata.retry_count == 2


def test_open_circuit_fails_fast_on_later_runs(tiny_repo) -> None:
    producer = FlakyProducer([ConnectionError("down")] * 5, [_bump_x()])
    orchestrator = Orchestrator(
        producer=producer,
        gate=_gate(),
        settings=_quick_settings(circuit_threshold=1, circuit_reset_timeout=60.0),
    )

    first = orchestrator.run(_task(), tiny_repo.root)
    second = orchestrator.run(_task(), tiny_repo.root)

    assert first.error_kind == ErrorKind.TRANSIENT
    assert second.error_kind == ErrorKind.TRANSIENT
    assert "open" in (second.error or "")
    assert producer.calls == 1


def test_unexpected_errors_are_internal(tiny_repo) -> None:
    producer = FlakyProducer([KeyError("boom")], [_bump_x()])
    orchestrator = Orchestrator(producer=producer, gate=_gate(), settings=_quick_settings())

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.error_kind == ErrorKind.INTERNAL
    assert result.failed_step == StepKind.PRODUCE_CHANGE_SET


def test_missing_repository_is_a_precondition_failure(tmp_path: Path) -> None:
    orchestrator = Orchestrator(producer=StaticChangeProducer([_bump_x()]), settings=_quick_settings())

    result = orchestrator.run(_task(), tmp_path / "nope")

    assert result.success is False
    assert result.error_kind == ErrorKind.PRECONDITION
    assert orchestrator.trajectory.steps == ()


def test_settings_and_orchestrator_from_config(tmp_path: Path) -> None:
    config = {
        "autonomy": {"level": "autonomous", "max_auto_steps": 9},
        "resilience": {"max_retries": 1, "step_timeout": 5, "circuit_threshold": 2},
        "verification": {"command": "pytest -q", "timeout": 30},
        "finalize": {"enabled": True, "commit_template": "chore: {title}"},
        "models": {"default": "local-model"},
        "paths": {"trajectories": "data/trajectories", "backups": ".bk"},
    }

    settings = OrchestratorSettings.from_config(config, base_dir=tmp_path)
    assert settings.retry.max_retries == 1
    assert settings.step_timeout == 5.0
    assert settings.circuit_threshold == 2
    assert settings.test_command == "pytest -q"
    assert settings.test_timeout == 30.0
    assert settings.finalize_enabled is True
    assert settings.commit_template == "chore: {title}"
    assert settings.model == "local-model"
    assert settings.backup_dir == ".bk"
    assert settings.trajectories_dir == tmp_path / "data" / "trajectories"

    orchestrator = Orchestrator.from_config(config, producer=StaticChangeProducer([]), base_dir=tmp_path)
    assert orchestrator.gate.level == AutonomyLevel.AUTONOMOUS
    assert orchestrator.gate.max_auto_steps == 9
    assert orchestrator.breakers["produce"].threshold == 2


class RejectingFinalizer:
    def __init__(self) -> None:
        self.calls = 0

    def finalize(self, modifications: Sequence[Modification], task: Task) -> str:
        self.calls += 1
        raise GitError("git commit failed: pre-commit hook rejected the change")


def test_failed_rollback_is_reported_without_masking_the_original_error(
    tiny_repo, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_rollback(self) -> List[str]:
        raise OSError("disk gone")

    monkeypatch.setattr(FileModifier, "rollback", broken_rollback)
    report = VerificationReport(failed_count=1)
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=StubVerifier(report),
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.success is False
    assert result.error_kind == ErrorKind.VERIFICATION
    assert result.failed_step == StepKind.VERIFY_CHANGE_SET
    assert "Verification failed" in (result.error or "")
    assert result.rollback is not None
    assert result.rollback.succeeded is False
    assert result.rollback.error == "disk gone"
    assert "Rollback failed: disk gone" in result.warnings
    assert result.summary.endswith("; rollback failed")

    steps = orchestrator.trajectory.steps
    assert steps[-1].kind == StepKind.ROLLBACK
    assert steps[-1].success is False


def test_finalizer_failure_rolls_back_the_applied_change_set(tiny_repo) -> None:
    finalizer = RejectingFinalizer()
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        finalizer=finalizer,
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert finalizer.calls == 1
    assert result.success is False
    assert result.failed_step == StepKind.FINALIZE_CHANGE_SET
    assert result.error_kind == ErrorKind.INTERNAL
    assert "pre-commit hook rejected" in (result.error or "")
    assert result.finalize_handle is None
    assert result.rollback is not None and result.rollback.succeeded
    assert result.rollback.restored_paths == ("a.ts",)
    assert tiny_repo.read("a.ts") == "const x = 1;\nexport default x;\n"
    assert orchestrator.trajectory.step_kinds() == HAPPY_STEPS + [
        StepKind.FINALIZE_CHANGE_SET,
        StepKind.ROLLBACK,
    ]


def test_directory_delete_is_a_precondition_failure(tiny_repo) -> None:
    orchestrator = Orchestrator(
        producer=StaticChangeProducer([Modification(file="src", type=ModificationType.DELETE)]),
        verifier=_passing(),
        gate=_gate(),
        settings=_quick_settings(),
    )

    result = orchestrator.run(_task(), tiny_repo.root)

    assert result.error_kind == ErrorKind.PRECONDITION
    assert result.failed_step == StepKind.APPLY_CHANGE_SET
    assert "Path is a directory: src" in (result.error or "")
    assert result.rollback is not None and result.rollback.succeeded
    assert result.rollback.restored_paths == ()
    assert (tiny_repo.root / "src" / "tiny_app" / "calculator.py").is_file()


def test_trajectories_inside_the_repository_are_not_located(tiny_repo) -> None:
    store_dir = tiny_repo.root / "data" / "trajectories"
    first = Orchestrator(
        producer=StaticChangeProducer([_bump_x()]),
        verifier=_passing(),
        gate=_gate(),
        settings=_quick_settings(trajectories_dir=store_dir),
    )
    assert first.run(_task(), tiny_repo.root).success is True
    assert len(list(store_dir.glob("task-1__*.json"))) == 1

    bump_again = Modification(
        file="a.ts",
        type=ModificationType.MODIFY,
        old_content="const x = 2;",
        new_content="const x = 3;",
    )
    second = Orchestrator(
        producer=StaticChangeProducer([bump_again]),
        verifier=_passing(),
        gate=_gate(),
        settings=_quick_settings(trajectories_dir=store_dir),
    )
    result = second.run(_task(), tiny_repo.root)

    assert result.success is True
    located = second.trajectory.steps[2].output
    assert located
    assert all(not item["file"].startswith("data/") for item in located)

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

from swe.memory.schema import (
    RunResult,
    Step,
    Task,
    Trajectory,
    TrajectoryMetadata,
)
from swe.memory.store import TrajectoryStore
from swe.phases import StepKind

CREATED = datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)


def _trajectory(task_id: str = "issue/42: crash", *, success: bool = True) -> Trajectory:
    step = Step(
        id="s1",
        kind=StepKind.UNDERSTAND_TASK,
        input={"task_id": task_id},
        output={"keywords": ["crash"]},
        success=True,
        started_at=CREATED,
        duration_ms=3,
    )
    return Trajectory(
        id="traj-1",
        task=Task(id=task_id, statement="Fix crash", created_at=CREATED),
        repository="/tmp/repo",
        steps=(step,),
        result=RunResult(task_id=task_id, trajectory_id="traj-1", success=success, summary="done"),
        metadata=TrajectoryMetadata(model="offline", duration_ms=10, retry_count=1),
        created_at=CREATED,
    )


def test_save_uses_slugged_task_id_and_timestamp(tmp_path: Path) -> None:
    store = TrajectoryStore(tmp_path / "trajectories")

    first = store.save(_trajectory())
    second = store.save(_trajectory())

    assert first.name == "issue-42-crash__20240501T123000123456Z.json"
    assert second.name == "issue-42-crash__20240501T123000123456Z-1.json"


def test_load_restores_the_trajectory(tmp_path: Path) -> None:
    store = TrajectoryStore(tmp_path)
    original = _trajectory()
    path = store.save(original)

    by_path = store.load(path)
    by_name = store.load(path.name)

    assert by_path.model_dump() == original.model_dump()
    assert by_name.step_kinds() == [StepKind.UNDERSTAND_TASK]
    assert by_name.metadata.retry_count == 1


def test_list_and_latest_order_by_modification_time(tmp_path: Path) -> None:
    store = TrajectoryStore(tmp_path)
    assert store.list() == []
    assert store.latest() is None

    older = store.save(_trajectory("old", success=False))
    newer = store.save(_trajectory("new"))
    os.utime(older, (1_000, 1_000))
    os.utime(newer, (2_000, 2_000))

    assert store.list() == [older, newer]
    assert store.latest().task.id == "new"

from __future__ import annotations

import pytest
from pydantic import ValidationError

from swe.memory.schema import Modification, ModificationType, Task, VerificationReport


def test_task_title_defaults_to_first_statement_line() -> None:
    task = Task(id="t-1", statement="  Fix the login redirect\n\nSteps to reproduce...")

    assert task.title == "Fix the login redirect"
    assert Task(id="t-2", statement="x", title="Custom").title == "Custom"


def test_task_from_text_generates_local_identifier() -> None:
    task = Task.from_text("Do the thing", repository="/repo")

    assert task.id.startswith("local-")
    assert task.repository == "/repo"
    assert task.created_at.tzinfo is not None


def test_records_are_frozen_and_strict() -> None:
    task = Task(id="t", statement="s")

    with pytest.raises(ValidationError):
        task.title = "changed"
    with pytest.raises(ValidationError):
        Task(id="t", statement="s", priority=1)


def test_modify_requires_new_content_but_delete_does_not() -> None:
    with pytest.raises(ValidationError):
        Modification(file="a.py", type=ModificationType.MODIFY, old_content="x")

    delete = Modification(file="a.py", type="delete")
    assert delete.type is ModificationType.DELETE


def test_verification_report_summary() -> None:
    report = VerificationReport(passed_count=4, failed_count=1)

    assert report.summary() == "4 passed, 1 failed"
    assert report.ok is False
    assert VerificationReport().ok is True

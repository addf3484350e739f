"""Shared step enumerations."""

from __future__ import annotations

from enum import Enum


class StepKind(str, Enum):
    """Enumeration of the pipeline steps recorded in a trajectory."""

    UNDERSTAND_TASK = "understand-task"
    ANALYZE_TARGET = "analyze-target"
    LOCATE_RELEVANT_CONTENT = "locate-relevant-content"
    PRODUCE_CHANGE_SET = "produce-change-set"
    APPLY_CHANGE_SET = "apply-change-set"
    VERIFY_CHANGE_SET = "verify-change-set"
    FINALIZE_CHANGE_SET = "finalize-change-set"
    ROLLBACK = "rollback"


# Steps after which the working tree may differ from its pre-run state.
MUTATING_STEPS = frozenset(
    {
        StepKind.APPLY_CHANGE_SET,
        StepKind.FINALIZE_CHANGE_SET,
    }
)


__all__ = ["MUTATING_STEPS", "StepKind"]

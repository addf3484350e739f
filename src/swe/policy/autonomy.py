"""Autonomy gate deciding whether a pipeline action may run unattended.

The module exposes three public abstractions:

``AutonomyPolicy``
    Typed configuration loaded from the ``autonomy`` section of
    ``config.yaml``. Confirmation and forbidden sets left unset take the
    defaults of the configured level.

``AutonomyGate``
    Pure decision function over ``(action, step index, safety context)``
    plus a handful of mutators for ad-hoc overrides.

``AutonomyDecision``
    The verdict for one call. Decisions are computed fresh every time and
    never persisted.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import field_validator

from ..memory.schema import RecordModel
from ..phases import StepKind

PUSH_CHANGES = "push-changes"
ROLLBACK = StepKind.ROLLBACK.value
APPLY_CHANGE_SET = StepKind.APPLY_CHANGE_SET.value
FINALIZE_CHANGE_SET = StepKind.FINALIZE_CHANGE_SET.value

DEFAULT_FORBIDDEN_ACTIONS: FrozenSet[str] = frozenset(
    {"delete-repository", "force-push", "reset-hard", "delete-branch"}
)

_ROLLBACK_CAPABLE_ACTIONS = frozenset({APPLY_CHANGE_SET, FINALIZE_CHANGE_SET})

BACKUP_WARNING = "apply-change-set without a prior backup is discouraged"
FAILING_VERIFICATION_WARNING = "commit with failing verification is discouraged"


class AutonomyLevel(IntEnum):
    """How much the pipeline may do without a human in the loop."""

    SUGGEST = 0
    ASSIST = 1
    AUTO = 2
    AUTONOMOUS = 3


_LEVEL_DESCRIPTIONS: Dict[AutonomyLevel, str] = {
    AutonomyLevel.SUGGEST: "Suggest only: every decision is made by a human.",
    AutonomyLevel.ASSIST: "Assisted editing: actions run once a human confirms them.",
    AutonomyLevel.AUTO: "Automatic: actions run unattended and can be rolled back.",
    AutonomyLevel.AUTONOMOUS: "Fully autonomous: actions run unattended and are verified afterwards.",
}


class PolicyError(RuntimeError):
    """Base class for autonomy gate refusals."""

    def __init__(self, message: str, *, action: str, decision: "AutonomyDecision") -> None:
        super().__init__(message)
        self.action = action
        self.decision = decision


class ActionForbiddenError(PolicyError):
    """Raised when the gate refuses an action outright."""


class ConfirmationRequiredError(PolicyError):
    """Raised when an action needs confirmation that was not granted."""


def action_key(action: str | Enum) -> str:
    """Return the plain string identifier for ``action``."""
    if isinstance(action, Enum):
        return str(action.value)
    return str(action)


def default_confirmation_actions(level: AutonomyLevel | int) -> FrozenSet[str]:
    """Return the actions that require confirmation by default at ``level``."""
    level = AutonomyLevel(level)
    if level == AutonomyLevel.SUGGEST:
        return frozenset({APPLY_CHANGE_SET, FINALIZE_CHANGE_SET, PUSH_CHANGES, ROLLBACK})
    if level == AutonomyLevel.ASSIST:
        return frozenset({APPLY_CHANGE_SET, FINALIZE_CHANGE_SET, PUSH_CHANGES})
    if level == AutonomyLevel.AUTO:
        return frozenset({PUSH_CHANGES})
    return frozenset()


class AutonomyPolicy(RecordModel):
    """Per-run autonomy configuration."""

    level: AutonomyLevel = AutonomyLevel.ASSIST
    require_confirmation: Optional[FrozenSet[str]] = None
    forbidden_actions: Optional[FrozenSet[str]] = None
    max_auto_steps: int = 20
    rollback_timeout: float = 300.0
    safety_boundaries: bool = True

    @field_validator("level", mode="before")
    @classmethod
    def _coerce_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            name = value.strip().upper()
            if name.isdigit():
                return int(name)
            try:
                return AutonomyLevel[name]
            except KeyError as error:
                raise ValueError(f"Unknown autonomy level: {value!r}") from error
        return value

    @field_validator("require_confirmation", "forbidden_actions", mode="before")
    @classmethod
    def _coerce_actions(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (str, Enum)):
            return frozenset({action_key(value)})
        if isinstance(value, Iterable):
            return frozenset(action_key(item) for item in value)
        return value

    @field_validator("max_auto_steps")
    @classmethod
    def _check_max_steps(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_auto_steps must be non-negative")
        return value

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "AutonomyPolicy":
        """Build a policy from the ``autonomy`` configuration section."""
        section = config or {}
        if not isinstance(section, Mapping):
            return cls()
        return cls.model_validate(dict(section))


@dataclass(frozen=True, slots=True)
class SafetyContext:
    """Advisory facts about the working tree at decision time."""

    has_backup: Optional[bool] = None
    test_passing: Optional[bool] = None


@dataclass(frozen=True, slots=True)
class AutonomyDecision:
    """Gate verdict for one ``(action, step index)`` pair."""

    allowed: bool
    requires_confirmation: bool
    can_rollback: bool
    reason: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "requires_confirmation": self.requires_confirmation,
            "can_rollback": self.can_rollback,
            "reason": self.reason,
            "warnings": list(self.warnings),
        }


class AutonomyGate:
    """Evaluate pipeline actions against an :class:`AutonomyPolicy`."""

    def __init__(self, policy: AutonomyPolicy | None = None) -> None:
        policy = policy or AutonomyPolicy()
        self._level = AutonomyLevel(policy.level)
        self._max_auto_steps = policy.max_auto_steps
        self._rollback_timeout = policy.rollback_timeout
        self._safety_boundaries = policy.safety_boundaries
        self._confirmation: set[str] = set(
            policy.require_confirmation
            if policy.require_confirmation is not None
            else default_confirmation_actions(self._level)
        )
        self._forbidden: set[str] = set(
            policy.forbidden_actions if policy.forbidden_actions is not None else DEFAULT_FORBIDDEN_ACTIONS
        )

    @property
    def level(self) -> AutonomyLevel:
        return self._level

    @property
    def max_auto_steps(self) -> int:
        return self._max_auto_steps

    @property
    def rollback_timeout(self) -> float:
        return self._rollback_timeout

    @property
    def policy(self) -> AutonomyPolicy:
        """Return a snapshot of the effective policy with resolved sets."""
        return AutonomyPolicy(
            level=self._level,
            require_confirmation=frozenset(self._confirmation),
            forbidden_actions=frozenset(self._forbidden),
            max_auto_steps=self._max_auto_steps,
            rollback_timeout=self._rollback_timeout,
            safety_boundaries=self._safety_boundaries,
        )

    def can_execute(
        self,
        action: str | Enum,
        current_step: int,
        context: SafetyContext | None = None,
    ) -> AutonomyDecision:
        """Decide whether ``action`` may run at step index ``current_step``."""
        key = action_key(action)

        if key in self._forbidden:
            return AutonomyDecision(
                allowed=False,
                requires_confirmation=False,
                can_rollback=False,
                reason=f"Action '{key}' is forbidden",
                warnings=("Action is on the forbidden list",),
            )

        if current_step >= self._max_auto_steps:
            return AutonomyDecision(
                allowed=False,
                requires_confirmation=True,
                can_rollback=True,
                reason=f"Step limit reached ({self._max_auto_steps})",
                warnings=("Human intervention is required to continue",),
            )

        requires_confirmation = key in self._confirmation

        warnings: list[str] = []
        if self._safety_boundaries:
            context = context or SafetyContext()
            if key == APPLY_CHANGE_SET and not context.has_backup:
                warnings.append(BACKUP_WARNING)
            if key == FINALIZE_CHANGE_SET and not context.test_passing:
                warnings.append(FAILING_VERIFICATION_WARNING)

        # A confirmation requirement defers the verdict to the confirming
        # party instead of refusing; only the two checks above refuse.
        allowed = True

        can_rollback = (
            self._level >= AutonomyLevel.AUTO
            and key in _ROLLBACK_CAPABLE_ACTIONS
            and not requires_confirmation
        )

        return AutonomyDecision(
            allowed=allowed,
            requires_confirmation=requires_confirmation,
            can_rollback=can_rollback,
            warnings=tuple(warnings),
        )

    def set_level(self, level: AutonomyLevel | int) -> None:
        """Switch level and reset the confirmation set to its defaults."""
        self._level = AutonomyLevel(level)
        self._confirmation = set(default_confirmation_actions(self._level))

    def add_confirmation_step(self, action: str | Enum) -> None:
        self._confirmation.add(action_key(action))

    def remove_confirmation_step(self, action: str | Enum) -> None:
        self._confirmation.discard(action_key(action))

    @staticmethod
    def describe_level(level: AutonomyLevel | int) -> str:
        return _LEVEL_DESCRIPTIONS[AutonomyLevel(level)]

    @staticmethod
    def level_name(level: AutonomyLevel | int) -> str:
        return AutonomyLevel(level).name


__all__ = [
    "APPLY_CHANGE_SET",
    "ActionForbiddenError",
    "AutonomyDecision",
    "AutonomyGate",
    "AutonomyLevel",
    "AutonomyPolicy",
    "BACKUP_WARNING",
    "ConfirmationRequiredError",
    "DEFAULT_FORBIDDEN_ACTIONS",
    "FAILING_VERIFICATION_WARNING",
    "FINALIZE_CHANGE_SET",
    "PUSH_CHANGES",
    "PolicyError",
    "ROLLBACK",
    "SafetyContext",
    "action_key",
    "default_confirmation_actions",
]

"""Synchronous notification sink for pipeline progress events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from .memory.schema import utc_now
from .phases import StepKind

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of notification emitted by the orchestrator."""

    STEP_STARTED = "step:start"
    STEP_ENDED = "step:end"
    STEP_FAILED = "step:error"
    ROLLBACK_COMPLETED = "rollback:complete"
    RUN_COMPLETED = "run:complete"


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """Payload delivered to event handlers."""

    kind: EventKind
    task_id: str
    step_id: Optional[str] = None
    step_kind: Optional[StepKind] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Any = field(default_factory=utc_now)


EventHandler = Callable[[PipelineEvent], None]


class EventBus:
    """Per-kind observer lists.

    Handlers run in registration order on the emitting thread. A handler
    that raises is logged and skipped; it can never change a step outcome.
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventKind, List[EventHandler]] = {}
        self._lock = Lock()

    def on(self, kind: EventKind | str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(EventKind(kind), []).append(handler)

    def off(self, kind: EventKind | str, handler: EventHandler) -> None:
        """Remove ``handler``; safe to call when it is not registered."""
        with self._lock:
            handlers = self._handlers.get(EventKind(kind), [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: PipelineEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.kind, ()))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                LOGGER.exception("Event handler %r failed for %s", handler, event.kind.value)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


__all__ = ["EventBus", "EventHandler", "EventKind", "PipelineEvent"]

"""Understand phase: distil a task statement into search keywords."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict

from ..memory.schema import Task

_MAX_KEYWORDS = 10
_MIN_KEYWORD_LENGTH = 3

_STOPWORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would could should
    may might must shall can need dare ought used to of in for on with at by from as into
    through during before after above below between under again further then once here there
    when where why how all each few more most other some such no nor not only own same so
    than too very s t just don now i me my myself we our ours ourselves you your yours
    yourself yourselves he him his himself she her hers herself it its itself they them their
    theirs themselves what which who whom this that these those am and or but if
    """.split()
)

# Exception headlines and stack frame lines, one match per line.
_ERROR_TRACE_RE = re.compile(r"^.*?(?:\w*Error\b:.*|\bat\s+.*\(.+\)|File \".+\", line \d+.*)$", re.MULTILINE)
_TOKEN_STRIP = "\"'`.,;:!?()[]{}<>"


@dataclass(slots=True)
class TaskUnderstanding:
    """Structured result returned by the Understand phase."""

    task_id: str
    title: str
    keywords: list[str] = field(default_factory=list)
    error_trace: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "keywords": list(self.keywords),
            "error_trace": self.error_trace,
        }


def extract_keywords(text: str, *, limit: int = _MAX_KEYWORDS) -> list[str]:
    """Return up to ``limit`` distinct non-stopword tokens in order of appearance."""
    keywords: list[str] = []
    for raw in text.lower().split():
        word = raw.strip(_TOKEN_STRIP)
        if len(word) < _MIN_KEYWORD_LENGTH or word in _STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def extract_error_trace(text: str) -> str | None:
    """Collect error headlines and stack frames embedded in ``text``."""
    matches = [match.group(0).strip() for match in _ERROR_TRACE_RE.finditer(text)]
    return "\n".join(matches) if matches else None


def run(task: Task) -> TaskUnderstanding:
    """Execute the Understand phase heuristically."""
    return TaskUnderstanding(
        task_id=task.id,
        title=task.title,
        keywords=extract_keywords(task.statement),
        error_trace=extract_error_trace(task.statement),
    )


class HeuristicTaskInterpreter:
    """Default task interpreter backed by :func:`run`."""

    def understand(self, task: Task) -> TaskUnderstanding:
        return run(task)


__all__ = [
    "HeuristicTaskInterpreter",
    "TaskUnderstanding",
    "extract_error_trace",
    "extract_keywords",
    "run",
]

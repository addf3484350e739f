"""Test-command verification for applied change sets."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Dict, Mapping, Sequence

from ..memory.schema import Modification, VerificationReport

LOGGER = logging.getLogger(__name__)

_SUMMARY_RE = re.compile(
    r"(\d+)\s+(passed|failed|errors?|skipped|xfailed|xpassed|warnings?|deselected)"
)
_FAILURE_LINE_RE = re.compile(r"^(?:FAILED|ERROR)\s+(.+?)\s*$", re.MULTILINE)
_NO_TESTS_EXIT_CODE = 5
_MAX_OUTPUT_CHARS = 20_000


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def parse_summary(text: str) -> tuple[int, int]:
    """Return ``(passed, failed)`` counts from pytest-style summary output.

    Errors count as failures. When several summaries appear the last one
    for each outcome wins.
    """
    counts: Dict[str, int] = {}
    for amount, outcome in _SUMMARY_RE.findall(text):
        key = "error" if outcome.startswith("error") else outcome
        counts[key] = int(amount)
    return counts.get("passed", 0), counts.get("failed", 0) + counts.get("error", 0)


def parse_failures(text: str) -> tuple[str, ...]:
    return tuple(match.group(1) for match in _FAILURE_LINE_RE.finditer(text))


class CommandVerifier:
    """Run a test command in the repository and summarise its outcome."""

    def __init__(
        self,
        repo_root: Path,
        command: str | Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.command: tuple[str, ...] = tuple(shlex.split(command) if isinstance(command, str) else command)
        if not self.command:
            raise ValueError("Verification command must not be empty")
        self.timeout = timeout
        self.env = dict(env or {})

    def verify(self, modifications: Sequence[Modification]) -> VerificationReport:
        LOGGER.debug("Verifying %d modification(s) with %s", len(modifications), " ".join(self.command))
        env_vars = _merge_env(self.env)
        src_dir = self.repo_root / "src"
        if src_dir.is_dir():
            current = env_vars.get("PYTHONPATH")
            env_vars["PYTHONPATH"] = os.pathsep.join(filter(None, [str(src_dir), current]))

        try:
            process = subprocess.run(
                self.command,
                cwd=self.repo_root,
                env=env_vars,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            message = f"Verification command timed out after {self.timeout}s"
            LOGGER.warning(message)
            return VerificationReport(failed_count=1, failure_details=(message,))

        output = "\n".join(part for part in (process.stdout, process.stderr) if part)
        trimmed = output[-_MAX_OUTPUT_CHARS:]

        if process.returncode == _NO_TESTS_EXIT_CODE:
            return VerificationReport(output=trimmed)

        passed, failed = parse_summary(output)
        details = parse_failures(output)
        if process.returncode != 0 and failed == 0:
            failed = 1
            details = details or (f"Command exited with status {process.returncode}",)

        return VerificationReport(
            passed_count=passed,
            failed_count=failed,
            failure_details=details,
            output=trimmed,
        )


__all__ = ["CommandVerifier", "parse_failures", "parse_summary"]

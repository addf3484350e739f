"""Minimal git helpers
The helpers below provide just enough structure to initialise a working
tree, inspect pending changes, and commit exactly the paths a change set
touched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Sequence, Set

import subprocess

from ..memory.schema import Modification, Task

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMIT_TEMPLATE = "fix: {title} ({task_id})"


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _decode_result(process: subprocess.CompletedProcess[bytes]) -> subprocess.CompletedProcess[str]:
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    return subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(
        cls,
        root: Path | str,
        *,
        user_name: str = "SWE Pipeline",
        user_email: str = "pipeline@example.com",
    ) -> "GitRepository":
        """Initialise a git repository at ``root`` and commit its current contents."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        if not (path / ".git").exists():
            cls._run_in(path, ["init"])
        repo = cls(path)

        for key, value in (("user.email", user_email), ("user.name", user_name)):
            configured = repo._run_git(["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                repo._run_git(["config", key, value])

        repo._run_git(["add", "--all"])
        repo._run_git(["commit", "--allow-empty", "-m", "Initial commit"])
        return repo

    # ------------------------------------------------------------------ git IO
    @staticmethod
    def _run_in(cwd: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(command, cwd=cwd, capture_output=True, text=False, check=False)
        except FileNotFoundError as error:
            raise GitError("git executable not found") from error
        result = _decode_result(process)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run_in(self.root, args, check=check)

    # ------------------------------------------------------------- repo status
    def head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        result = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        paths: Set[Path] = set()
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            if status == "??" and not include_untracked:
                continue
            paths.add(Path(raw_path.strip().strip('"')))
        return sorted(paths, key=lambda item: item.as_posix())

    # ----------------------------------------------------------------- commits
    def commit_paths(self, paths: Iterable[str], message: str) -> str | None:
        """Stage and commit only ``paths``.

        Returns the new commit SHA, or ``None`` when none of the paths had
        changes to commit.
        """

        changed = {path.as_posix() for path in self.working_tree_changes()}
        candidates = sorted({Path(path).as_posix() for path in paths} & changed)
        if not candidates:
            return None

        self._run_git(["add", "--all", "--", *candidates], check=True)

        commit = self._run_git(["commit", "-m", message, "--", *candidates], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            raise GitError(f"git commit failed: {output}")

        return self.head()


class GitFinalizer:
    """Commit the files a change set touched and return the commit SHA."""

    def __init__(self, repo: GitRepository, *, message_template: str = DEFAULT_COMMIT_TEMPLATE) -> None:
        self.repo = repo
        self.message_template = message_template

    def render_message(self, task: Task) -> str:
        return self.message_template.format(title=task.title or task.id, task_id=task.id)

    def finalize(self, modifications: Sequence[Modification], task: Task) -> str:
        paths = [modification.file for modification in modifications]
        sha = self.repo.commit_paths(paths, self.render_message(task))
        if sha is None:
            LOGGER.warning("Change set for %s produced no committable changes", task.id)
            head = self.repo.head()
            if head is None:
                raise GitError("Nothing to commit and repository has no HEAD")
            return head
        LOGGER.info("Committed %d path(s) for %s as %s", len(paths), task.id, sha)
        return sha


__all__ = ["DEFAULT_COMMIT_TEMPLATE", "GitError", "GitFinalizer", "GitRepository"]

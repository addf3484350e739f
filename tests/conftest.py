from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")

    def git(self, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", *args],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )


def _write_tiny_repo(repo_root: Path) -> None:
    repo_root.mkdir(parents=True, exist_ok=True)
    (repo_root / "a.ts").write_text("const x = 1;\nexport default x;\n", encoding="utf-8")

    src_dir = repo_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "__init__.py").write_text("", encoding="utf-8")
    (src_dir / "calculator.py").write_text(
        textwrap.dedent(
            """
            from __future__ import annotations


            def add(left: int, right: int) -> int:
                return left - right
            """
        ).lstrip(),
        encoding="utf-8",
    )

    tests_dir = repo_root / "tests"
    tests_dir.mkdir()
    (tests_dir / "test_calculator.py").write_text(
        textwrap.dedent(
            """
            from tiny_app.calculator import add


            def test_add_returns_sum() -> None:
                assert add(2, 3) == 5
            """
        ).lstrip(),
        encoding="utf-8",
    )


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a small working tree with a TypeScript file and a Python package."""

    repo_root = tmp_path / "tiny-repo"
    _write_tiny_repo(repo_root)
    return TinyRepo(root=repo_root)


@pytest.fixture()
def tiny_git_repo(tmp_path: Path) -> TinyRepo:
    """Same as ``tiny_repo`` but committed to a fresh git repository."""

    repo_root = tmp_path / "tiny-git-repo"
    _write_tiny_repo(repo_root)
    repo = TinyRepo(root=repo_root)
    repo.git("init")
    repo.git("config", "user.email", "agent@example.com")
    repo.git("config", "user.name", "SWE Pipeline")
    repo.git("add", ".")
    repo.git("commit", "-m", "Initial tiny repo state")
    return repo

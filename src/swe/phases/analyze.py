"""Analyze phase: profile the target repository before searching it."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable

LOGGER = logging.getLogger(__name__)

_SOURCE_DIR_CANDIDATES = ("src", "lib", "app", "source")
_TEST_DIR_CANDIDATES = ("tests", "test", "__tests__", "spec")
_MANIFEST_LANGUAGES = (
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("Cargo.toml", "rust"),
    ("go.mod", "go"),
    ("pom.xml", "java"),
    ("package.json", "typescript"),
)
_JS_TEST_FRAMEWORKS = ("vitest", "jest", "mocha")


@dataclass(slots=True)
class RepositoryProfile:
    """Structured result returned by the Analyze phase."""

    root: str
    language: str = "unknown"
    manifest: str | None = None
    test_framework: str | None = None
    source_dir: str | None = None
    test_dir: str | None = None
    top_level: list[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "language": self.language,
            "manifest": self.manifest,
            "test_framework": self.test_framework,
            "source_dir": self.source_dir,
            "test_dir": self.test_dir,
            "top_level": list(self.top_level),
        }


def _first_match(names: Iterable[str], candidates: Iterable[str]) -> str | None:
    lowered = {name.lower(): name for name in names}
    for candidate in candidates:
        if candidate in lowered:
            return lowered[candidate]
    return None


def _detect_js_test_framework(package_json: Path) -> str | None:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        LOGGER.debug("Unable to read %s: %s", package_json, error)
        return None
    if not isinstance(data, dict):
        return None
    deps: Dict[str, Any] = {}
    for section in ("dependencies", "devDependencies"):
        value = data.get(section)
        if isinstance(value, dict):
            deps.update(value)
    for framework in _JS_TEST_FRAMEWORKS:
        if framework in deps:
            return framework
    return None


def _detect_python_test_framework(repo_root: Path) -> str | None:
    if (repo_root / "pytest.ini").exists() or (repo_root / "conftest.py").exists():
        return "pytest"
    pyproject = repo_root / "pyproject.toml"
    if pyproject.exists():
        try:
            text = pyproject.read_text(encoding="utf-8")
        except OSError:
            return None
        if "pytest" in text:
            return "pytest"
    if (repo_root / "tests" / "conftest.py").exists():
        return "pytest"
    return None


def run(repo_root: Path) -> RepositoryProfile:
    """Execute the Analyze phase against ``repo_root``."""
    repo_root = Path(repo_root)
    if not repo_root.is_dir():
        raise FileNotFoundError(f"Repository not found: {repo_root}")

    entries = sorted(repo_root.iterdir(), key=lambda item: item.name)
    directories = [entry.name for entry in entries if entry.is_dir() and not entry.name.startswith(".")]
    files = [entry.name for entry in entries if entry.is_file()]

    profile = RepositoryProfile(
        root=repo_root.as_posix(),
        source_dir=_first_match(directories, _SOURCE_DIR_CANDIDATES),
        test_dir=_first_match(directories, _TEST_DIR_CANDIDATES),
        top_level=directories + files,
    )

    for manifest, language in _MANIFEST_LANGUAGES:
        if manifest in files:
            profile.manifest = manifest
            profile.language = language
            break

    if profile.language == "python":
        profile.test_framework = _detect_python_test_framework(repo_root)
    elif profile.manifest == "package.json":
        profile.test_framework = _detect_js_test_framework(repo_root / "package.json")

    return profile


class FilesystemRepositoryAnalyzer:
    """Default repository analyzer backed by :func:`run`."""

    def analyze(self, repo_root: Path) -> RepositoryProfile:
        return run(repo_root)


__all__ = ["FilesystemRepositoryAnalyzer", "RepositoryProfile", "run"]

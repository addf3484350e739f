"""Plain-text keyword search over a working tree."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, List, Sequence

from ..memory.schema import Location

LOGGER = logging.getLogger(__name__)

_SKIP_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"})
_MAX_FILE_BYTES = 1_000_000


class KeywordLocator:
    """Find lines containing any of the given keywords (case-insensitive)."""

    def __init__(
        self,
        repo_root: Path,
        *,
        ignore_dirs: Sequence[str] = (),
        ignore_paths: Sequence[Path | str] = (),
        max_results: int = 50,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.ignore_dirs = _SKIP_DIRS | frozenset(ignore_dirs)
        # Resolved directories skipped during the walk.
        self.ignore_paths = frozenset(Path(path).resolve() for path in ignore_paths)
        self.max_results = max_results

    def locate(self, keywords: Sequence[str]) -> List[Location]:
        needles = [keyword.lower() for keyword in keywords if keyword and keyword.strip()]
        if not needles:
            return []

        results: List[Location] = []
        seen: set[tuple[str, int]] = set()
        for path in self._iter_files():
            relative = path.relative_to(self.repo_root).as_posix()
            try:
                with path.open("r", encoding="utf-8", newline="") as handle:
                    lines = handle.read().split("\n")
            except (OSError, UnicodeDecodeError) as error:
                LOGGER.debug("Skipping %s: %s", relative, error)
                continue

            for number, line in enumerate(lines, start=1):
                lowered = line.lower()
                if not any(needle in lowered for needle in needles):
                    continue
                key = (relative, number)
                if key in seen:
                    continue
                seen.add(key)
                results.append(Location(file=relative, line=number, context=line.rstrip("\r")))
                if len(results) >= self.max_results:
                    return results
        return results

    def _iter_files(self) -> Iterator[Path]:
        for current, dirnames, filenames in os.walk(self.repo_root):
            dirnames[:] = sorted(
                name
                for name in dirnames
                if name not in self.ignore_dirs
                and not name.startswith(".")
                and (Path(current) / name) not in self.ignore_paths
            )
            for name in sorted(filenames):
                path = Path(current) / name
                try:
                    if path.stat().st_size > _MAX_FILE_BYTES:
                        continue
                except OSError:
                    continue
                yield path


__all__ = ["KeywordLocator"]

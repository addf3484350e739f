"""Transactional file modifications with first-touch backups and rollback."""

from __future__ import annotations

import json
import logging
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..memory.schema import Location, Modification, ModificationType

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("swe.telemetry")

DEFAULT_BACKUP_DIR = ".swe-backup"
PREVIEW_SEPARATOR = "\n\n" + "=" * 40 + "\n\n"

_WHITESPACE_RUN = re.compile(r"\s+")


class ModificationError(RuntimeError):
    """Raised when a modification cannot be applied to the working tree."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class RollbackError(RuntimeError):
    """Raised when one or more paths could not be restored."""

    def __init__(self, message: str, *, failures: Mapping[str, str] | None = None) -> None:
        super().__init__(message)
        self.failures: dict[str, str] = dict(failures or {})


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_modifier_event(event: str, **fields: Any) -> None:
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def normalise_content(text: str) -> str:
    """Collapse whitespace runs and unify line endings for containment checks."""
    return _WHITESPACE_RUN.sub(" ", text.replace("\r\n", "\n")).strip()


def _detect_newline(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def _match_newlines(text: str, newline: str) -> str:
    """Rewrite the line endings of ``text`` to ``newline``."""
    unified = text.replace("\r\n", "\n")
    return unified if newline == "\n" else unified.replace("\n", newline)


def fuzzy_replace(current: str, old: str, new: str) -> tuple[str, bool]:
    """Replace the first line window whose trimmed lines equal ``old``.

    Returns the updated text and whether a window matched. Without a match
    ``new`` is appended after a newline. The file's line ending is kept
    for spliced and appended lines.
    """
    newline = _detect_newline(current)
    current_lines = current.split(newline)
    old_lines = old.replace("\r\n", "\n").split("\n")
    new_lines = new.replace("\r\n", "\n").split("\n")
    wanted = [line.strip() for line in old_lines]

    for start in range(len(current_lines) - len(old_lines) + 1):
        window = current_lines[start : start + len(old_lines)]
        if [line.strip() for line in window] == wanted:
            updated = current_lines[:start] + new_lines + current_lines[start + len(old_lines) :]
            return newline.join(updated), True

    return current + newline + newline.join(new_lines), False


class FileModifier:
    """Apply create/modify/delete operations to a working tree.

    The first time a batch touches a path its prior bytes are captured in
    the backup record (``None`` when the file did not exist) and a
    timestamped copy is written to the side backup directory. ``rollback``
    restores every captured path; ``cleanup`` discards the record once the
    batch is durable.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        backup_dir_name: str = DEFAULT_BACKUP_DIR,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.backup_dir = self.repo_root / backup_dir_name
        self._clock = clock
        self._originals: Dict[Path, Optional[bytes]] = {}
        self._created_dirs: List[Path] = []
        self.appended_paths: List[str] = []

    # ------------------------------------------------------------ batch

    def apply_all(self, modifications: Iterable[Modification]) -> None:
        """Apply ``modifications`` in order, stopping at the first failure.

        The modifier does not roll back on its own; callers decide.
        """
        for modification in modifications:
            self.apply(modification)

    def apply(self, modification: Modification) -> None:
        if modification.type == ModificationType.CREATE:
            self.create(modification.file, modification.new_content or "")
        elif modification.type == ModificationType.MODIFY:
            self.modify(modification.file, modification.old_content, modification.new_content or "")
        elif modification.type == ModificationType.DELETE:
            self.delete(modification.file)
        else:  # pragma: no cover - exhaustive over ModificationType
            raise ModificationError(f"Unsupported modification type: {modification.type}")

    # ------------------------------------------------------- operations

    def create(self, path: str | Path, content: str) -> None:
        target = self._resolve(path)
        self._reject_directory(target)
        self._record_original(target)
        self._ensure_parent(target)
        self._write_text(target, content)
        LOGGER.debug("Created %s", self._display(target))

    def modify(self, path: str | Path, old_content: str | None, new_content: str) -> None:
        target = self._resolve(path)
        self._reject_directory(target)
        if not target.is_file():
            raise ModificationError(
                f"File not found: {self._display(target)}",
                details={"path": self._display(target)},
            )

        self._record_original(target)
        current = self._read_text(target)

        if not old_content:
            LOGGER.warning(
                "Overwriting %s without old content; the whole file is replaced",
                self._display(target),
            )
            self._write_text(target, new_content)
            return

        if old_content in current:
            replacement = _match_newlines(new_content, _detect_newline(current))
            self._write_text(target, current.replace(old_content, replacement, 1))
            return

        if normalise_content(old_content) not in normalise_content(current):
            raise ModificationError(
                f"Old content not found in file: {self._display(target)}",
                details={"path": self._display(target)},
            )

        updated, matched = fuzzy_replace(current, old_content, new_content)
        if not matched:
            display = self._display(target)
            LOGGER.warning(
                "No line window matched the old content in %s; new content was appended to the end of the file",
                display,
            )
            _emit_modifier_event("modifier.fuzzy_append", path=display, new_lines=new_content.count("\n") + 1)
            self.appended_paths.append(display)
        self._write_text(target, updated)

    def delete(self, path: str | Path) -> None:
        target = self._resolve(path)
        self._reject_directory(target)
        if not target.exists():
            return
        self._record_original(target)
        target.unlink()
        LOGGER.debug("Deleted %s", self._display(target))

    # ---------------------------------------------------- transactions

    def rollback(self) -> List[str]:
        """Restore every recorded path to its pre-batch state.

        Returns the restored paths. Every entry is attempted even if an
        earlier one fails; failures are raised together afterwards.
        """
        restored: List[str] = []
        failures: Dict[str, str] = {}

        for target, original in self._originals.items():
            display = self._display(target)
            try:
                if original is None:
                    if target.exists():
                        target.unlink()
                else:
                    self._ensure_parent(target)
                    target.write_bytes(original)
            except OSError as error:
                failures[display] = str(error)
                continue
            restored.append(display)

        for directory in reversed(self._created_dirs):
            try:
                directory.rmdir()
            except OSError:
                continue

        self._reset()
        _emit_modifier_event("modifier.rollback", restored=restored, failures=failures)
        if failures:
            raise RollbackError(
                "Failed to restore " + ", ".join(sorted(failures)),
                failures=failures,
            )
        return restored

    def cleanup(self) -> None:
        """Discard the backup record and side directory without restoring."""
        self._reset()

    def modified_files(self) -> List[str]:
        return [self._display(path) for path in self._originals]

    def preview(self, modifications: Sequence[Modification]) -> str:
        """Render what ``modifications`` would do without touching disk."""
        blocks: List[str] = []
        for modification in modifications:
            if modification.type == ModificationType.CREATE:
                blocks.append(f"+++ CREATE: {modification.file}\n{modification.new_content or ''}")
            elif modification.type == ModificationType.MODIFY:
                blocks.append(
                    f"--- MODIFY: {modification.file}\n--- OLD ---\n{modification.old_content or '(none)'}"
                    f"\n--- NEW ---\n{modification.new_content or ''}"
                )
            elif modification.type == ModificationType.DELETE:
                blocks.append(f"--- DELETE: {modification.file}")
        return PREVIEW_SEPARATOR.join(blocks)

    # --------------------------------------------------------- helpers

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.repo_root / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.repo_root)
        except ValueError as error:
            raise ModificationError(
                f"Path escapes repository: {path}",
                details={"path": str(path)},
            ) from error
        if resolved == self.backup_dir or self.backup_dir in resolved.parents:
            raise ModificationError(
                f"Path points into the backup directory: {path}",
                details={"path": str(path)},
            )
        if resolved == self.repo_root:
            raise ModificationError("Path must name a file inside the repository", details={"path": str(path)})
        return resolved

    def _display(self, target: Path) -> str:
        try:
            return target.relative_to(self.repo_root).as_posix()
        except ValueError:
            return target.as_posix()

    def _reject_directory(self, target: Path) -> None:
        if target.is_dir():
            display = self._display(target)
            raise ModificationError(f"Path is a directory: {display}", details={"path": display})

    def _record_original(self, target: Path) -> None:
        if target not in self._originals:
            self._originals[target] = target.read_bytes() if target.exists() else None
        if target.is_file():
            self._write_backup_copy(target)

    def _write_backup_copy(self, target: Path) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(self._clock() * 1000)
        backup_path = self.backup_dir / f"{target.name}.{stamp}.bak"
        counter = 1
        while backup_path.exists():
            backup_path = self.backup_dir / f"{target.name}.{stamp}-{counter}.bak"
            counter += 1
        shutil.copy2(target, backup_path)

    def _ensure_parent(self, target: Path) -> None:
        missing: List[Path] = []
        parent = target.parent
        while parent != self.repo_root and not parent.exists():
            missing.append(parent)
            parent = parent.parent
        if not missing:
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        self._created_dirs.extend(reversed(missing))

    def _reset(self) -> None:
        self._originals.clear()
        self._created_dirs.clear()
        if self.backup_dir.exists():
            shutil.rmtree(self.backup_dir, ignore_errors=True)

    @staticmethod
    def _read_text(target: Path) -> str:
        with target.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    @staticmethod
    def _write_text(target: Path, content: str) -> None:
        with target.open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)


def modification_from_snippet(
    snippet: Location,
    new_content: str,
    description: str | None = None,
) -> Modification:
    """Build a modify operation replacing the snippet's context text."""
    return Modification(
        file=snippet.file,
        type=ModificationType.MODIFY,
        old_content=snippet.context,
        new_content=new_content,
        description=description,
    )


def create_file_modification(path: str, content: str, description: str | None = None) -> Modification:
    return Modification(file=path, type=ModificationType.CREATE, new_content=content, description=description)


def delete_file_modification(
    path: str,
    current_content: str | None = None,
    description: str | None = None,
) -> Modification:
    return Modification(
        file=path,
        type=ModificationType.DELETE,
        old_content=current_content,
        description=description,
    )


__all__ = [
    "DEFAULT_BACKUP_DIR",
    "FileModifier",
    "ModificationError",
    "PREVIEW_SEPARATOR",
    "RollbackError",
    "create_file_modification",
    "delete_file_modification",
    "fuzzy_replace",
    "modification_from_snippet",
    "normalise_content",
]

"""Durable JSON artifacts for frozen run trajectories."""

from __future__ import annotations

import json
import logging
import re
from datetime import timezone
from pathlib import Path
from typing import List

from .schema import Trajectory

LOGGER = logging.getLogger(__name__)

_MAX_SLUG_LENGTH = 60


def _slugify(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", value.strip())
    slug = slug.strip("-.")[:_MAX_SLUG_LENGTH].rstrip("-.")
    return slug or "task"


class TrajectoryStore:
    """Write and read one JSON file per trajectory under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def save(self, trajectory: Trajectory) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        timestamp = trajectory.created_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        stem = f"{_slugify(trajectory.task.id)}__{timestamp}"
        artifact_path = self.root / f"{stem}.json"
        counter = 1
        while artifact_path.exists():
            artifact_path = self.root / f"{stem}-{counter}.json"
            counter += 1

        payload = trajectory.model_dump(mode="json")
        with artifact_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        LOGGER.debug("Saved trajectory %s to %s", trajectory.id, artifact_path)
        return artifact_path

    def list(self) -> List[Path]:
        """Return stored artifact paths, oldest first."""
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob("*.json"), key=lambda path: (path.stat().st_mtime, path.name))

    def load(self, path: Path | str) -> Trajectory:
        candidate = Path(path)
        if not candidate.is_absolute() and not candidate.exists():
            candidate = self.root / candidate
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        return Trajectory.model_validate(data)

    def latest(self) -> Trajectory | None:
        paths = self.list()
        if not paths:
            return None
        return self.load(paths[-1])


__all__ = ["TrajectoryStore"]

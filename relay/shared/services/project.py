"""Project store: name/path bookkeeping persisted to ``projects.json``.

Projects only matter to sessions through their ``path``, which becomes
the agent's working directory.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path

from relay.engine.errors import ProjectNotFoundError, ProjectValidationError
from relay.shared.models.project import Project
from relay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

PROJECTS_FILENAME = "projects.json"


class ProjectStore:
    """CRUD over project records, rewritten in full on every change."""

    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / PROJECTS_FILENAME
        self._projects: dict[int, Project] = {}
        self._last_id = 0

    def load(self) -> int:
        self._projects.clear()
        try:
            raw = read_json(self._path, default=[])
        except (OSError, ValueError) as exc:
            logger.error("Failed to load projects from %s: %s", self._path, exc)
            return 0
        for item in raw if isinstance(raw, list) else []:
            try:
                project = Project.from_dict(item)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed project entry: %r", item)
                continue
            self._projects[project.id] = project
        self._last_id = max(self._projects, default=0)
        logger.info("Loaded %d projects", len(self._projects))
        return len(self._projects)

    def save(self) -> None:
        try:
            atomic_write_json(self._path, [p.to_dict() for p in self._projects.values()])
        except OSError as exc:
            logger.error("Failed to save projects to %s: %s", self._path, exc)

    def list(self) -> list[Project]:
        """All projects, most recently updated first."""
        return sorted(self._projects.values(), key=lambda p: p.updated_at, reverse=True)

    def get(self, project_id: int) -> Project | None:
        return self._projects.get(project_id)

    def create(self, name: str | None, path: str | None) -> Project:
        if not name or not path:
            raise ProjectValidationError("Name and path are required")
        if not Path(path).exists():
            raise ProjectValidationError("Path does not exist")
        project = Project(id=self._allocate_id(), name=name, path=path)
        self._projects[project.id] = project
        self.save()
        logger.info("Created project: %s (%s)", name, path)
        return project

    def update(self, project_id: int, *, name: str | None = None, path: str | None = None) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if name:
            project.name = name
        if path:
            project.path = path
        project.updated_at = datetime.now(timezone.utc)
        self.save()
        return project

    def delete(self, project_id: int) -> Project:
        project = self._projects.pop(project_id, None)
        if project is None:
            raise ProjectNotFoundError(project_id)
        self.save()
        logger.info("Deleted project: %s", project.name)
        return project

    def _allocate_id(self) -> int:
        # Millisecond timestamps, bumped when two creates land in the same ms.
        candidate = int(time.time() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return candidate

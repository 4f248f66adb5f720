"""Workspace and scratch directory management for task runs."""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class StepScratchDirectories:
    """Step-scoped temporary directories created on demand by an action."""

    def __init__(self, *, workspace_path: Path, step_id: str) -> None:
        self.workspace_path = workspace_path
        self.step_id = step_id
        self.created: list[Path] = []

    def create(self) -> Path:
        path = Path(
            tempfile.mkdtemp(
                prefix=f"{self.workspace_path.name}_step-{self.step_id}-",
                dir=self.workspace_path.parent,
            ),
        )
        self.created.append(path)
        return path

    def remove_all(self) -> None:
        for path in self.created:
            _remove_tree(path)
        self.created.clear()


class TaskWorkdirManager:
    """Creates and removes the per-task directory layout under one root."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def workspace_path(self, workspace_name: str) -> Path:
        return self.root_dir / workspace_name

    @contextmanager
    def workspace(self, workspace_name: str) -> Iterator[Path]:
        """Ensure the task workspace exists and remove it on exit."""

        path = self.workspace_path(workspace_name)
        try:
            path.mkdir(parents=True, exist_ok=True)
            yield path
        finally:
            _remove_tree(path)

    @contextmanager
    def scratch_directories(
        self,
        workspace_path: Path,
        step_id: str,
    ) -> Iterator[StepScratchDirectories]:
        """Hand out step scratch directories and remove them however the step ends."""

        scratch = StepScratchDirectories(workspace_path=workspace_path, step_id=step_id)
        try:
            yield scratch
        finally:
            scratch.remove_all()


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as error:
        logger.warning("Failed to remove %s: %s", path, error)

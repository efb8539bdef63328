"""Scoped per-job workspace directories."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobWorkspace:
    """Deterministic directory layout owned by one attempt."""

    job_id: str
    base_dir: Path

    @property
    def mesh_dir(self) -> Path:
        return self.base_dir / "meshes"

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def package_dir(self) -> Path:
        return self.base_dir / "package"

    def mesh_path(self, index: int) -> Path:
        return self.mesh_dir / f"spec-{index:02d}.stl"

    def stdout_path(self, index: int) -> Path:
        return self.logs_dir / f"spec-{index:02d}.stdout.log"

    def stderr_path(self, index: int) -> Path:
        return self.logs_dir / f"spec-{index:02d}.stderr.log"


class JobWorkspaceManager:
    """Creates a fresh ``<root>/<job_id>`` directory and always removes it."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, job_id: str) -> Path:
        return self.root_dir / job_id

    @contextmanager
    def acquire(self, job_id: str) -> Iterator[JobWorkspace]:
        base_dir = self.path_for(job_id)
        if base_dir.exists():
            logger.warning("Removing leftover workspace for job %s: %s", job_id, base_dir)
            _remove_tree(base_dir, job_id=job_id)
        workspace = JobWorkspace(job_id=job_id, base_dir=base_dir)
        try:
            for directory in (workspace.mesh_dir, workspace.logs_dir, workspace.package_dir):
                directory.mkdir(parents=True, exist_ok=True)
            logger.debug("Created workspace for job %s: %s", job_id, base_dir)
            yield workspace
        finally:
            _remove_tree(base_dir, job_id=job_id)


def _remove_tree(path: Path, *, job_id: str) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError:
        logger.exception("Workspace cleanup failed for job %s: %s", job_id, path)
        return
    logger.debug("Workspace cleaned up for job %s", job_id)

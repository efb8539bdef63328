"""Directory-addressed artifact store keyed by job id."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

MESH_EXTENSION = ".stl"
ARCHIVE_EXTENSION = ".zip"
ARTIFACT_EXTENSIONS = (MESH_EXTENSION, ARCHIVE_EXTENSION)
_TEMP_SUFFIX = ".tmp"


class ArtifactStore:
    """One file per job id; publishing is a single atomic rename."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, job_id: str, extension: str) -> Path:
        if extension not in ARTIFACT_EXTENSIONS:
            raise ValueError(f"Unsupported artifact extension: {extension}")
        return self.root_dir / f"{job_id}{extension}"

    def publish(self, *, job_id: str, source: Path, extension: str) -> Path:
        """Copy ``source`` into the store under the job id, last writer wins."""

        target = self.path_for(job_id, extension)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self.root_dir / f".{job_id}{extension}.{uuid4().hex}{_TEMP_SUFFIX}"
        try:
            shutil.copyfile(source, temp_path)
            os.replace(temp_path, target)
        finally:
            temp_path.unlink(missing_ok=True)
        for other in ARTIFACT_EXTENSIONS:
            if other != extension:
                self.path_for(job_id, other).unlink(missing_ok=True)
        logger.info("Artifact stored for job %s: %s", job_id, target)
        return target

    def resolve(self, job_id: str) -> Path | None:
        """Probe extensions in priority order (single mesh before archive)."""

        for extension in ARTIFACT_EXTENSIONS:
            candidate = self.path_for(job_id, extension)
            if candidate.is_file():
                return candidate
        return None

    def discard(self, job_id: str) -> bool:
        removed = False
        for extension in ARTIFACT_EXTENSIONS:
            path = self.path_for(job_id, extension)
            if path.is_file():
                path.unlink(missing_ok=True)
                removed = True
        if removed:
            logger.info("Artifact discarded for job %s", job_id)
        return removed

    def prune(self, *, max_age: timedelta, max_count: int) -> int:
        """Evict artifacts older than ``max_age`` or beyond the newest ``max_count``."""

        if not self.root_dir.is_dir():
            return 0
        cutoff = time.time() - max_age.total_seconds()
        removed = 0

        # Running jobs may move or delete files during the scan.
        for temp_path in self.root_dir.glob(f".*{_TEMP_SUFFIX}"):
            mtime = _mtime(temp_path)
            if mtime is not None and mtime < cutoff:
                temp_path.unlink(missing_ok=True)

        artifacts: list[tuple[float, Path]] = []
        for path in self.root_dir.iterdir():
            if path.suffix not in ARTIFACT_EXTENSIONS:
                continue
            mtime = _mtime(path)
            if mtime is not None:
                artifacts.append((mtime, path))
        artifacts.sort(key=lambda item: item[0], reverse=True)
        for index, (mtime, path) in enumerate(artifacts):
            if index >= max_count or mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Pruned %d artifacts from %s", removed, self.root_dir)
        return removed


def _mtime(path: Path) -> float | None:
    try:
        info = path.stat()
    except FileNotFoundError:
        return None
    if not stat.S_ISREG(info.st_mode):
        return None
    return info.st_mtime

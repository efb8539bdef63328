"""Execution pipeline: one job payload in, one published artifact out.

The pipeline owns the per-attempt workspace and never retries; every failure
leaves as a :class:`PipelineError` subclass so the worker can hand a single
classified error string to the queue.
"""

from __future__ import annotations

import json
import logging
import re
import time
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from socket_sliders.jobs.artifacts import ARCHIVE_EXTENSION, MESH_EXTENSION, ArtifactStore
from socket_sliders.jobs.compiler.base import CompileRequest, CompileResult, GeometryCompiler
from socket_sliders.jobs.errors import (
    AttemptCanceledError,
    CompilerFailureError,
    ExecutionTimeoutError,
    OutputValidationError,
    PackagingError,
)
from socket_sliders.jobs.models import JobProgress, ProgressStep
from socket_sliders.jobs.specs import JobPayload, NormalizedSpec
from socket_sliders.jobs.workspace import JobWorkspace, JobWorkspaceManager
from socket_sliders.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_GENERATOR = "socket-sliders"
METADATA_FILE_NAME = "metadata.json"
STDERR_TAIL_CHARS = 500
COMPILE_START_PERCENT = 10
COMPILE_END_PERCENT = 70

ProgressCallback = Callable[[JobProgress], None]


@dataclass(slots=True)
class AttemptControl:
    """Cooperative stop signal for one attempt: deadline plus external cancel."""

    timeout_seconds: float | None
    deadline: float | None
    is_canceled: Callable[[], bool] | None = None

    @classmethod
    def start(
        cls,
        timeout_seconds: float | None,
        *,
        is_canceled: Callable[[], bool] | None = None,
    ) -> AttemptControl:
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        return cls(timeout_seconds=timeout_seconds, deadline=deadline, is_canceled=is_canceled)

    def timed_out(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def canceled(self) -> bool:
        return self.is_canceled is not None and self.is_canceled()

    def abort_requested(self) -> bool:
        return self.timed_out() or self.canceled()

    def check(self) -> None:
        """Raise if the attempt must stop before the next step."""

        if self.timed_out():
            raise ExecutionTimeoutError(
                f"job exceeded timeout of {self.timeout_seconds:g}s",
            )
        if self.canceled():
            raise AttemptCanceledError("job is no longer held by this attempt")


@dataclass(slots=True)
class PipelineResult:
    """Published artifact of one successful attempt."""

    job_id: str
    artifact_path: Path
    extension: str
    spec_count: int

    @property
    def artifact_ref(self) -> str:
        return self.artifact_path.name


class ExecutionPipeline:
    """Compile, validate, package and publish one job inside a scoped workspace."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        compiler: GeometryCompiler,
        workspace_manager: JobWorkspaceManager,
        artifact_store: ArtifactStore,
        compiler_timeout_seconds: float = 60.0,
        min_output_bytes: int = 100,
        generator: str = DEFAULT_GENERATOR,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.compiler = compiler
        self.workspace_manager = workspace_manager
        self.artifact_store = artifact_store
        self.compiler_timeout_seconds = compiler_timeout_seconds
        self.min_output_bytes = min_output_bytes
        self.generator = generator
        self._clock = clock

    def run(
        self,
        *,
        job_id: str,
        payload: JobPayload,
        control: AttemptControl | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        control = control or AttemptControl.start(None)

        def report(step: ProgressStep, message: str, percentage: int) -> None:
            if on_progress is not None:
                on_progress(JobProgress(step=step.value, message=message, percentage=percentage))

        with self.workspace_manager.acquire(job_id) as workspace:
            report(ProgressStep.VALIDATING, "Validating job payload", 5)
            control.check()

            results = self._compile_all(
                workspace=workspace,
                payload=payload,
                control=control,
                report=report,
            )

            report(ProgressStep.VALIDATING_MESH, "Validating generated meshes", 75)
            total = len(results)
            for index, result in enumerate(results):
                self._validate_output(result.output_path, label=f"spec {index + 1}/{total}")
            control.check()

            if payload.is_batch:
                report(ProgressStep.CREATING_ARCHIVE, "Creating archive", 85)
                source = self._package_archive(
                    job_id=job_id,
                    workspace=workspace,
                    payload=payload,
                    results=results,
                )
                extension = ARCHIVE_EXTENSION
            else:
                source = results[0].output_path
                extension = MESH_EXTENSION
            control.check()

            report(ProgressStep.STORING_ARTIFACT, "Storing artifact", 95)
            try:
                artifact_path = self.artifact_store.publish(
                    job_id=job_id,
                    source=source,
                    extension=extension,
                )
            except OSError as error:
                raise PackagingError(f"artifact could not be stored: {error}") from error

        return PipelineResult(
            job_id=job_id,
            artifact_path=artifact_path,
            extension=extension,
            spec_count=len(payload.specs),
        )

    def _compile_all(
        self,
        *,
        workspace: JobWorkspace,
        payload: JobPayload,
        control: AttemptControl,
        report: Callable[[ProgressStep, str, int], None],
    ) -> list[CompileResult]:
        total = len(payload.specs)
        span = COMPILE_END_PERCENT - COMPILE_START_PERCENT
        results: list[CompileResult] = []
        for index, spec in enumerate(payload.specs):
            label = f"spec {index + 1}/{total}"
            report(
                ProgressStep.EXECUTING_COMPILER,
                f"Compiling {label} ({spec.orientation} {spec.nominal_label()})",
                COMPILE_START_PERCENT + (span * index) // total,
            )
            result = self.compiler.compile(
                CompileRequest(
                    spec=spec,
                    output_path=workspace.mesh_path(index),
                    stdout_path=workspace.stdout_path(index),
                    stderr_path=workspace.stderr_path(index),
                    timeout_seconds=self.compiler_timeout_seconds,
                    abort_requested=control.abort_requested,
                ),
            )
            _log_compiler_output(result, label=label)
            if result.aborted:
                control.check()
                raise AttemptCanceledError(f"{label}: compiler stopped on request")
            if result.timed_out:
                raise ExecutionTimeoutError(
                    f"{label}: compiler timed out after {self.compiler_timeout_seconds:g}s",
                )
            if result.exit_code != 0:
                message = f"{label}: compiler exited with code {result.exit_code}"
                tail = _read_tail(result.stderr_path)
                if tail:
                    message = f"{message}: {tail}"
                raise CompilerFailureError(message)
            logger.debug(
                "Compiled %s for job %s in %.2fs",
                label,
                workspace.job_id,
                result.duration_seconds,
            )
            results.append(result)
            control.check()
        return results

    def _validate_output(self, path: Path, *, label: str) -> None:
        if not path.is_file():
            raise OutputValidationError(f"{label}: output missing: {path.name}")
        size = path.stat().st_size
        if size == 0:
            raise OutputValidationError(f"{label}: output empty: {path.name}")
        if size < self.min_output_bytes:
            raise OutputValidationError(
                f"{label}: output too small: {size} bytes < {self.min_output_bytes}",
            )

    def _package_archive(
        self,
        *,
        job_id: str,
        workspace: JobWorkspace,
        payload: JobPayload,
        results: list[CompileResult],
    ) -> Path:
        archive_path = workspace.package_dir / f"{job_id}{ARCHIVE_EXTENSION}"
        names = archive_entry_names(payload.specs)
        metadata = {
            "jobId": job_id,
            "generatedAt": self._clock().isoformat(),
            "generator": self.generator,
            "payload": payload.to_dict(),
            "entries": [
                {"file": name, "index": index, "parameters": result.parameters}
                for index, (name, result) in enumerate(zip(names, results, strict=True))
            ],
        }
        try:
            with zipfile.ZipFile(
                archive_path,
                mode="w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=9,
            ) as archive:
                for name, result in zip(names, results, strict=True):
                    archive.write(result.output_path, arcname=name)
                archive.writestr(
                    METADATA_FILE_NAME,
                    json.dumps(metadata, indent=2, sort_keys=True),
                )
        except (OSError, zipfile.BadZipFile) as error:
            raise PackagingError(f"archive could not be created: {error}") from error
        logger.debug("Packaged %d meshes for job %s into %s", len(names), job_id, archive_path)
        return archive_path


def archive_entry_names(specs: tuple[NormalizedSpec, ...]) -> list[str]:
    """``socket-<orientation>-<label>.stl`` per spec, unique within one archive."""

    names: list[str] = []
    seen: set[str] = set()
    for index, spec in enumerate(specs):
        stem = f"socket-{spec.orientation}-{_sanitize(spec.nominal_label())}"
        name = f"{stem}{MESH_EXTENSION}"
        if name in seen:
            name = f"{stem}-{index + 1}{MESH_EXTENSION}"
        seen.add(name)
        names.append(name)
    return names


def _sanitize(label: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", label).strip("_")
    return cleaned or "unnamed"


def _read_tail(path: Path, *, limit: int = STDERR_TAIL_CHARS) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def _log_compiler_output(result: CompileResult, *, label: str) -> None:
    stdout = _read_tail(result.stdout_path)
    stderr = _read_tail(result.stderr_path)
    if stdout:
        logger.debug("Compiler stdout (%s): %s", label, stdout)
    if stderr:
        logger.warning("Compiler stderr (%s): %s", label, stderr)

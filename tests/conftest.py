"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from socket_sliders.jobs.artifacts import ArtifactStore
from socket_sliders.jobs.compiler import OpenScadCompiler
from socket_sliders.jobs.models import RetryPolicy
from socket_sliders.jobs.pipeline import ExecutionPipeline
from socket_sliders.jobs.repository import JobRepository
from socket_sliders.jobs.workspace import JobWorkspaceManager

STUB_COMPILER_COMMAND = (
    f"{shlex.quote(sys.executable)} -m socket_sliders.jobs.compiler.stub_compiler"
)


class FakeClock:
    """Manually advanced UTC clock for deterministic queue schedules."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, fake_clock: FakeClock) -> Iterator[JobRepository]:
    """Queue on a fresh database driven by the fake clock."""

    repo = JobRepository(
        tmp_path / "jobs.db",
        retry_policy=RetryPolicy(base_seconds=2.0, max_seconds=300.0),
        clock=fake_clock,
    )
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def live_repository(tmp_path: Path) -> Iterator[JobRepository]:
    """Queue on a fresh database with the wall clock and short retry delays."""

    repo = JobRepository(
        tmp_path / "live.db",
        retry_policy=RetryPolicy(base_seconds=0.05, max_seconds=0.2),
    )
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def vertical_config() -> dict[str, Any]:
    return {
        "orientation": "vertical",
        "outerDiameter": {"value": 22.5, "unit": "mm"},
        "isMetric": True,
        "nominalMetric": 10,
    }


@pytest.fixture()
def horizontal_config() -> dict[str, Any]:
    return {
        "orientation": "horizontal",
        "outerDiameter": {"value": 0.875, "unit": "in"},
        "length": {"value": 1.5, "unit": "in"},
        "isMetric": False,
        "nominalNumerator": 3,
        "nominalDenominator": 8,
    }


@pytest.fixture()
def stub_compiler_command() -> Callable[..., str]:
    """Build a compiler command line that runs the stub with extra flags."""

    def _command(*extra: str) -> str:
        return " ".join([STUB_COMPILER_COMMAND, *extra])

    return _command


@pytest.fixture()
def make_pipeline(tmp_path: Path, stub_compiler_command) -> Callable[..., ExecutionPipeline]:
    """Pipeline wired to the stub compiler and temp workspace/artifact dirs."""

    templates_dir = tmp_path / "templates"
    templates_dir.mkdir()

    def _make(*extra: str, compiler=None, **kwargs: Any) -> ExecutionPipeline:
        return ExecutionPipeline(
            compiler=compiler
            or OpenScadCompiler(
                executable=stub_compiler_command(*extra),
                templates_dir=templates_dir,
            ),
            workspace_manager=JobWorkspaceManager(tmp_path / "work"),
            artifact_store=ArtifactStore(tmp_path / "artifacts"),
            **kwargs,
        )

    return _make

"""Compiler capability interface used by the execution pipeline."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from socket_sliders.jobs.specs import NormalizedSpec


@dataclass(slots=True)
class CompileRequest:
    """Inputs required to compile one spec into one mesh file."""

    spec: NormalizedSpec
    output_path: Path
    stdout_path: Path
    stderr_path: Path
    timeout_seconds: float
    abort_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class CompileResult:
    """Outcome of one compiler invocation."""

    exit_code: int
    timed_out: bool
    aborted: bool
    output_path: Path
    stdout_path: Path
    stderr_path: Path
    duration_seconds: float
    parameters: dict[str, str] = field(default_factory=dict)


class GeometryCompiler(Protocol):
    """Protocol implemented by compiler runners."""

    def compile(self, request: CompileRequest) -> CompileResult:
        """Run the compiler for one spec and return execution metadata."""

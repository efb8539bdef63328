"""Subprocess-based OpenSCAD runner."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from pathlib import Path

from socket_sliders.jobs.compiler.base import CompileRequest, CompileResult
from socket_sliders.jobs.errors import CompilerFailureError
from socket_sliders.jobs.specs import NormalizedSpec

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.1
TIMEOUT_EXIT_CODE = 124


def build_openscad_parameters(spec: NormalizedSpec) -> dict[str, str]:
    """Translate a normalized spec into explicit ``-D`` assignments.

    Unused label parameters are set to ``undef`` so template defaults never
    leak into the result.
    """

    params: dict[str, str] = {"socketDiameter": f"{spec.outer_diameter_mm:.3f}"}
    if spec.orientation == "horizontal" and spec.length_mm is not None:
        params["socketLength"] = f"{spec.length_mm:.3f}"
    if spec.is_metric:
        params["labelMetric"] = str(spec.nominal_metric)
        params["labelNumerator"] = "undef"
        params["labelDenominator"] = "undef"
    else:
        params["labelMetric"] = "undef"
        params["labelNumerator"] = str(spec.nominal_numerator)
        params["labelDenominator"] = str(spec.nominal_denominator)
    params["labelPosition"] = f'"{spec.label_position}"'
    return params


class OpenScadCompiler:
    """Run ``openscad -D ... -o <output> <template>`` for one spec."""

    def __init__(self, *, executable: str, templates_dir: Path) -> None:
        self.executable = executable
        self.templates_dir = templates_dir

    def template_for(self, spec: NormalizedSpec) -> Path:
        return self.templates_dir.absolute() / f"{spec.orientation}-socket.scad"

    def build_command(self, request: CompileRequest) -> list[str]:
        head = shlex.split(self.executable)
        if not head:
            raise CompilerFailureError("compiler executable is empty")
        argv = list(head)
        for name, value in build_openscad_parameters(request.spec).items():
            argv.extend(["-D", f"{name}={value}"])
        # Paths are absolute since the process runs inside the templates directory.
        argv.extend(
            ["-o", str(request.output_path.absolute()), str(self.template_for(request.spec))],
        )
        return argv

    def compile(self, request: CompileRequest) -> CompileResult:
        argv = self.build_command(request)
        parameters = build_openscad_parameters(request.spec)
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Executing compiler: %s", shlex.join(argv))

        with (
            request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
            request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=self.templates_dir if self.templates_dir.is_dir() else None,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except FileNotFoundError as error:
                raise CompilerFailureError(
                    f"compiler could not be started: command not found: {argv[0]}",
                ) from error
            except OSError as error:
                raise CompilerFailureError(f"compiler could not be started: {error}") from error

            try:
                return _wait_for_process(
                    process=process,
                    request=request,
                    parameters=parameters,
                )
            except BaseException:
                # The child never outlives a wait that raised.
                _terminate_process(process)
                raise


def _wait_for_process(
    *,
    process: subprocess.Popen[str],
    request: CompileRequest,
    parameters: dict[str, str],
) -> CompileResult:
    start_monotonic = time.monotonic()

    def _result(
        *,
        exit_code: int,
        timed_out: bool = False,
        aborted: bool = False,
    ) -> CompileResult:
        return CompileResult(
            exit_code=exit_code,
            timed_out=timed_out,
            aborted=aborted,
            output_path=request.output_path,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
            duration_seconds=time.monotonic() - start_monotonic,
            parameters=parameters,
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _result(exit_code=returncode)

        if time.monotonic() - start_monotonic >= request.timeout_seconds:
            _terminate_process(process)
            return _result(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)

        if request.abort_requested is not None and request.abort_requested():
            _terminate_process(process)
            return _result(exit_code=TIMEOUT_EXIT_CODE, aborted=True)

        time.sleep(POLL_SECONDS)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

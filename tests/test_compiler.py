from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

import allure
import pytest

from socket_sliders.jobs.compiler import (
    CompileRequest,
    OpenScadCompiler,
    build_openscad_parameters,
)
from socket_sliders.jobs.compiler import openscad as openscad_module
from socket_sliders.jobs.errors import CompilerFailureError
from socket_sliders.jobs.specs import normalize_socket_config

pytestmark = [
    allure.epic("Execution Pipeline"),
    allure.feature("Compiler Invocation"),
]


def _request(tmp_path: Path, spec, **kwargs) -> CompileRequest:
    return CompileRequest(
        spec=spec,
        output_path=tmp_path / "out" / "spec-00.stl",
        stdout_path=tmp_path / "logs" / "spec-00.stdout.log",
        stderr_path=tmp_path / "logs" / "spec-00.stderr.log",
        timeout_seconds=kwargs.pop("timeout_seconds", 30.0),
        **kwargs,
    )


def test_metric_vertical_parameters_are_explicit(vertical_config) -> None:
    params = build_openscad_parameters(normalize_socket_config(vertical_config))

    assert params == {
        "socketDiameter": "22.500",
        "labelMetric": "10",
        "labelNumerator": "undef",
        "labelDenominator": "undef",
        "labelPosition": '"bottomMid"',
    }


def test_imperial_horizontal_parameters_include_length(horizontal_config) -> None:
    params = build_openscad_parameters(normalize_socket_config(horizontal_config))

    assert params == {
        "socketDiameter": "22.225",
        "socketLength": "38.100",
        "labelMetric": "undef",
        "labelNumerator": "3",
        "labelDenominator": "8",
        "labelPosition": '"top"',
    }


def test_command_line_uses_orientation_template(tmp_path: Path, horizontal_config) -> None:
    compiler = OpenScadCompiler(executable="openscad --hardwarnings", templates_dir=tmp_path)
    request = _request(tmp_path, normalize_socket_config(horizontal_config))

    argv = compiler.build_command(request)

    assert argv[:2] == ["openscad", "--hardwarnings"]
    assert argv[-3:] == [
        "-o",
        str(request.output_path),
        str(tmp_path / "horizontal-socket.scad"),
    ]
    assert argv.count("-D") == 6
    assert "socketLength=38.100" in argv


def test_compile_with_stub_writes_mesh_and_logs(
    tmp_path: Path,
    vertical_config,
    stub_compiler_command,
) -> None:
    compiler = OpenScadCompiler(executable=stub_compiler_command(), templates_dir=tmp_path)
    request = _request(tmp_path, normalize_socket_config(vertical_config))

    result = compiler.compile(request)

    assert result.exit_code == 0
    assert not result.timed_out
    assert not result.aborted
    assert request.output_path.read_text().startswith("solid vertical-socket")
    assert "stub compiler wrote" in request.stdout_path.read_text()
    assert result.parameters["labelMetric"] == "10"


def test_compile_reports_non_zero_exit(
    tmp_path: Path,
    vertical_config,
    stub_compiler_command,
) -> None:
    compiler = OpenScadCompiler(
        executable=stub_compiler_command("--exit-code", "3"),
        templates_dir=tmp_path,
    )
    request = _request(tmp_path, normalize_socket_config(vertical_config))

    result = compiler.compile(request)

    assert result.exit_code == 3
    assert not request.output_path.exists()
    assert "failing with exit code 3" in request.stderr_path.read_text()


def test_compile_kills_process_after_timeout(
    tmp_path: Path,
    vertical_config,
    stub_compiler_command,
) -> None:
    compiler = OpenScadCompiler(
        executable=stub_compiler_command("--sleep-seconds", "30"),
        templates_dir=tmp_path,
    )
    request = _request(tmp_path, normalize_socket_config(vertical_config), timeout_seconds=0.5)

    result = compiler.compile(request)

    assert result.timed_out
    assert result.exit_code == 124
    assert result.duration_seconds < 10


def test_compile_stops_when_abort_is_requested(
    tmp_path: Path,
    vertical_config,
    stub_compiler_command,
) -> None:
    compiler = OpenScadCompiler(
        executable=stub_compiler_command("--sleep-seconds", "30"),
        templates_dir=tmp_path,
    )
    request = _request(
        tmp_path,
        normalize_socket_config(vertical_config),
        abort_requested=lambda: True,
    )

    result = compiler.compile(request)

    assert result.aborted
    assert not result.timed_out


def test_missing_executable_is_a_compiler_failure(tmp_path: Path, vertical_config) -> None:
    missing = shlex.quote(str(tmp_path / "no-such-openscad"))
    compiler = OpenScadCompiler(executable=missing, templates_dir=tmp_path)

    with pytest.raises(CompilerFailureError, match="could not be started"):
        compiler.compile(_request(tmp_path, normalize_socket_config(vertical_config)))


def test_empty_executable_is_rejected(tmp_path: Path, vertical_config) -> None:
    compiler = OpenScadCompiler(executable="  ", templates_dir=tmp_path)

    with pytest.raises(CompilerFailureError, match="executable is empty"):
        compiler.build_command(_request(tmp_path, normalize_socket_config(vertical_config)))


def test_compiler_process_is_killed_when_abort_check_raises(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    vertical_config,
    stub_compiler_command,
) -> None:
    started: list[subprocess.Popen[str]] = []
    real_popen = subprocess.Popen

    def _recording_popen(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        started.append(process)
        return process

    monkeypatch.setattr(openscad_module.subprocess, "Popen", _recording_popen)
    calls = 0

    def _flaky_abort_check() -> bool:
        nonlocal calls
        calls += 1
        if calls >= 3:
            raise RuntimeError("database is locked")
        return False

    compiler = OpenScadCompiler(
        executable=stub_compiler_command("--sleep-seconds", "30"),
        templates_dir=tmp_path,
    )
    request = _request(
        tmp_path,
        normalize_socket_config(vertical_config),
        abort_requested=_flaky_abort_check,
    )

    with pytest.raises(RuntimeError, match="database is locked"):
        compiler.compile(request)

    assert len(started) == 1
    assert started[0].poll() is not None

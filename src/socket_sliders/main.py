"""CLI entrypoint for socket-sliders."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from socket_sliders import __version__
from socket_sliders.config import Settings, configure_logging
from socket_sliders.jobs.controllers import (
    GcCommand,
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    JobsCliController,
    JobStatusCommand,
    JobSubmitCommand,
    WorkerRunCommand,
)
from socket_sliders.jobs.errors import JobError
from socket_sliders.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="socket-sliders")
def socket_sliders() -> None:
    """Socket holder generation queue CLI."""

    configure_logging(Settings.from_env().log_level)


@socket_sliders.group()
def jobs() -> None:
    """Job submission and inspection commands."""


@jobs.command("submit")
@_db_path_option
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON document with `socketConfig` or `socketConfigs`.",
)
def jobs_submit(db_path: Path | None, config_file: Path) -> None:
    """Validate a socket configuration and enqueue a generation job."""

    _run(
        lambda: JOBS_CONTROLLER.submit(
            JobSubmitCommand(db_path=db_path, config_file=config_file),
        ),
    )


@jobs.command("status")
@_db_path_option
@click.argument("job_id")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Print the client-facing status document of one job."""

    _run(lambda: JOBS_CONTROLLER.status(JobStatusCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@_db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only list jobs in this internal status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs with queue counters."""

    _run(
        lambda: JOBS_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@_db_path_option
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job with its event trail."""

    _run(lambda: JOBS_CONTROLLER.inspect(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@_db_path_option
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending or running job."""

    _run(lambda: JOBS_CONTROLLER.cancel(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("artifact")
@_db_path_option
@click.argument("job_id")
def jobs_artifact(db_path: Path | None, job_id: str) -> None:
    """Print the artifact path of a completed job."""

    _run(lambda: JOBS_CONTROLLER.artifact(JobMutateCommand(db_path=db_path, job_id=job_id)))


@socket_sliders.group()
def worker() -> None:
    """Worker pool commands."""


@worker.command("run")
@_db_path_option
@click.option("--once", is_flag=True, default=False, help="Process at most one job.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop claiming after this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: run until stopped).",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the worker pool until stopped or idle."""

    _run(
        lambda: JOBS_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@socket_sliders.command("gc")
@_db_path_option
def gc(db_path: Path | None) -> None:
    """Recover stalled jobs and apply queue and artifact retention."""

    _run(lambda: JOBS_CONTROLLER.gc(GcCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (JobError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    socket_sliders()

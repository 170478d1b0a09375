"""CLI entrypoint for handoff."""

import logging
from pathlib import Path

import rich_click as click

from handoff import __version__
from handoff.jobs.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobLogsCommand,
    JobMutateCommand,
    JobsCliController,
    JobStatsCommand,
    JobWorkerCommand,
)
from handoff.jobs.errors import JobsError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="handoff")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def handoff(verbose: bool) -> None:
    """Background task hand-off for chat assistants."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@handoff.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-type", default="droid_exec", show_default=True, help="Job type.")
@click.option("--prompt", default=None, help="Prompt for assistant execution jobs.")
@click.option("--cwd", default=None, help="Working directory for assistant execution jobs.")
@click.option("--payload", "payload_json", default=None, help="Extra payload as a JSON object.")
@click.option(
    "--priority",
    type=int,
    default=50,
    show_default=True,
    help="Higher runs sooner.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Attempts before permanent failure.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=0),
    default=300,
    show_default=True,
    help="Per-attempt timeout, 0 for unbounded.",
)
@click.option("--conversation-id", default=None, help="Conversation to notify.")
@click.option("--session-id", default=None, help="Assistant session to resume.")
@click.option("--agent", default=None, help="Agent name shown in notifications.")
@click.option("--mission", default=None, help="Mission summary shown in notifications.")
@click.option("--name", "job_name", default=None, help="Optional human-readable job name.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    prompt: str | None,
    cwd: str | None,
    payload_json: str | None,
    priority: int,
    max_attempts: int,
    timeout_seconds: int,
    conversation_id: str | None,
    session_id: str | None,
    agent: str | None,
    mission: str | None,
    job_name: str | None,
) -> None:
    """Enqueue one background job."""

    _run(
        JOBS_CONTROLLER.enqueue,
        JobEnqueueCommand(
            db_path=db_path,
            job_type=job_type,
            prompt=prompt,
            cwd=cwd,
            payload_json=payload_json,
            priority=priority,
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            conversation_id=conversation_id,
            session_id=session_id,
            agent=agent,
            mission=mission,
            job_name=job_name,
        ),
    )


@jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Exit once the queue is idle, or keep polling until SIGINT/SIGTERM.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive idle polls before exiting in --once mode.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Override HANDOFF_JOB_MAX_CONCURRENT.",
)
@click.option(
    "--job-type",
    "job_types",
    multiple=True,
    help="Only claim this job type. Can be repeated.",
)
def jobs_worker(
    db_path: Path | None,
    once: bool,
    max_idle_polls: int,
    max_concurrent: int | None,
    job_types: tuple[str, ...],
) -> None:
    """Run the background job worker."""

    _run(
        JOBS_CONTROLLER.run_worker,
        JobWorkerCommand(
            db_path=db_path,
            once=once,
            max_idle_polls=max_idle_polls,
            max_concurrent=max_concurrent,
            job_types=job_types,
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--conversation-id", default=None, help="Optional conversation filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    conversation_id: str | None,
    limit: int,
) -> None:
    """List recent jobs."""

    _run(
        JOBS_CONTROLLER.list_jobs,
        JobListCommand(
            db_path=db_path,
            status=status,
            conversation_id=conversation_id,
            limit=limit,
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job."""

    _run(JOBS_CONTROLLER.inspect_job, JobInspectCommand(db_path=db_path, job_id=job_id))


@jobs.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max entries to print.")
def jobs_logs(db_path: Path | None, job_id: str, limit: int | None) -> None:
    """Print the audit log of one job."""

    _run(JOBS_CONTROLLER.job_logs, JobLogsCommand(db_path=db_path, job_id=job_id, limit=limit))


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_stats(db_path: Path | None, hours: int, output_format: str) -> None:
    """Show queue counts by status."""

    _run(
        JOBS_CONTROLLER.stats,
        JobStatsCommand(db_path=db_path, hours=hours, output_format=output_format.lower()),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending or running job."""

    _run(JOBS_CONTROLLER.cancel_job, JobMutateCommand(db_path=db_path, job_id=job_id))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a failed job as a new job; the failed one is kept."""

    _run(JOBS_CONTROLLER.retry_job, JobMutateCommand(db_path=db_path, job_id=job_id))


def _run(action, command) -> None:  # noqa: ANN001
    try:
        lines = action(command)
    except (JobsError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    handoff()

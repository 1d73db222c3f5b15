"""CLI entrypoint for coursegen."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from coursegen import __version__
from coursegen.pipeline.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobProcessCommand,
    JobRetryCommand,
    JobsCliController,
    JobStopCommand,
    StuckJobsCommand,
)
from coursegen.pipeline.models import ContentMode, JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="coursegen")
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline progress to stderr.")
def coursegen(verbose: bool) -> None:
    """Educational content generation pipeline."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@coursegen.group()
def jobs() -> None:
    """Generation job queue, trigger and operator commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--topic", required=True, help="Lecture topic.")
@click.option(
    "--subtopic",
    "subtopics",
    multiple=True,
    help="Subtopic to cover. Can be repeated.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ContentMode], case_sensitive=False),
    default=ContentMode.LECTURE.value,
    show_default=True,
    help="Kind of content to generate.",
)
@click.option(
    "--transcript",
    "transcript_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Optional lecture transcript file (UTF-8 text).",
)
@click.option("--mcsc", type=click.IntRange(min=0, max=50), default=5, show_default=True)
@click.option("--mcmc", type=click.IntRange(min=0, max=50), default=3, show_default=True)
@click.option("--subjective", type=click.IntRange(min=0, max=50), default=2, show_default=True)
@click.option(
    "--process/--no-process",
    "process_now",
    default=False,
    show_default=True,
    help="Run the pipeline right after enqueuing.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    topic: str,
    subtopics: tuple[str, ...],
    mode: str,
    transcript_path: Path | None,
    mcsc: int,
    mcmc: int,
    subjective: int,
    process_now: bool,
) -> None:
    """Create a queued generation job."""

    _run(
        lambda: JOBS_CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_path=db_path,
                topic=topic,
                subtopics=subtopics,
                mode=mode.lower(),
                transcript_path=transcript_path,
                mcsc=mcsc,
                mcmc=mcmc,
                subjective=subjective,
                process_now=process_now,
            ),
        ),
    )


@jobs.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_process(db_path: Path | None, job_id: str) -> None:
    """Claim and run one job; a no-op if it is finished or held by another worker."""

    _run(lambda: JOBS_CONTROLLER.process(JobProcessCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _run(
        lambda: JOBS_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--content/--no-content", "show_content", default=False, help="Print a preview.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
def jobs_inspect(
    db_path: Path | None,
    job_id: str,
    show_content: bool,
    output_format: str,
) -> None:
    """Inspect one job with its cost breakdown and activity log."""

    _run(
        lambda: JOBS_CONTROLLER.inspect(
            JobInspectCommand(
                db_path=db_path,
                job_id=job_id,
                show_content=show_content,
                output_format=output_format.lower(),
            ),
        ),
    )


@jobs.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_stop(db_path: Path | None, job_id: str) -> None:
    """Stop a queued or running job. The running worker notices at its next write."""

    _run(lambda: JOBS_CONTROLLER.stop(JobStopCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--resume-token", default=None, help="Token issued when the job failed.")
@click.option(
    "--from-scratch",
    is_flag=True,
    help="Discard checkpoint and artifacts instead of resuming.",
)
@click.option(
    "--process/--no-process",
    "process_now",
    default=False,
    show_default=True,
    help="Run the pipeline right after re-queuing.",
)
def jobs_retry(
    db_path: Path | None,
    job_id: str,
    resume_token: str | None,
    from_scratch: bool,
    process_now: bool,
) -> None:
    """Re-queue a failed job."""

    _run(
        lambda: JOBS_CONTROLLER.retry(
            JobRetryCommand(
                db_path=db_path,
                job_id=job_id,
                resume_token=resume_token,
                from_scratch=from_scratch,
                process_now=process_now,
            ),
        ),
    )


@jobs.command("stuck")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--limit", type=click.IntRange(min=1, max=100), default=None, help="Max jobs.")
def jobs_stuck(db_path: Path | None, limit: int | None) -> None:
    """List queued or active jobs without a recent heartbeat."""

    _run(lambda: JOBS_CONTROLLER.stuck(StuckJobsCommand(db_path=db_path, limit=limit)))


@jobs.command("process-stuck")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--limit", type=click.IntRange(min=1, max=100), default=None, help="Max jobs.")
def jobs_process_stuck(db_path: Path | None, limit: int | None) -> None:
    """Resume every stuck job, one after another."""

    _run(lambda: JOBS_CONTROLLER.process_stuck(StuckJobsCommand(db_path=db_path, limit=limit)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    coursegen()

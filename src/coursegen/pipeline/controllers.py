"""Controllers for generation job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from coursegen.config import Settings
from coursegen.pipeline.models import (
    AssignmentCounts,
    ContentMode,
    JobCreate,
    JobStatus,
    ProcessResult,
)
from coursegen.pipeline.repository import JobRepository
from coursegen.pipeline.services import GenerationService, build_backend

CONTENT_PREVIEW_CHARS = 400


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job creation."""

    db_path: Path | None
    topic: str
    subtopics: tuple[str, ...]
    mode: str
    transcript_path: Path | None
    mcsc: int
    mcmc: int
    subjective: int
    process_now: bool = False


@dataclass(slots=True)
class JobProcessCommand:
    """CLI input for the process trigger."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    show_content: bool = False
    output_format: str = "table"


@dataclass(slots=True)
class JobStopCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobRetryCommand:
    """CLI input for re-queuing a failed job."""

    db_path: Path | None
    job_id: str
    resume_token: str | None
    from_scratch: bool
    process_now: bool = False


@dataclass(slots=True)
class StuckJobsCommand:
    db_path: Path | None
    limit: int | None


class JobsCliController:
    """Coordinates job queue, trigger and inspection CLI operations."""

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        transcript = (
            command.transcript_path.read_text("utf-8") if command.transcript_path else None
        )
        with _repository(settings) as repository:
            service = _service(settings, repository)
            job = service.enqueue(
                JobCreate(
                    topic=command.topic,
                    subtopics=list(command.subtopics),
                    mode=ContentMode(command.mode),
                    transcript=transcript,
                    assignment_counts=AssignmentCounts(
                        mcsc=command.mcsc,
                        mcmc=command.mcmc,
                        subjective=command.subjective,
                    ),
                ),
            )
            lines = [
                f"Job enqueued: job_id={job.job_id} mode={job.mode.value} "
                f"status={job.status.value}",
            ]
            if command.process_now:
                lines.append(_render_result(service.process(job.job_id)))
        return lines

    def process(self, command: JobProcessCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = _service(settings, repository).process(command.job_id)
        return [_render_result(result)]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = JobStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} mode={job.mode.value} status={job.status.value} "
                f"step={job.current_step} cost=${job.estimated_cost:.4f} "
                f"updated_at={job.updated_at.isoformat()} topic={job.topic}",
            )
        return lines

    def inspect(self, command: JobInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "job_id": job.job_id,
                        "topic": job.topic,
                        "subtopics": job.subtopics,
                        "mode": job.mode.value,
                        "status": job.status.value,
                        "current_step": job.current_step,
                        "worker_id": job.worker_id,
                        "estimated_cost": job.estimated_cost,
                        "cost_details": job.cost_details,
                        "course_context": job.course_context,
                        "gap_analysis": job.gap_analysis,
                        "instructor_quality": job.instructor_quality,
                        "final_content": job.final_content,
                        "assignment_data": job.assignment_data,
                        "error_message": job.error_message,
                        "resume_token": job.resume_token,
                        "logs": [
                            {
                                "created_at": entry.created_at.isoformat(),
                                "stage": entry.stage,
                                "severity": entry.severity.value,
                                "message": entry.message,
                            }
                            for entry in details.logs
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [
            f"Job: {job.job_id}",
            f"Topic: {job.topic}",
            f"Subtopics: {', '.join(job.subtopics) or '-'}",
            f"Mode: {job.mode.value}",
            f"Status: {job.status.value}",
            f"Step: {job.current_step}",
            f"Worker: {job.worker_id or '-'}",
            f"Cost: ${job.estimated_cost:.4f}",
            f"Error: {_first_line(job.error_message) or '-'}",
            f"Resume token: {job.resume_token or '-'}",
            f"Domain: {(job.course_context or {}).get('domain', '-')}",
            f"Content: {len(job.final_content or '')} chars",
        ]
        if job.assignment_data is not None:
            lines.append(f"Questions: {len(job.assignment_data)}")
        for stage, entry in ((job.cost_details or {}).get("stages") or {}).items():
            lines.append(
                f"  cost stage={stage} model={entry.get('model', '-')} "
                f"calls={entry.get('calls', 0)} input_tokens={entry.get('input_tokens', 0)} "
                f"output_tokens={entry.get('output_tokens', 0)} cost=${entry.get('cost', 0.0):.6f}",
            )
        lines.append(f"Logs: {len(details.logs)}")
        for entry in details.logs:
            lines.append(
                f"  {entry.created_at.isoformat()} [{entry.severity.value}] "
                f"{entry.stage}: {entry.message}",
            )
        if command.show_content and job.final_content:
            lines.append("")
            lines.append(job.final_content[:CONTENT_PREVIEW_CHARS])
        return lines

    def stop(self, command: JobStopCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = repository.stop_job(command.job_id)
        return [
            f"Job stopped: {job.job_id} status={job.status.value} step={job.current_step}",
            f"Resume token: {job.resume_token}",
        ]

    def retry(self, command: JobRetryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = repository.requeue_job(
                command.job_id,
                resume_token=command.resume_token,
                from_scratch=command.from_scratch,
            )
            lines = [
                f"Job re-queued: {job.job_id} status={job.status.value} "
                f"step={job.current_step}" + (" (from scratch)" if command.from_scratch else ""),
            ]
            if command.process_now:
                lines.append(_render_result(_service(settings, repository).process(job.job_id)))
        return lines

    def stuck(self, command: StuckJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            jobs = _service(settings, repository).list_stuck_jobs(command.limit)
        lines = [f"Stuck jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} step={job.current_step} "
                f"worker={job.worker_id or '-'} updated_at={job.updated_at.isoformat()}",
            )
        return lines

    def process_stuck(self, command: StuckJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            results = _service(settings, repository).process_stuck(command.limit)
        return [f"Processed stuck jobs: {len(results)}", *(_render_result(r) for r in results)]


def _render_result(result: ProcessResult) -> str:
    status = result.status.value if result.status is not None else "-"
    step = result.current_step if result.current_step is not None else "-"
    line = (
        f"Process result: job_id={result.job_id} outcome={result.outcome.value} "
        f"status={status} step={step} cost=${result.total_cost:.4f}"
    )
    if result.detail:
        line += f" detail={result.detail}"
    return line


def _first_line(text: str | None) -> str:
    return text.splitlines()[0] if text else ""


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _service(settings: Settings, repository: JobRepository) -> GenerationService:
    return GenerationService(
        repository=repository,
        backend=build_backend(settings.backend),
        settings=settings,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

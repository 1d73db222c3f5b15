"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from coursegen.pipeline.models import (
    ACTIVE_STATUSES,
    ArtifactKind,
    AssignmentCounts,
    Checkpoint,
    ContentMode,
    JobCreate,
    JobDetails,
    JobStatus,
    JobView,
    LogEntryView,
    LogSeverity,
)
from coursegen.storage.alembic_runner import upgrade_head
from coursegen.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    AppUser,
    GenerationJob,
    GenerationLog,
)

logger = logging.getLogger(__name__)

STOPPED_BY_USER_MESSAGE = "Stopped by user"
_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)
_STALE_CANDIDATE_VALUES = (JobStatus.QUEUED.value, *_ACTIVE_VALUES)


class JobRepository:
    """Job store facade: conditional writes, artifacts, activity log and credits."""

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        self._ensure_actor_context()

    def _ensure_actor_context(self) -> None:
        with Session(self.engine) as session:
            user = session.exec(
                select(AppUser).where(AppUser.user_id == self.user_id),
            ).one_or_none()
            if user is not None:
                return
            session.add(
                AppUser(
                    user_id=self.user_id,
                    display_name=self.user_name,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    # -- creation and reads ----------------------------------------------------

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a queued job owned by the current user."""

        if not payload.topic.strip():
            raise ValueError("Job topic must not be empty.")
        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        counts = payload.assignment_counts or AssignmentCounts()
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=job_id,
                user_id=self.user_id,
                topic=payload.topic.strip(),
                subtopics_json=_dump_json([item for item in payload.subtopics if item.strip()]),
                mode=payload.mode.value,
                transcript=payload.transcript or None,
                assignment_counts_json=_dump_json(counts.to_payload()),
                status=JobStatus.QUEUED.value,
                current_step=Checkpoint.NONE.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs of the current user, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(GenerationJob)
                .where(GenerationJob.user_id == self.user_id)
                .order_by(col(GenerationJob.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_stale_jobs(self, *, older_than: datetime, limit: int = 10) -> list[JobView]:
        """Queued or active jobs whose liveness timestamp is older than the cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob)
                .where(
                    col(GenerationJob.status).in_(_STALE_CANDIDATE_VALUES),
                    col(GenerationJob.updated_at) < to_db_datetime(older_than),
                )
                .order_by(col(GenerationJob.updated_at).asc())
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return the job with its activity log."""

        job = self.get_job(job_id)
        if job is None:
            return None
        return JobDetails(job=job, logs=self.list_logs(job_id))

    # -- claim and liveness ----------------------------------------------------

    def conditional_claim(
        self,
        *,
        job_id: str,
        expected_status: JobStatus,
        expected_updated_at: datetime,
        worker_id: str,
        now: datetime,
    ) -> bool:
        """Move the job to `processing` only if it is still in the state that was read."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == expected_status.value,
                    col(GenerationJob.updated_at) == to_db_datetime(expected_updated_at),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    worker_id=worker_id,
                    error_message=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                stage="Orchestrator",
                message=f"Claimed by {worker_id} (was {expected_status.value})",
                severity=LogSeverity.INFO,
            )
            session.commit()
            return True

    def mark_completed_from_checkpoint(self, *, job_id: str, expected_status: JobStatus) -> bool:
        """Correct a job whose completion checkpoint was written but status was not."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == expected_status.value,
                    col(GenerationJob.current_step) >= Checkpoint.COMPLETED.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                stage="Orchestrator",
                message="Recovered completed status from checkpoint",
                severity=LogSeverity.WARNING,
            )
            session.commit()
            return True

    def touch_job(self, *, job_id: str, worker_id: str) -> bool:
        """Refresh liveness for a job this worker still holds."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_held_by(job_id, worker_id))
                .values(updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- fenced progress writes ------------------------------------------------

    def update_progress(
        self,
        *,
        job_id: str,
        worker_id: str,
        status: JobStatus,
        step: Checkpoint,
    ) -> bool:
        """Write status and checkpoint; `current_step` never moves backwards."""

        if status not in ACTIVE_STATUSES:
            raise ValueError(f"Progress status must be active, got {status.value}")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_held_by(job_id, worker_id))
                .values(
                    status=status.value,
                    current_step=func.max(col(GenerationJob.current_step), step.value),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def save_artifact(
        self,
        *,
        job_id: str,
        worker_id: str,
        kind: ArtifactKind,
        value: Any,
    ) -> bool:
        """Persist one stage artifact. Empty values are rejected."""

        if _is_empty(value):
            raise ValueError(f"Refusing to persist empty artifact {kind.name.lower()}")
        stored = value if kind is ArtifactKind.CONTENT else _dump_json(value)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_held_by(job_id, worker_id))
                .values({kind.value: stored, "updated_at": to_db_datetime(utc_now())}),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def save_cost(
        self,
        *,
        job_id: str,
        worker_id: str,
        total_cost: float,
        cost_details: dict[str, Any],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_held_by(job_id, worker_id))
                .values(
                    estimated_cost=total_cost,
                    cost_details_json=_dump_json(cost_details),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        content: str,
        assignment_data: list[dict[str, Any]] | None,
        course_context: dict[str, Any] | None,
        total_cost: float,
        cost_details: dict[str, Any],
    ) -> bool:
        """Write every completion field in one conditional update."""

        if not content.strip():
            raise ValueError("Refusing to complete a job without content")
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "current_step": Checkpoint.COMPLETED.value,
            "final_content": content,
            "estimated_cost": total_cost,
            "cost_details_json": _dump_json(cost_details),
            "error_message": None,
            "resume_token": None,
            "updated_at": to_db_datetime(utc_now()),
        }
        if assignment_data is not None:
            values["assignment_data_json"] = _dump_json(assignment_data)
        if course_context:
            values["course_context_json"] = _dump_json(course_context)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob).where(*_held_by(job_id, worker_id)).values(values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                stage="Orchestrator",
                message=f"Generation completed (cost ${total_cost:.4f})",
                severity=LogSeverity.SUCCESS,
            )
            session.commit()
            return True

    def fail_job(self, *, job_id: str, worker_id: str, error_message: str) -> str | None:
        """Mark a held job failed. Returns the resume token, or None if the claim was lost."""

        resume_token = uuid4().hex
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_held_by(job_id, worker_id))
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=error_message,
                    resume_token=resume_token,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return resume_token

    def release_job(self, *, job_id: str, worker_id: str, reason: str) -> bool:
        """Hand a held job back to the queue, keeping checkpoint and artifacts."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_held_by(job_id, worker_id))
                .values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_log(
                session=session,
                job_id=job_id,
                stage="Orchestrator",
                message=f"Released back to queue: {reason}",
                severity=LogSeverity.INFO,
            )
            session.commit()
            return True

    # -- operator actions ------------------------------------------------------

    def stop_job(self, job_id: str) -> JobView:
        """Cooperatively cancel a queued or active job."""

        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous is not JobStatus.QUEUED and previous not in ACTIVE_STATUSES:
                raise RuntimeError(f"Job cannot be stopped from status={row.status}")

            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == previous.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=STOPPED_BY_USER_MESSAGE,
                    resume_token=uuid4().hex,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while stopping; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_log(
                session=session,
                job_id=job_id,
                stage="Orchestrator",
                message=STOPPED_BY_USER_MESSAGE,
                severity=LogSeverity.WARNING,
            )
            session.commit()
        job = self.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job disappeared during update: {job_id}")
        return job

    def requeue_job(
        self,
        job_id: str,
        *,
        resume_token: str | None = None,
        from_scratch: bool = False,
    ) -> JobView:
        """Re-queue a failed job, resuming from its checkpoint unless `from_scratch`."""

        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            if row.status != JobStatus.FAILED.value:
                raise RuntimeError(f"Only failed jobs can be re-queued (status={row.status})")
            if resume_token is not None and resume_token != row.resume_token:
                raise RuntimeError(f"Resume token does not match job {job_id}")

            values: dict[str, Any] = {
                "status": JobStatus.QUEUED.value,
                "worker_id": None,
                "error_message": None,
                "resume_token": None,
                "updated_at": to_db_datetime(utc_now()),
            }
            if from_scratch:
                values.update(
                    current_step=Checkpoint.NONE.value,
                    course_context_json=None,
                    gap_analysis_json=None,
                    instructor_quality_json=None,
                    final_content=None,
                    assignment_data_json=None,
                    estimated_cost=0.0,
                    cost_details_json=None,
                )
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.FAILED.value,
                )
                .values(values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while re-queuing; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_log(
                session=session,
                job_id=job_id,
                stage="Orchestrator",
                message=(
                    "Re-queued from scratch"
                    if from_scratch
                    else f"Re-queued from checkpoint {row.current_step}"
                ),
                severity=LogSeverity.INFO,
            )
            session.commit()
        job = self.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job disappeared during update: {job_id}")
        return job

    # -- activity log ----------------------------------------------------------

    def append_log(
        self,
        *,
        job_id: str,
        stage: str,
        message: str,
        severity: LogSeverity = LogSeverity.INFO,
    ) -> None:
        """Best-effort log write. Failures are logged, never raised."""

        try:
            with Session(self.engine) as session:
                self._add_log(
                    session=session,
                    job_id=job_id,
                    stage=stage,
                    message=message,
                    severity=severity,
                )
                session.commit()
        except SQLAlchemyError:
            logger.warning("Failed to append log for job %s: %s", job_id, message, exc_info=True)

    def list_logs(self, job_id: str) -> list[LogEntryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationLog)
                .where(GenerationLog.job_id == job_id)
                .order_by(col(GenerationLog.id).asc()),
            ).all()
            return [
                LogEntryView(
                    log_id=row.id or 0,
                    job_id=row.job_id,
                    stage=row.stage,
                    message=row.message,
                    severity=LogSeverity(row.severity),
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    # -- credits ---------------------------------------------------------------

    def increment_spent_credits(self, *, user_id: str, cents: int) -> None:
        """Add `cents` to the account's spent credits."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AppUser)
                .where(col(AppUser.user_id) == user_id)
                .values(spent_credits=col(AppUser.spent_credits) + cents),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Account not found: {user_id}")
            session.commit()

    def get_spent_credits(self, user_id: str) -> int:
        with Session(self.engine) as session:
            user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
            if user is None:
                raise RuntimeError(f"Account not found: {user_id}")
            return user.spent_credits

    # -- internals -------------------------------------------------------------

    def _get_job_row(self, *, session: Session, job_id: str) -> GenerationJob:
        row = session.exec(
            select(GenerationJob).where(GenerationJob.job_id == job_id),
        ).one_or_none()
        if row is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return row

    def _add_log(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        stage: str,
        message: str,
        severity: LogSeverity,
    ) -> None:
        session.add(
            GenerationLog(
                job_id=job_id,
                stage=stage,
                message=message,
                severity=severity.value,
                created_at=utc_now(),
            ),
        )


def _held_by(job_id: str, worker_id: str) -> tuple[Any, ...]:
    return (
        col(GenerationJob.job_id) == job_id,
        col(GenerationJob.worker_id) == worker_id,
        col(GenerationJob.status).in_(_ACTIVE_VALUES),
    )


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list)):
        return len(value) == 0
    return False


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _to_job_view(row: GenerationJob) -> JobView:
    subtopics = _load_json(row.subtopics_json) or []
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        topic=row.topic,
        subtopics=[str(item) for item in subtopics],
        mode=ContentMode(row.mode),
        transcript=row.transcript,
        assignment_counts=AssignmentCounts.from_payload(_load_json(row.assignment_counts_json)),
        status=JobStatus(row.status),
        current_step=row.current_step,
        worker_id=row.worker_id,
        course_context=_load_json(row.course_context_json),
        gap_analysis=_load_json(row.gap_analysis_json),
        instructor_quality=_load_json(row.instructor_quality_json),
        final_content=row.final_content,
        assignment_data=_load_json(row.assignment_data_json),
        estimated_cost=row.estimated_cost,
        cost_details=_load_json(row.cost_details_json),
        error_message=row.error_message,
        resume_token=row.resume_token,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

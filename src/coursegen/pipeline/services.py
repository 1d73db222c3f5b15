"""Use-case services: enqueue, the `process(job_id)` trigger and the stuck-job sweep."""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

from coursegen.backend.base import ModelBackend
from coursegen.backend.http_backend import HttpModelBackend
from coursegen.backend.scripted import ScriptedBackend, demo_script
from coursegen.config import BackendSettings, Settings
from coursegen.pipeline.claims import ClaimManager
from coursegen.pipeline.errors import CoursegenError
from coursegen.pipeline.models import (
    ClaimOutcome,
    JobCreate,
    JobStatus,
    JobView,
    ProcessOutcome,
    ProcessResult,
)
from coursegen.pipeline.orchestrator import Orchestrator, StageAgents
from coursegen.pipeline.pricing import PriceTable
from coursegen.pipeline.repository import JobRepository
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def build_backend(settings: BackendSettings) -> ModelBackend:
    """Instantiate the configured model backend."""

    if settings.provider == "scripted":
        return ScriptedBackend(script=demo_script())
    return HttpModelBackend(
        base_url=settings.base_url,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
        max_retries=settings.max_retries,
        retry_base_seconds=settings.retry_base_seconds,
    )


class GenerationService:
    """Coordinates claims and the stage pipeline for jobs in one store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        backend: ModelBackend,
        settings: Settings,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.clock = clock
        self.claims = ClaimManager(
            repository,
            worker_id=worker_id or default_worker_id(),
            stale_after_seconds=settings.generation.stale_after_seconds,
            clock=clock,
        )
        self.orchestrator = orchestrator or Orchestrator(
            repository=repository,
            agents=StageAgents.build(
                backend,
                pro_model=settings.backend.pro_model,
                flash_model=settings.backend.flash_model,
                max_tokens=settings.backend.max_tokens,
            ),
            prices=PriceTable.build(
                pro_model=settings.backend.pro_model,
                flash_model=settings.backend.flash_model,
                overrides=settings.backend.pricing_overrides,
            ),
            settings=settings.generation,
        )

    @property
    def worker_id(self) -> str:
        return self.claims.worker_id

    def enqueue(self, payload: JobCreate) -> JobView:
        job = self.repository.enqueue_job(payload)
        self.repository.append_log(
            job_id=job.job_id,
            stage="Orchestrator",
            message=f"Job queued: {job.topic} ({job.mode.value})",
        )
        return job

    def process(self, job_id: str) -> ProcessResult:
        """Claim and run one job. Safe to call any number of times for the same id."""

        outcome, job = self.claims.try_claim(job_id)
        if outcome is ClaimOutcome.NOT_FOUND or job is None:
            return ProcessResult(job_id=job_id, outcome=ProcessOutcome.NOT_FOUND)
        if outcome is ClaimOutcome.ALREADY_TERMINAL:
            return ProcessResult(
                job_id=job_id,
                outcome=ProcessOutcome.ALREADY_FINISHED,
                status=job.status,
                current_step=job.current_step,
                total_cost=job.estimated_cost,
            )
        if outcome is ClaimOutcome.ALREADY_ACTIVE:
            return ProcessResult(
                job_id=job_id,
                outcome=ProcessOutcome.ALREADY_CLAIMED,
                status=job.status,
                current_step=job.current_step,
                detail=f"held by {job.worker_id or 'another worker'}",
            )
        return self.orchestrator.run(job, worker_id=self.worker_id)

    def list_stuck_jobs(self, limit: int | None = None) -> list[JobView]:
        """Queued or active jobs without a heartbeat for longer than the staleness threshold."""

        cutoff = self.clock() - timedelta(seconds=self.settings.generation.stale_after_seconds)
        return self.repository.list_stale_jobs(
            older_than=cutoff,
            limit=limit or self.settings.generation.stuck_batch_limit,
        )

    def process_stuck(self, limit: int | None = None) -> list[ProcessResult]:
        """Run `process` for each stuck job; one job failing does not stop the sweep."""

        results: list[ProcessResult] = []
        for job in self.list_stuck_jobs(limit):
            logger.info(
                "Resuming stuck job %s (%s, step %d)",
                job.job_id,
                job.status.value,
                job.current_step,
            )
            try:
                results.append(self.process(job.job_id))
            except CoursegenError as error:
                logger.warning("Stuck job %s failed: %s", job.job_id, error)
                results.append(
                    ProcessResult(
                        job_id=job.job_id,
                        outcome=ProcessOutcome.FAILED,
                        status=JobStatus.FAILED,
                        detail=str(error),
                    ),
                )
            except Exception as error:
                logger.exception("Stuck job %s could not be processed", job.job_id)
                results.append(
                    ProcessResult(
                        job_id=job.job_id,
                        outcome=ProcessOutcome.FAILED,
                        detail=f"{type(error).__name__}: {error}",
                    ),
                )
        return results

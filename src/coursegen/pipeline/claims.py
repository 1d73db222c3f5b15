"""At-most-one-worker claim protocol over the job store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from coursegen.pipeline.models import Checkpoint, ClaimOutcome, JobView
from coursegen.pipeline.repository import JobRepository
from coursegen.storage.common import utc_now

logger = logging.getLogger(__name__)


class ClaimManager:
    """Decides whether the caller may run a job and takes ownership atomically.

    Ownership is a single conditional update on `(status, updated_at)` as read,
    so of any number of concurrent callers at most one observes ``CLAIMED``.
    An active job is only taken over once its heartbeat is older than
    ``stale_after_seconds``.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        worker_id: str,
        stale_after_seconds: int = 120,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._worker_id = worker_id
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def try_claim(self, job_id: str) -> tuple[ClaimOutcome, JobView | None]:
        """Attempt to claim `job_id`; returns the outcome and the job as last read."""

        job = self._repository.get_job(job_id)
        if job is None:
            logger.warning("Claim requested for unknown job %s", job_id)
            return ClaimOutcome.NOT_FOUND, None

        if job.is_terminal:
            logger.info("Job %s already %s, nothing to do", job_id, job.status.value)
            return ClaimOutcome.ALREADY_TERMINAL, job

        if job.current_step >= Checkpoint.COMPLETED and job.has_content:
            self._repository.mark_completed_from_checkpoint(
                job_id=job_id,
                expected_status=job.status,
            )
            logger.warning("Job %s had a completion checkpoint; status corrected", job_id)
            return ClaimOutcome.ALREADY_TERMINAL, self._repository.get_job(job_id)

        now = self._clock()
        if job.is_active and now - job.updated_at < self._stale_after:
            logger.info(
                "Job %s is active (%s, heartbeat %.0fs ago), not claiming",
                job_id,
                job.status.value,
                (now - job.updated_at).total_seconds(),
            )
            return ClaimOutcome.ALREADY_ACTIVE, job

        claimed = self._repository.conditional_claim(
            job_id=job_id,
            expected_status=job.status,
            expected_updated_at=job.updated_at,
            worker_id=self._worker_id,
            now=now,
        )
        if not claimed:
            logger.info("Lost claim race for job %s", job_id)
            return ClaimOutcome.ALREADY_ACTIVE, job

        if job.is_active:
            logger.warning(
                "Took over stalled job %s (was %s, step %d)",
                job_id,
                job.status.value,
                job.current_step,
            )
        return ClaimOutcome.CLAIMED, self._repository.get_job(job_id)

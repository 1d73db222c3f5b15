"""Periodic liveness refresh for a claimed job."""

from __future__ import annotations

import logging
import threading
from types import TracebackType

from sqlalchemy.exc import SQLAlchemyError

from coursegen.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)


class Heartbeat:
    """Refreshes `updated_at` of a held job from a daemon thread.

    Use as a context manager so the thread is stopped on every exit path.
    A refresh that matches no row means the claim is gone (stopped by an
    operator or taken over); the heartbeat then stops and `claim_lost` is set.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        job_id: str,
        worker_id: str,
        interval_seconds: float = 10.0,
    ) -> None:
        self._repository = repository
        self._job_id = job_id
        self._worker_id = worker_id
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread: threading.Thread | None = None
        self.beats = 0

    @property
    def claim_lost(self) -> bool:
        return self._lost.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"heartbeat-{self._job_id[:8]}",
        )
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(1.0, self._interval))
        self._thread = None

    def __enter__(self) -> Heartbeat:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self._interval):
            try:
                alive = self._repository.touch_job(job_id=self._job_id, worker_id=self._worker_id)
            except SQLAlchemyError:
                logger.warning("Heartbeat write failed for job %s", self._job_id, exc_info=True)
                continue
            if not alive:
                logger.info("Heartbeat for job %s found the claim gone, stopping", self._job_id)
                self._lost.set()
                return
            self.beats += 1

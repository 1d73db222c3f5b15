"""Bounded review -> refine loop over a persisted draft."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from coursegen.agents.base import AgentCall
from coursegen.agents.review import Refiner, Reviewer
from coursegen.pipeline.dedup import (
    DEFAULT_SIMILARITY_THRESHOLD,
    deduplicate_content,
    deduplicate_headers,
)
from coursegen.pipeline.deadlines import run_with_deadline
from coursegen.pipeline.errors import BudgetExhaustedError, ClaimLostError
from coursegen.pipeline.models import Checkpoint, ContentMode, JobStatus, LogSeverity
from coursegen.pipeline.text_diff import apply_search_replace

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOOPS = 3
DEFAULT_QUALITY_THRESHOLD = 9.0


class LoopJournal(Protocol):
    """Side effects the loop needs from the running job."""

    def check_boundary(self, next_stage: str) -> None: ...

    def progress(self, status: JobStatus, step: Checkpoint) -> None: ...

    def log(self, stage: str, message: str, severity: LogSeverity = LogSeverity.INFO) -> None: ...

    def charge(self, stage: str, calls: list[AgentCall]) -> None: ...

    def save_content(self, content: str) -> None: ...


@dataclass(slots=True)
class QualityLoopResult:
    iterations: int
    refinements_applied: int
    final_score: float | None
    quality_met: bool
    content: str


class QualityLoop:
    """Reviews the draft and applies refiner patches until the quality gate passes.

    Each iteration moves the job to `critiquing`, scores the content and stops
    when the score reaches the threshold or the reviewer says no polish is
    needed. Otherwise the job moves to `refining` and the refiner's
    search/replace patch is applied, deduplicated and persisted. The loop never
    runs more than `max_loops` reviews. A failing iteration ends the loop with
    the content as it stands; a lost claim or an exhausted budget propagates.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        reviewer: Reviewer,
        refiner: Refiner,
        journal: LoopJournal,
        threshold: float = DEFAULT_QUALITY_THRESHOLD,
        max_loops: int = DEFAULT_MAX_LOOPS,
        dedup_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        review_timeout_seconds: float | None = 120.0,
        refine_timeout_seconds: float | None = 180.0,
    ) -> None:
        self.reviewer = reviewer
        self.refiner = refiner
        self.journal = journal
        self.threshold = threshold
        self.max_loops = max_loops
        self.dedup_threshold = dedup_threshold
        self.review_timeout_seconds = review_timeout_seconds
        self.refine_timeout_seconds = refine_timeout_seconds

    def run(
        self,
        *,
        content: str,
        mode: ContentMode,
        course_context: dict[str, Any] | None,
    ) -> QualityLoopResult:
        iterations = 0
        refinements = 0
        final_score: float | None = None
        quality_met = False

        for iteration in range(1, self.max_loops + 1):
            iterations = iteration
            try:
                self.journal.check_boundary("Reviewer")
                self.journal.progress(JobStatus.CRITIQUING, Checkpoint.CRITIQUING)
                self.journal.log(
                    "Reviewer",
                    f"Reviewing content (iteration {iteration}/{self.max_loops})",
                    LogSeverity.STEP,
                )
                current = content
                review_output = run_with_deadline(
                    lambda context: self.reviewer.review(
                        content=current,
                        mode=mode.value,
                        course_context=course_context,
                        context=context,
                    ),
                    timeout_seconds=self.review_timeout_seconds,
                    label="Reviewer",
                )
                self.journal.charge("Reviewer", review_output.calls)
                review = review_output.value
                final_score = review.score
                self.journal.log("Reviewer", f"Score: {review.score:.1f}/10", LogSeverity.INFO)

                if review.score >= self.threshold or not review.needs_polish:
                    quality_met = True
                    self.journal.log(
                        "Reviewer",
                        f"Quality threshold met (score {review.score:.1f})",
                        LogSeverity.SUCCESS,
                    )
                    break
                if iteration == self.max_loops:
                    self.journal.log(
                        "Reviewer",
                        f"Max loops reached with score {review.score:.1f}, using best effort",
                        LogSeverity.WARNING,
                    )
                    break

                self.journal.check_boundary("Refiner")
                self.journal.progress(JobStatus.REFINING, Checkpoint.REFINING)
                self.journal.log("Refiner", "Applying reviewer feedback", LogSeverity.STEP)
                refine_output = run_with_deadline(
                    lambda context: self.refiner.refine(
                        content=current,
                        review=review,
                        course_context=course_context,
                        context=context,
                    ),
                    timeout_seconds=self.refine_timeout_seconds,
                    label="Refiner",
                )
                self.journal.charge("Refiner", refine_output.calls)
                content, changed = self._apply(content, refine_output.value)
                if changed:
                    refinements += 1
            except (ClaimLostError, BudgetExhaustedError):
                raise
            except Exception as error:  # noqa: BLE001
                logger.warning("Quality loop iteration %d failed: %s", iteration, error)
                self.journal.log(
                    "QualityLoop",
                    f"Stopped at iteration {iteration}: {error}",
                    LogSeverity.WARNING,
                )
                break

        return QualityLoopResult(
            iterations=iterations,
            refinements_applied=refinements,
            final_score=final_score,
            quality_met=quality_met,
            content=content,
        )

    def _apply(self, content: str, patch: str) -> tuple[str, bool]:
        if not patch.strip():
            self.journal.log(
                "Refiner",
                "Refiner returned an empty patch, keeping current content",
                LogSeverity.WARNING,
            )
            return content, False

        patched = apply_search_replace(content, patch)
        if not patched.content.strip():
            self.journal.log(
                "Refiner",
                "Patch produced empty content, keeping current content",
                LogSeverity.WARNING,
            )
            return content, False
        if patched.content == content:
            self.journal.log("Refiner", "No changes applied", LogSeverity.INFO)
            return content, False

        deduped = deduplicate_content(
            deduplicate_headers(patched.content),
            self.dedup_threshold,
        )
        if deduped.removed_count:
            self.journal.log(
                "Refiner",
                f"Removed {deduped.removed_count} duplicate blocks",
                LogSeverity.INFO,
            )
        self.journal.save_content(deduped.content)
        self.journal.log(
            "Refiner",
            f"Applied {patched.applied} changes ({patched.failed} not found)",
            LogSeverity.SUCCESS,
        )
        return deduped.content, True

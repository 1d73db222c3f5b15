"""Resumable stage pipeline for one claimed generation job."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from coursegen.agents.analysis import Analyzer, CourseDetector, InstructorQuality
from coursegen.agents.assignment import AssignmentSanitizer, Formatter
from coursegen.agents.base import AgentCall, AgentOutput
from coursegen.agents.review import Refiner, Reviewer
from coursegen.agents.writing import Creator, Sanitizer
from coursegen.backend.base import CallContext, ModelBackend
from coursegen.config import GenerationSettings
from coursegen.pipeline.deadlines import run_with_deadline
from coursegen.pipeline.errors import (
    BudgetExhaustedError,
    ClaimLostError,
    PersistenceError,
    StageError,
)
from coursegen.pipeline.heartbeat import Heartbeat
from coursegen.pipeline.ledger import CostLedger
from coursegen.pipeline.models import (
    ArtifactKind,
    Checkpoint,
    ContentMode,
    JobStatus,
    JobView,
    LogSeverity,
    ProcessOutcome,
    ProcessResult,
)
from coursegen.pipeline.pricing import PriceTable
from coursegen.pipeline.quality_loop import QualityLoop
from coursegen.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CreditSink(Protocol):
    """Receives the spend of a completed job in integer cents."""

    def increment_spent_credits(self, *, user_id: str, cents: int) -> None: ...


@dataclass(slots=True)
class StageAgents:
    """One agent per model-calling stage."""

    detector: CourseDetector
    analyzer: Analyzer
    instructor: InstructorQuality
    creator: Creator
    sanitizer: Sanitizer
    reviewer: Reviewer
    refiner: Refiner
    formatter: Formatter
    assignment_sanitizer: AssignmentSanitizer

    @classmethod
    def build(
        cls,
        backend: ModelBackend,
        *,
        pro_model: str,
        flash_model: str,
        max_tokens: int = 8192,
    ) -> StageAgents:
        """Writing stages run on the pro model, analysis and review on flash."""

        def flash(agent_cls: type[Any]) -> Any:
            return agent_cls(backend, model=flash_model, max_tokens=max_tokens)

        def pro(agent_cls: type[Any]) -> Any:
            return agent_cls(backend, model=pro_model, max_tokens=max_tokens)

        return cls(
            detector=flash(CourseDetector),
            analyzer=flash(Analyzer),
            instructor=flash(InstructorQuality),
            creator=pro(Creator),
            sanitizer=flash(Sanitizer),
            reviewer=flash(Reviewer),
            refiner=pro(Refiner),
            formatter=flash(Formatter),
            assignment_sanitizer=flash(AssignmentSanitizer),
        )


class JobRun:
    """Mutable state of one pipeline execution plus its fenced writes."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        job: JobView,
        worker_id: str,
        ledger: CostLedger,
        deadline: float,
        clock: Callable[[], float],
        heartbeat: Heartbeat | None = None,
    ) -> None:
        self.repository = repository
        self.job = job
        self.worker_id = worker_id
        self.ledger = ledger
        self.deadline = deadline
        self.clock = clock
        self.heartbeat = heartbeat
        self.stage = "Orchestrator"
        self.content = job.final_content or ""
        self.course_context = job.course_context
        self.gap_analysis = job.gap_analysis
        self.instructor_quality = job.instructor_quality
        self.assignment_data = job.assignment_data

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def check_boundary(self, next_stage: str) -> None:
        """Stage-boundary checks: claim still held and wall-clock budget left."""

        if self.heartbeat is not None and self.heartbeat.claim_lost:
            raise ClaimLostError(self.job_id, f"heartbeat before {next_stage}")
        if self.clock() >= self.deadline:
            raise BudgetExhaustedError(next_stage)
        self.stage = next_stage

    # -- LoopJournal -----------------------------------------------------------

    def progress(self, status: JobStatus, step: Checkpoint) -> None:
        self.write(
            f"progress {status.value}",
            lambda: self.repository.update_progress(
                job_id=self.job_id,
                worker_id=self.worker_id,
                status=status,
                step=step,
            ),
            hard=True,
        )

    def log(self, stage: str, message: str, severity: LogSeverity = LogSeverity.INFO) -> None:
        self.repository.append_log(
            job_id=self.job_id,
            stage=stage,
            message=message,
            severity=severity,
        )

    def charge(self, stage: str, calls: list[AgentCall]) -> None:
        """Add the calls' cost under `stage` and persist the running breakdown."""

        if not calls:
            return
        for call in calls:
            self.ledger.record_call(
                stage=stage,
                model=call.model,
                prompt_text=call.prompt_text,
                output_text=call.output_text,
                usage=call.usage,
            )
        self.write(
            "cost",
            lambda: self.repository.save_cost(
                job_id=self.job_id,
                worker_id=self.worker_id,
                total_cost=self.ledger.total_cost,
                cost_details=self.ledger.to_payload(),
            ),
            hard=False,
        )

    def save_content(self, content: str) -> None:
        self.content = content
        self.save_artifact(ArtifactKind.CONTENT, content, hard=False)

    # -- artifacts -------------------------------------------------------------

    def save_artifact(self, kind: ArtifactKind, value: Any, *, hard: bool) -> bool:
        return self.write(
            kind.name.lower(),
            lambda: self.repository.save_artifact(
                job_id=self.job_id,
                worker_id=self.worker_id,
                kind=kind,
                value=value,
            ),
            hard=hard,
        )

    def write(self, action: str, operation: Callable[[], bool], *, hard: bool) -> bool:
        """Run a fenced write, retrying once on a storage error.

        Zero matched rows raise `ClaimLostError`. A second storage error raises
        `PersistenceError` for hard writes; soft writes log it and return False.
        """

        for attempt in (1, 2):
            try:
                held = operation()
            except SQLAlchemyError as error:
                if attempt == 1:
                    logger.warning(
                        "Write %s failed for job %s, retrying: %s",
                        action,
                        self.job_id,
                        error,
                    )
                    continue
                if hard:
                    raise PersistenceError(f"Could not persist {action}: {error}") from error
                logger.warning("Write %s failed twice for job %s", action, self.job_id)
                self.log(
                    self.stage,
                    f"Could not persist {action}, continuing with in-memory value",
                    LogSeverity.WARNING,
                )
                return False
            if not held:
                raise ClaimLostError(self.job_id, action)
            return True
        return False


class Orchestrator:
    """Runs the stage pipeline for a job the caller has already claimed.

    Stages whose output is already persisted are skipped, so running the same
    job again after a crash, a budget release or an operator re-queue resumes
    at the first missing artifact. Every status, artifact and cost write is
    fenced by the claiming worker id: if the job was stopped or taken over the
    next write raises `ClaimLostError` and the run ends without touching the job.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        agents: StageAgents,
        prices: PriceTable,
        settings: GenerationSettings | None = None,
        credit_sink: CreditSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.agents = agents
        self.prices = prices
        self.settings = settings or GenerationSettings()
        self.credit_sink: CreditSink = credit_sink or repository
        self.clock = clock

    def run(self, job: JobView, *, worker_id: str) -> ProcessResult:
        """Execute the pipeline; hard stage failures mark the job failed and re-raise."""

        run = JobRun(
            repository=self.repository,
            job=job,
            worker_id=worker_id,
            ledger=CostLedger.from_payload(self.prices, job.cost_details),
            deadline=self.clock() + self.settings.max_duration_seconds,
            clock=self.clock,
        )
        heartbeat = Heartbeat(
            self.repository,
            job_id=job.job_id,
            worker_id=worker_id,
            interval_seconds=self.settings.heartbeat_interval_seconds,
        )
        run.heartbeat = heartbeat
        with heartbeat:
            try:
                return self._execute(run)
            except ClaimLostError as error:
                logger.info("Job %s: %s; stopping without further writes", job.job_id, error)
                current = self.repository.get_job(job.job_id)
                return ProcessResult(
                    job_id=job.job_id,
                    outcome=ProcessOutcome.CANCELLED,
                    status=current.status if current else None,
                    current_step=current.current_step if current else None,
                    total_cost=run.ledger.total_cost,
                    detail=str(error),
                )
            except BudgetExhaustedError as exhausted:
                return self._release(run, next_stage=exhausted.next_stage)
            except StageError as error:
                self._fail(run, error.job_error_message(), stage=error.stage)
                raise
            except Exception as error:
                logger.exception("Job %s failed unexpectedly in %s", job.job_id, run.stage)
                failure = StageError(run.stage, "Pipeline", str(error))
                self._fail(run, failure.job_error_message(), stage=run.stage)
                raise

    # -- pipeline --------------------------------------------------------------

    def _execute(self, run: JobRun) -> ProcessResult:
        job = run.job
        logger.info(
            "Processing job %s (%s, step %d) as %s",
            job.job_id,
            job.mode.value,
            job.current_step,
            run.worker_id,
        )
        run.log(
            "Orchestrator",
            f"Starting generation: {job.topic} ({job.mode.value})",
            LogSeverity.STEP,
        )

        run.check_boundary("CourseDetector")
        run.progress(JobStatus.PROCESSING, Checkpoint.ANALYSIS)
        self._detect_course(run)
        if job.transcript:
            run.check_boundary("Analyzer")
            self._analyze_gaps(run)
            run.check_boundary("InstructorQuality")
            self._evaluate_instructor(run)

        run.check_boundary("Creator")
        self._draft(run)

        run.check_boundary("Reviewer")
        if job.current_step >= Checkpoint.FORMATTING:
            run.log("Reviewer", "Quality loop already finished (resumed)", LogSeverity.INFO)
        else:
            self._quality_loop(run)

        if job.mode is ContentMode.ASSIGNMENT and job.current_step < Checkpoint.COMPLETED:
            run.check_boundary("Formatter")
            self._format(run)

        return self._complete(run)

    def _detect_course(self, run: JobRun) -> None:
        job = run.job
        if run.course_context or job.current_step > Checkpoint.ANALYSIS:
            run.log("CourseDetector", "Course context already available (resumed)")
            return
        run.log("CourseDetector", "Detecting course domain", LogSeverity.STEP)
        value = self._soft_stage(
            run,
            stage="CourseDetector",
            timeout=self.settings.default_stage_timeout_seconds,
            call=lambda context: self.agents.detector.detect(
                topic=job.topic,
                subtopics=job.subtopics,
                transcript=job.transcript,
                context=context,
            ),
        )
        if value is None:
            return
        run.course_context = value
        run.save_artifact(ArtifactKind.COURSE_CONTEXT, value, hard=False)
        run.log(
            "CourseDetector",
            f"Detected domain: {value['domain']} ({value['confidence']:.0%} confidence)",
            LogSeverity.SUCCESS,
        )

    def _analyze_gaps(self, run: JobRun) -> None:
        job = run.job
        if run.gap_analysis or job.current_step > Checkpoint.ANALYSIS:
            run.log("Analyzer", "Gap analysis already available (resumed)")
            return
        run.log("Analyzer", "Analyzing transcript coverage", LogSeverity.STEP)
        value = self._soft_stage(
            run,
            stage="Analyzer",
            timeout=self.settings.analyzer_timeout_seconds,
            call=lambda context: self.agents.analyzer.analyze(
                subtopics=job.subtopics,
                transcript=job.transcript or "",
                context=context,
            ),
        )
        if value is None:
            return
        run.gap_analysis = value
        run.save_artifact(ArtifactKind.GAP_ANALYSIS, value, hard=False)
        run.log(
            "Analyzer",
            f"Covered {len(value['covered'])}, partial {len(value['partiallyCovered'])}, "
            f"missing {len(value['notCovered'])}",
            LogSeverity.SUCCESS,
        )

    def _evaluate_instructor(self, run: JobRun) -> None:
        job = run.job
        if run.instructor_quality or job.current_step > Checkpoint.ANALYSIS:
            run.log("InstructorQuality", "Instructor assessment already available (resumed)")
            return
        run.log("InstructorQuality", "Assessing instructor delivery", LogSeverity.STEP)
        value = self._soft_stage(
            run,
            stage="InstructorQuality",
            timeout=self.settings.instructor_timeout_seconds,
            call=lambda context: self.agents.instructor.evaluate(
                topic=job.topic,
                transcript=job.transcript or "",
                context=context,
            ),
        )
        if value is None:
            return
        run.instructor_quality = value
        run.save_artifact(ArtifactKind.INSTRUCTOR_QUALITY, value, hard=False)
        run.log(
            "InstructorQuality",
            f"Instructor score: {value['overallScore']:.1f}/10",
            LogSeverity.SUCCESS,
        )

    def _draft(self, run: JobRun) -> None:
        job = run.job
        if run.content.strip():
            run.log("Creator", "Draft already available (resumed)")
            return

        run.progress(JobStatus.DRAFTING, Checkpoint.DRAFTING)
        run.log("Creator", "Writing draft", LogSeverity.STEP)
        try:
            output = run_with_deadline(
                lambda context: self.agents.creator.create(
                    topic=job.topic,
                    subtopics=job.subtopics,
                    mode=job.mode,
                    transcript=job.transcript,
                    course_context=run.course_context,
                    gap_analysis=run.gap_analysis,
                    instructor_quality=run.instructor_quality,
                    assignment_counts=job.assignment_counts,
                    context=context,
                ),
                timeout_seconds=self.settings.creator_timeout_seconds,
                label="Creator",
            )
        except ClaimLostError:
            raise
        except Exception as error:
            message = f"Draft creation failed: {error}"
            raise StageError("Creator", "Draft Creation", message) from error
        if not output.value.strip():
            raise StageError("Creator", "Draft Creation", "Creator returned empty content")

        run.charge("Creator", output.calls)
        run.content = output.value
        try:
            run.save_artifact(ArtifactKind.CONTENT, output.value, hard=True)
        except PersistenceError as error:
            raise StageError("Creator", "Draft Creation", str(error)) from error
        run.log("Creator", f"Draft ready ({len(output.value)} chars)", LogSeverity.SUCCESS)

        if job.transcript:
            run.check_boundary("Sanitizer")
            self._sanitize(run)

    def _sanitize(self, run: JobRun) -> None:
        transcript = run.job.transcript or ""
        draft = run.content
        run.log("Sanitizer", "Checking draft against the transcript", LogSeverity.STEP)
        value = self._soft_stage(
            run,
            stage="Sanitizer",
            timeout=self.settings.default_stage_timeout_seconds,
            call=lambda context: self.agents.sanitizer.sanitize(
                content=draft,
                transcript=transcript,
                context=context,
            ),
        )
        if not value or value == draft:
            run.log("Sanitizer", "No corrections needed")
            return
        run.save_content(value)
        run.log("Sanitizer", "Applied transcript corrections", LogSeverity.SUCCESS)

    def _quality_loop(self, run: JobRun) -> None:
        loop = QualityLoop(
            reviewer=self.agents.reviewer,
            refiner=self.agents.refiner,
            journal=run,
            threshold=self.settings.quality_threshold,
            max_loops=self.settings.max_loops,
            dedup_threshold=self.settings.dedup_threshold,
            review_timeout_seconds=self.settings.default_stage_timeout_seconds,
            refine_timeout_seconds=self.settings.refiner_timeout_seconds,
        )
        result = loop.run(
            content=run.content,
            mode=run.job.mode,
            course_context=run.course_context,
        )
        run.content = result.content
        logger.info(
            "Job %s quality loop: %d iterations, %d refinements, score=%s, met=%s",
            run.job_id,
            result.iterations,
            result.refinements_applied,
            result.final_score,
            result.quality_met,
        )

    def _format(self, run: JobRun) -> None:
        job = run.job
        run.progress(JobStatus.FORMATTING, Checkpoint.FORMATTING)
        if run.assignment_data:
            questions = run.assignment_data
            run.log("Formatter", "Assignment already formatted (resumed)")
        else:
            run.log("Formatter", "Structuring assignment questions", LogSeverity.STEP)
            content = run.content
            questions = self._soft_stage(
                run,
                stage="Formatter",
                timeout=self.settings.default_stage_timeout_seconds,
                call=lambda context: self.agents.formatter.format(
                    content=content,
                    context=context,
                ),
            )
            if questions is None:
                run.assignment_data = []
                return
            if questions:
                run.assignment_data = questions
                run.save_artifact(ArtifactKind.ASSIGNMENT_DATA, questions, hard=False)

        run.check_boundary("AssignmentSanitizer")
        formatted = questions
        report = self._soft_stage(
            run,
            stage="AssignmentSanitizer",
            timeout=self.settings.default_stage_timeout_seconds,
            call=lambda context: self.agents.assignment_sanitizer.sanitize(
                questions=formatted,
                topic=job.topic,
                subtopics=job.subtopics,
                counts=job.assignment_counts,
                context=context,
            ),
        )
        if report is not None:
            questions = report.questions
            for issue in report.issues[:10]:
                run.log("AssignmentSanitizer", issue, LogSeverity.WARNING)
            run.log(
                "AssignmentSanitizer",
                f"{len(questions)} questions ready "
                f"({report.removed_count} removed, {report.replaced_count} replaced)",
                LogSeverity.SUCCESS,
            )
        run.assignment_data = questions
        if questions:
            run.save_artifact(ArtifactKind.ASSIGNMENT_DATA, questions, hard=False)

    def _soft_stage(
        self,
        run: JobRun,
        *,
        stage: str,
        timeout: float,
        call: Callable[[CallContext], AgentOutput[T]],
    ) -> T | None:
        """Run a soft-fail stage: on error log a warning and return None."""

        try:
            output = run_with_deadline(call, timeout_seconds=timeout, label=stage)
        except ClaimLostError:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Job %s: %s failed: %s", run.job_id, stage, error)
            run.log(stage, f"{stage} failed, continuing without it: {error}", LogSeverity.WARNING)
            return None
        run.charge(stage, output.calls)
        return output.value

    # -- terminal paths --------------------------------------------------------

    def _complete(self, run: JobRun) -> ProcessResult:
        job = run.job
        run.stage = "Orchestrator"
        total_cost = run.ledger.total_cost
        run.write(
            "completion",
            lambda: self.repository.complete_job(
                job_id=job.job_id,
                worker_id=run.worker_id,
                content=run.content,
                assignment_data=(
                    (run.assignment_data or []) if job.mode is ContentMode.ASSIGNMENT else None
                ),
                course_context=run.course_context,
                total_cost=total_cost,
                cost_details=run.ledger.to_payload(),
            ),
            hard=True,
        )
        logger.info("Job %s completed, cost %.4f USD", job.job_id, total_cost)
        self._charge_credits(run, total_cost)
        return ProcessResult(
            job_id=job.job_id,
            outcome=ProcessOutcome.COMPLETED,
            status=JobStatus.COMPLETED,
            current_step=Checkpoint.COMPLETED.value,
            total_cost=total_cost,
        )

    def _charge_credits(self, run: JobRun, total_cost: float) -> None:
        cents = round(total_cost * 100)
        if cents <= 0:
            return
        try:
            self.credit_sink.increment_spent_credits(user_id=run.job.user_id, cents=cents)
        except (SQLAlchemyError, RuntimeError) as error:
            logger.warning("Credit update failed for job %s: %s", run.job_id, error)
            run.log(
                "Billing",
                f"Could not record {cents} spent credits: {error}",
                LogSeverity.WARNING,
            )

    def _release(self, run: JobRun, *, next_stage: str) -> ProcessResult:
        budget = self.settings.max_duration_seconds
        logger.info("Job %s used its %ds budget before %s", run.job_id, budget, next_stage)
        released = self.repository.release_job(
            job_id=run.job_id,
            worker_id=run.worker_id,
            reason=f"budget exhausted after {budget}s, next stage {next_stage}",
        )
        current = self.repository.get_job(run.job_id)
        return ProcessResult(
            job_id=run.job_id,
            outcome=ProcessOutcome.RELEASED if released else ProcessOutcome.CANCELLED,
            status=current.status if current else None,
            current_step=current.current_step if current else None,
            total_cost=run.ledger.total_cost,
            detail=f"budget exhausted before {next_stage}",
        )

    def _fail(self, run: JobRun, message: str, *, stage: str) -> None:
        run.log("Orchestrator", f"{stage} failed: {message.splitlines()[0]}", LogSeverity.ERROR)
        token = self.repository.fail_job(
            job_id=run.job_id,
            worker_id=run.worker_id,
            error_message=message,
        )
        if token is None:
            logger.info("Job %s: claim already gone, failure not recorded", run.job_id)
        else:
            logger.warning("Job %s failed in %s; resume token issued", run.job_id, stage)

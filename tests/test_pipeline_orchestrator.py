from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any

import allure
import pytest

from coursegen.backend.base import BackendError, ModelRequest
from coursegen.backend.scripted import ScriptedBackend, ScriptedReply, demo_script
from coursegen.config import GenerationSettings, Settings
from coursegen.pipeline.claims import ClaimManager
from coursegen.pipeline.errors import StageError
from coursegen.pipeline.models import (
    ArtifactKind,
    AssignmentCounts,
    Checkpoint,
    ClaimOutcome,
    ContentMode,
    JobCreate,
    JobStatus,
    JobView,
    LogSeverity,
    ProcessOutcome,
)
from coursegen.pipeline.orchestrator import CreditSink, Orchestrator, StageAgents
from coursegen.pipeline.pricing import ModelPricing, PriceTable
from coursegen.pipeline.repository import JobRepository
from coursegen.pipeline.services import GenerationService

pytestmark = [
    allure.epic("Generation Pipeline"),
    allure.feature("Stage Orchestration"),
]

PRO = "gemini-2.5-pro"
FLASH = "gemini-2.5-flash"

DRAFT = (
    "# Recursion\n\n"
    "## Learning Objectives\n\n- Define a recursive function\n- Identify the base case\n\n"
    "## Base Case\n\nEvery recursive function needs a condition that stops the recursion. "
    "Without it the call stack grows until the interpreter gives up.\n\n"
    "## Recursive Step\n\nThe function calls itself on a smaller input, so each call moves "
    "closer to the base case. Factorial is the classic example: n! = n * (n - 1)!.\n\n"
    "## Tracing a Call\n\nWriting down each call and its return value makes the unwinding "
    "phase visible and explains where the final answer comes from."
)


class _ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _BrokenCredits:
    def increment_spent_credits(self, *, user_id: str, cents: int) -> None:
        raise RuntimeError("billing database unavailable")


def _review(score: float, *, needs_polish: bool = True) -> str:
    return json.dumps(
        {
            "score": score,
            "needsPolish": needs_polish,
            "feedback": "Tighten the factorial example.",
            "detailedFeedback": ["Name the factorial example explicitly."],
        },
    )


def _service(  # noqa: PLR0913
    repository: JobRepository,
    backend: ScriptedBackend,
    *,
    prices: PriceTable | None = None,
    clock: Callable[[], float] = time.monotonic,
    credit_sink: CreditSink | None = None,
    worker_id: str = "worker-a",
    generation: GenerationSettings | None = None,
) -> GenerationService:
    settings = Settings(
        db_path=repository.db_path,
        generation=generation or GenerationSettings(),
    )
    orchestrator = Orchestrator(
        repository=repository,
        agents=StageAgents.build(backend, pro_model=PRO, flash_model=FLASH),
        prices=prices or PriceTable.build(pro_model=PRO, flash_model=FLASH),
        settings=settings.generation,
        credit_sink=credit_sink,
        clock=clock,
    )
    return GenerationService(
        repository=repository,
        backend=backend,
        settings=settings,
        worker_id=worker_id,
        orchestrator=orchestrator,
    )


def _enqueue(
    repository: JobRepository,
    *,
    mode: ContentMode = ContentMode.LECTURE,
    transcript: str | None = None,
    counts: AssignmentCounts | None = None,
) -> JobView:
    return repository.enqueue_job(
        JobCreate(
            topic="Recursion",
            subtopics=["Base case", "Recursive step"],
            mode=mode,
            transcript=transcript,
            assignment_counts=counts,
        ),
    )


def _stages(job: JobView) -> dict[str, Any]:
    assert job.cost_details is not None
    return job.cost_details["stages"]


def _messages(repository: JobRepository, job_id: str) -> list[str]:
    return [entry.message for entry in repository.list_logs(job_id)]


def test_lecture_completes_when_first_review_meets_threshold(repository: JobRepository) -> None:
    backend = ScriptedBackend(
        script={
            "CourseDetector": [
                ScriptedReply(error=BackendError("HTTP 503: overloaded", status=503)),
            ],
            "Creator": [DRAFT],
            "Reviewer": [_review(9.5, needs_polish=False)],
        },
    )
    job = _enqueue(repository)

    result = _service(repository, backend).process(job.job_id)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert stored.status is JobStatus.COMPLETED
    assert stored.current_step == Checkpoint.COMPLETED
    assert stored.final_content == DRAFT
    assert stored.course_context is None
    assert stored.resume_token is None

    stages = _stages(stored)
    assert set(stages) == {"Creator", "Reviewer"}
    assert stages["Creator"]["model"] == PRO
    assert stages["Reviewer"]["model"] == FLASH
    assert stored.estimated_cost == pytest.approx(sum(entry["cost"] for entry in stages.values()))
    assert result.total_cost == pytest.approx(stored.estimated_cost)
    assert backend.calls_for("Refiner") == []

    logs = repository.list_logs(job.job_id)
    assert any(
        entry.stage == "CourseDetector" and entry.severity is LogSeverity.WARNING for entry in logs
    )
    assert "Quality threshold met (score 9.5)" in [entry.message for entry in logs]


def test_processing_a_finished_job_again_makes_no_model_calls(repository: JobRepository) -> None:
    backend = ScriptedBackend(script=demo_script())
    job = _enqueue(repository)
    service = _service(repository, backend)

    first = service.process(job.job_id)
    calls_after_first = len(backend.calls)
    second = service.process(job.job_id)

    assert first.outcome is ProcessOutcome.COMPLETED
    assert second.outcome is ProcessOutcome.ALREADY_FINISHED
    assert second.status is JobStatus.COMPLETED
    assert second.total_cost == pytest.approx(first.total_cost)
    assert len(backend.calls) == calls_after_first


def test_unknown_job_is_reported_not_found(repository: JobRepository) -> None:
    backend = ScriptedBackend(script=demo_script())

    result = _service(repository, backend).process("missing-job")

    assert result.outcome is ProcessOutcome.NOT_FOUND
    assert backend.calls == []


def test_job_held_by_live_worker_is_not_run_twice(repository: JobRepository) -> None:
    backend = ScriptedBackend(script=demo_script())
    job = _enqueue(repository)
    outcome, _ = ClaimManager(repository, worker_id="worker-b").try_claim(job.job_id)
    assert outcome is ClaimOutcome.CLAIMED

    result = _service(repository, backend).process(job.job_id)

    assert result.outcome is ProcessOutcome.ALREADY_CLAIMED
    assert "worker-b" in result.detail
    assert backend.calls == []


def test_creator_failure_fails_job_and_retry_resumes_after_analysis(
    repository: JobRepository,
) -> None:
    script = demo_script()
    script["Creator"] = [
        ScriptedReply(error=BackendError("HTTP 400: invalid request", status=400)),
        DRAFT,
    ]
    script["Sanitizer"] = [DRAFT]
    backend = ScriptedBackend(script=script)
    job = _enqueue(repository, transcript="Today we look at functions that call themselves.")
    service = _service(repository, backend)

    with pytest.raises(StageError) as raised:
        service.process(job.job_id)

    failed = repository.get_job(job.job_id)
    assert failed is not None
    assert raised.value.stage == "Creator"
    assert failed.status is JobStatus.FAILED
    assert failed.current_step == Checkpoint.DRAFTING
    assert failed.error_message is not None
    assert failed.error_message.endswith("Agent: Creator\nStep: Draft Creation")
    assert "HTTP 400" in failed.error_message
    assert failed.resume_token
    assert failed.gap_analysis is not None
    assert failed.instructor_quality is not None
    assert "Creator" not in _stages(failed)

    repository.requeue_job(job.job_id, resume_token=failed.resume_token)
    result = service.process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert done.final_content == DRAFT
    assert len(backend.calls_for("CourseDetector")) == 1
    assert len(backend.calls_for("Analyzer")) == 1
    assert len(backend.calls_for("InstructorQuality")) == 1
    assert len(backend.calls_for("Creator")) == 2
    assert len(backend.calls_for("Sanitizer")) == 1

    stages = _stages(done)
    assert stages["Creator"]["calls"] == 1
    assert {"CourseDetector", "Analyzer", "InstructorQuality", "Sanitizer"} <= set(stages)
    assert done.estimated_cost == pytest.approx(sum(entry["cost"] for entry in stages.values()))
    assert "Course context already available (resumed)" in _messages(repository, job.job_id)


def test_stop_during_draft_cancels_run_without_writing_content(
    repository: JobRepository,
) -> None:
    job = _enqueue(repository)

    def stop_then_draft(request: ModelRequest) -> str:
        repository.stop_job(job.job_id)
        return DRAFT

    script = demo_script()
    script["Creator"] = [stop_then_draft]
    backend = ScriptedBackend(script=script)

    result = _service(repository, backend).process(job.job_id)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert result.outcome is ProcessOutcome.CANCELLED
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == "Stopped by user"
    assert stored.final_content is None
    assert backend.calls_for("Reviewer") == []


def test_budget_exhaustion_releases_job_and_next_run_resumes(
    repository: JobRepository,
) -> None:
    clock = _ManualClock()
    detector_reply = demo_script()["CourseDetector"][0]
    assert isinstance(detector_reply, str)

    def detect_slowly(request: ModelRequest) -> str:
        clock.now += 1_000
        return detector_reply

    script = demo_script()
    script["CourseDetector"] = [detect_slowly]
    backend = ScriptedBackend(script=script)
    job = _enqueue(repository)
    service = _service(repository, backend, clock=clock)

    released = service.process(job.job_id)

    queued = repository.get_job(job.job_id)
    assert queued is not None
    assert released.outcome is ProcessOutcome.RELEASED
    assert "Creator" in released.detail
    assert queued.status is JobStatus.QUEUED
    assert queued.worker_id is None
    assert queued.current_step == Checkpoint.ANALYSIS
    assert queued.course_context is not None
    assert queued.course_context["domain"] == "general"
    assert set(_stages(queued)) == {"CourseDetector"}
    assert backend.calls_for("Creator") == []

    resumed = service.process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert resumed.outcome is ProcessOutcome.COMPLETED
    assert len(backend.calls_for("CourseDetector")) == 1
    assert set(_stages(done)) == {"CourseDetector", "Creator", "Reviewer"}
    messages = _messages(repository, job.job_id)
    assert any(message.startswith("Released back to queue") for message in messages)


def test_refinement_iterations_accumulate_cost_per_stage(repository: JobRepository) -> None:
    patch = (
        "<<<<<<< SEARCH\nFactorial is the classic example\n=======\n"
        "Computing a factorial is the classic example\n>>>>>>> REPLACE"
    )
    script = demo_script()
    script["Creator"] = [DRAFT]
    script["Reviewer"] = [_review(6.0), _review(9.2, needs_polish=False)]
    script["Refiner"] = [patch]
    backend = ScriptedBackend(script=script)
    job = _enqueue(repository)

    result = _service(repository, backend).process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert done.final_content is not None
    assert "Computing a factorial is the classic example" in done.final_content
    assert ">>>>>>>" not in done.final_content

    stages = _stages(done)
    assert stages["Reviewer"]["calls"] == 2
    assert stages["Refiner"]["calls"] == 1
    assert stages["Refiner"]["model"] == PRO
    assert done.estimated_cost == pytest.approx(sum(entry["cost"] for entry in stages.values()))


def test_assignment_questions_are_formatted_validated_and_replaced(
    repository: JobRepository,
) -> None:
    formatted = [
        {
            "questionType": "subjective",
            "contentBody": "Explain recursion.",
            "subjectiveAnswer": "It recurses.",
            "answerExplanation": "Short.",
        },
        {
            "questionType": "mcmc",
            "contentBody": "Which of these functions are naturally recursive?",
            "options": {
                "a": "Factorial",
                "b": "Constant lookup",
                "c": "Tree traversal",
                "d": "Reading a config flag",
            },
            "mcmcAnswer": ["a", "c"],
            "answerExplanation": "Factorial and tree traversal reduce to smaller instances.",
        },
        {
            "questionType": "mcsc",
            "contentBody": "What stops a recursive function from calling itself forever?",
            "options": ["The base case", "A global counter", "The return type", "A try block"],
            "mcscAnswer": "A",
            "answerExplanation": "The base case returns without recursing, ending the calls.",
        },
    ]
    replacement = [
        {
            "questionType": "subjective",
            "contentBody": "Describe how the call stack changes while computing factorial(3).",
            "subjectiveAnswer": "Three frames are pushed, then each returns as the stack unwinds.",
            "answerExplanation": "Tracing pushes and pops shows the base case is reached first.",
        },
    ]
    script = demo_script()
    script["Creator"] = ["## Assignment\n\n1. Questions about recursion follow."]
    script["Formatter"] = [json.dumps(formatted)]
    script["AssignmentSanitizer"] = [json.dumps(replacement)]
    backend = ScriptedBackend(script=script)
    job = _enqueue(
        repository,
        mode=ContentMode.ASSIGNMENT,
        counts=AssignmentCounts(mcsc=1, mcmc=1, subjective=1),
    )

    result = _service(repository, backend).process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert done.assignment_data is not None
    assert [q["questionType"] for q in done.assignment_data] == ["mcsc", "mcmc", "subjective"]
    assert done.assignment_data[0]["mcscAnswer"] == 1
    assert done.assignment_data[1]["mcmcAnswer"] == "1, 3"
    assert done.assignment_data[2]["contentBody"].startswith("Describe how the call stack")
    assert {"Formatter", "AssignmentSanitizer"} <= set(_stages(done))
    assert "3 questions ready (1 removed, 1 replaced)" in _messages(repository, job.job_id)


def test_completion_charges_spent_credits_in_cents(repository: JobRepository) -> None:
    prices = PriceTable(prices={}, default=ModelPricing(input_per_1m=50_000.0, output_per_1m=0.0))
    job = _enqueue(repository)

    _service(repository, ScriptedBackend(script=demo_script()), prices=prices).process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert done.estimated_cost > 0.01
    assert repository.get_spent_credits(done.user_id) == round(done.estimated_cost * 100)


def test_credit_failure_is_logged_and_job_stays_completed(repository: JobRepository) -> None:
    prices = PriceTable(prices={}, default=ModelPricing(input_per_1m=50_000.0, output_per_1m=0.0))
    job = _enqueue(repository)

    result = _service(
        repository,
        ScriptedBackend(script=demo_script()),
        prices=prices,
        credit_sink=_BrokenCredits(),
    ).process(job.job_id)

    assert result.outcome is ProcessOutcome.COMPLETED
    logs = repository.list_logs(job.job_id)
    assert any(
        entry.stage == "Billing" and entry.severity is LogSeverity.WARNING for entry in logs
    )
    assert repository.get_spent_credits("default_user") == 0


def test_resume_at_critique_checkpoint_skips_detection_and_draft(
    repository: JobRepository,
) -> None:
    job = _enqueue(repository)
    outcome, _ = ClaimManager(repository, worker_id="crashed-worker").try_claim(job.job_id)
    assert outcome is ClaimOutcome.CLAIMED
    for kind, value in (
        (ArtifactKind.COURSE_CONTEXT, {"domain": "general", "confidence": 0.9}),
        (ArtifactKind.CONTENT, DRAFT),
    ):
        repository.save_artifact(
            job_id=job.job_id,
            worker_id="crashed-worker",
            kind=kind,
            value=value,
        )
    repository.update_progress(
        job_id=job.job_id,
        worker_id="crashed-worker",
        status=JobStatus.CRITIQUING,
        step=Checkpoint.CRITIQUING,
    )
    repository.release_job(job_id=job.job_id, worker_id="crashed-worker", reason="restart")
    script = demo_script()
    script["Reviewer"] = [_review(9.5, needs_polish=False)]
    backend = ScriptedBackend(script=script)

    result = _service(repository, backend).process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert done.final_content == DRAFT
    assert [call.tag for call in backend.calls] == ["Reviewer"]
    messages = _messages(repository, job.job_id)
    assert "Course context already available (resumed)" in messages
    assert "Draft already available (resumed)" in messages
    assert set(_stages(done)) == {"Reviewer"}


def test_sanitizer_correction_replaces_persisted_draft(repository: JobRepository) -> None:
    corrected = DRAFT.replace(
        "Factorial is the classic example",
        "Fibonacci is the lecture example",
    )
    script = demo_script()
    script["Creator"] = [DRAFT]
    script["Sanitizer"] = [corrected]
    script["Reviewer"] = [_review(9.5, needs_polish=False)]
    backend = ScriptedBackend(script=script)
    job = _enqueue(repository, transcript="We used Fibonacci, not factorial, in class today.")

    result = _service(repository, backend).process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert done.final_content == corrected
    assert "Fibonacci is the lecture example" in backend.calls_for("Reviewer")[0].prompt_text
    assert "Applied transcript corrections" in _messages(repository, job.job_id)
    assert "Sanitizer" in _stages(done)


def test_hung_analysis_stages_time_out_and_pipeline_completes(
    repository: JobRepository,
) -> None:
    script = demo_script()
    script["Analyzer"] = [ScriptedReply(text="{}", delay_seconds=30)]
    script["InstructorQuality"] = [ScriptedReply(text="{}", delay_seconds=30)]
    script["Creator"] = [DRAFT]
    script["Sanitizer"] = [DRAFT]
    script["Reviewer"] = [_review(9.5, needs_polish=False)]
    backend = ScriptedBackend(script=script)
    job = _enqueue(repository, transcript="A lecture that the analysis models never finish.")
    generation = GenerationSettings(analyzer_timeout_seconds=0.2, instructor_timeout_seconds=0.2)

    started = time.monotonic()
    result = _service(repository, backend, generation=generation).process(job.job_id)
    elapsed = time.monotonic() - started

    done = repository.get_job(job.job_id)
    assert done is not None
    assert result.outcome is ProcessOutcome.COMPLETED
    assert elapsed < 10
    assert done.gap_analysis is None
    assert done.instructor_quality is None
    assert done.final_content == DRAFT
    warnings = [
        entry
        for entry in repository.list_logs(job.job_id)
        if entry.severity is LogSeverity.WARNING and "timed out" in entry.message
    ]
    assert {entry.stage for entry in warnings} == {"Analyzer", "InstructorQuality"}
    assert "Analyzer" not in _stages(done)
    assert "InstructorQuality" not in _stages(done)


def test_processing_a_failed_job_leaves_it_untouched(repository: JobRepository) -> None:
    backend = ScriptedBackend(script=demo_script())
    job = _enqueue(repository)
    stopped = repository.stop_job(job.job_id)
    logs_before = _messages(repository, job.job_id)

    result = _service(repository, backend).process(job.job_id)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert result.outcome is ProcessOutcome.ALREADY_FINISHED
    assert result.status is JobStatus.FAILED
    assert stored.status is JobStatus.FAILED
    assert stored.resume_token == stopped.resume_token
    assert stored.error_message == "Stopped by user"
    assert backend.calls == []
    assert _messages(repository, job.job_id) == logs_before


def test_formatted_questions_survive_budget_release_before_sanitizing(
    repository: JobRepository,
) -> None:
    clock = _ManualClock()
    question = {
        "questionType": "mcsc",
        "contentBody": "What stops a recursive function from calling itself forever?",
        "options": {"1": "The base case", "2": "A global counter", "3": "A loop", "4": "A try"},
        "mcscAnswer": 1,
        "answerExplanation": "The base case returns without recursing, ending the calls.",
    }

    def format_slowly(request: ModelRequest) -> str:
        clock.now += 1_000
        return json.dumps([question])

    script = demo_script()
    script["Creator"] = ["## Assignment\n\n1. Questions about recursion follow."]
    script["Reviewer"] = [_review(9.5, needs_polish=False)]
    script["Formatter"] = [format_slowly]
    backend = ScriptedBackend(script=script)
    job = _enqueue(
        repository,
        mode=ContentMode.ASSIGNMENT,
        counts=AssignmentCounts(mcsc=1, mcmc=0, subjective=0),
    )
    service = _service(repository, backend, clock=clock)

    released = service.process(job.job_id)

    queued = repository.get_job(job.job_id)
    assert queued is not None
    assert released.outcome is ProcessOutcome.RELEASED
    assert "AssignmentSanitizer" in released.detail
    assert queued.status is JobStatus.QUEUED
    assert queued.current_step == Checkpoint.FORMATTING
    assert queued.assignment_data == [question]
    assert "Formatter" in _stages(queued)

    resumed = service.process(job.job_id)

    done = repository.get_job(job.job_id)
    assert done is not None
    assert resumed.outcome is ProcessOutcome.COMPLETED
    assert done.assignment_data == [question]
    assert len(backend.calls_for("Formatter")) == 1
    assert len(backend.calls_for("Reviewer")) == 1
    assert _stages(done)["Formatter"]["calls"] == 1
    messages = _messages(repository, job.job_id)
    assert "Assignment already formatted (resumed)" in messages
    assert "1 questions ready (0 removed, 0 replaced)" in messages

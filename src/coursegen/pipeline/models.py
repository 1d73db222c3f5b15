"""Domain models for generation jobs and their pipeline artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DRAFTING = "drafting"
    CRITIQUING = "critiquing"
    REFINING = "refining"
    FORMATTING = "formatting"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset(
    {
        JobStatus.PROCESSING,
        JobStatus.DRAFTING,
        JobStatus.CRITIQUING,
        JobStatus.REFINING,
        JobStatus.FORMATTING,
    },
)
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class Checkpoint(int, Enum):
    """Progress checkpoints written to `current_step`."""

    NONE = 0
    ANALYSIS = 1
    DRAFTING = 2
    CRITIQUING = 3
    REFINING = 4
    FORMATTING = 5
    COMPLETED = 6


class ContentMode(str, Enum):
    LECTURE = "lecture"
    PRE_READ = "pre-read"
    ASSIGNMENT = "assignment"


class LogSeverity(str, Enum):
    INFO = "info"
    STEP = "step"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ClaimOutcome(str, Enum):
    """Result of one claim attempt."""

    CLAIMED = "claimed"
    ALREADY_TERMINAL = "already_terminal"
    ALREADY_ACTIVE = "already_active"
    NOT_FOUND = "not_found"


class ArtifactKind(str, Enum):
    """Persisted artifacts and the column each one lives in."""

    COURSE_CONTEXT = "course_context_json"
    GAP_ANALYSIS = "gap_analysis_json"
    INSTRUCTOR_QUALITY = "instructor_quality_json"
    CONTENT = "final_content"
    ASSIGNMENT_DATA = "assignment_data_json"


@dataclass(slots=True)
class AssignmentCounts:
    mcsc: int = 5
    mcmc: int = 3
    subjective: int = 2

    def to_payload(self) -> dict[str, int]:
        return {"mcsc": self.mcsc, "mcmc": self.mcmc, "subjective": self.subjective}

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> AssignmentCounts:
        if not payload:
            return cls()
        return cls(
            mcsc=int(payload.get("mcsc", 5)),
            mcmc=int(payload.get("mcmc", 3)),
            subjective=int(payload.get("subjective", 2)),
        )


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a generation job."""

    topic: str
    subtopics: list[str]
    mode: ContentMode
    transcript: str | None = None
    assignment_counts: AssignmentCounts | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for the orchestrator and CLI."""

    job_id: str
    user_id: str
    topic: str
    subtopics: list[str]
    mode: ContentMode
    transcript: str | None
    assignment_counts: AssignmentCounts
    status: JobStatus
    current_step: int
    worker_id: str | None
    course_context: dict[str, Any] | None
    gap_analysis: dict[str, Any] | None
    instructor_quality: dict[str, Any] | None
    final_content: str | None
    assignment_data: list[dict[str, Any]] | None
    estimated_cost: float
    cost_details: dict[str, Any] | None
    error_message: str | None
    resume_token: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_content(self) -> bool:
        return bool(self.final_content and self.final_content.strip())


@dataclass(slots=True)
class LogEntryView:
    log_id: int
    job_id: str
    stage: str
    message: str
    severity: LogSeverity
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job plus its activity log."""

    job: JobView
    logs: list[LogEntryView] = field(default_factory=list)


@dataclass(slots=True)
class CostEntry:
    """Accumulated usage and cost of one stage."""

    stage: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    calls: int = 0


class ProcessOutcome(str, Enum):
    """What one `process(job_id)` call did."""

    ALREADY_FINISHED = "already_finished"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"
    COMPLETED = "completed"
    RELEASED = "released"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one `process(job_id)` invocation."""

    job_id: str
    outcome: ProcessOutcome
    status: JobStatus | None = None
    current_step: int | None = None
    total_cost: float = 0.0
    detail: str = ""

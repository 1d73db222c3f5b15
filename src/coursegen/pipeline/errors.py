"""Pipeline failure types."""

from __future__ import annotations


class CoursegenError(RuntimeError):
    """Base class for generation pipeline failures."""


class StageError(CoursegenError):
    """Hard-fail stage failure; the job is marked failed and the error re-raised."""

    def __init__(self, stage: str, step: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.step = step
        self.message = message

    def job_error_message(self) -> str:
        return f"{self.message}\n\nAgent: {self.stage}\nStep: {self.step}"


class ClaimLostError(CoursegenError):
    """A fenced write matched no row: the job was stopped or taken over."""

    def __init__(self, job_id: str, action: str) -> None:
        super().__init__(f"Claim on job {job_id} lost during {action}")
        self.job_id = job_id
        self.action = action


class PersistenceError(CoursegenError):
    """An artifact write kept failing after its retry."""


class BudgetExhaustedError(CoursegenError):
    """The wall-clock budget of one run ran out at a stage boundary."""

    def __init__(self, next_stage: str) -> None:
        super().__init__(f"Budget exhausted before {next_stage}")
        self.next_stage = next_stage

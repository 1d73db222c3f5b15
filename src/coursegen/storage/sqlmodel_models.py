"""SQLModel ORM tables for the generation job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    spent_credits: int = 0


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_generation_jobs_status_updated_at", "status", "updated_at"),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    topic: str = Field(sa_column=Column(Text, nullable=False))
    subtopics_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    mode: str
    transcript: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    assignment_counts_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str
    current_step: int = 0
    worker_id: str | None = None
    course_context_json: str | None = Field(default=None, sa_column=Column(Text))
    gap_analysis_json: str | None = Field(default=None, sa_column=Column(Text))
    instructor_quality_json: str | None = Field(default=None, sa_column=Column(Text))
    final_content: str | None = Field(default=None, sa_column=Column(Text))
    assignment_data_json: str | None = Field(default=None, sa_column=Column(Text))
    estimated_cost: float = 0.0
    cost_details_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    resume_token: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationLog(SQLModel, table=True):
    __tablename__ = "generation_logs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stage: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    severity: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

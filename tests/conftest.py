"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from coursegen.pipeline.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    """Migrated job store in a temporary SQLite file."""

    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def scripted_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    """Route CLI commands to the in-process scripted backend."""

    monkeypatch.setenv("COURSEGEN_LLM_PROVIDER", "scripted")
    monkeypatch.delenv("COURSEGEN_LLM_PRICING", raising=False)
    monkeypatch.delenv("COURSEGEN_USER_ID", raising=False)

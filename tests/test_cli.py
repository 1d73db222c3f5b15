from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from coursegen.main import coursegen

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Job Commands"),
    pytest.mark.usefixtures("scripted_provider"),
]


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(coursegen, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _job_id(output: str) -> str:
    match = re.search(r"job_id=([0-9a-f-]+)", output)
    assert match is not None, output
    return match.group(1)


def test_enqueue_and_process_then_inspect(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    output = _invoke(
        "jobs",
        "enqueue",
        "--db-path",
        db_path,
        "--topic",
        "Recursion",
        "--subtopic",
        "Base case",
        "--subtopic",
        "Recursive step",
        "--process",
    )
    job_id = _job_id(output)

    assert "Job enqueued:" in output
    assert "status=queued" in output
    assert "outcome=completed" in output

    listing = _invoke("jobs", "list", "--db-path", db_path, "--status", "completed")
    assert "Jobs: 1" in listing
    assert job_id in listing

    details = _invoke("jobs", "inspect", "--db-path", db_path, "--job-id", job_id)
    assert f"Job: {job_id}" in details
    assert "Status: completed" in details
    assert "Step: 6" in details
    assert "cost stage=Creator model=gemini-2.5-pro" in details
    assert "Quality threshold met" in details

    payload = json.loads(
        _invoke("jobs", "inspect", "--db-path", db_path, "--job-id", job_id, "--format", "json"),
    )
    assert payload["status"] == "completed"
    assert payload["final_content"].startswith("# Understanding")
    assert payload["estimated_cost"] == pytest.approx(payload["cost_details"]["total_cost"])

    again = _invoke("jobs", "process", "--db-path", db_path, "--job-id", job_id)
    assert "outcome=already_finished" in again


def test_transcript_file_is_read_into_job(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    transcript = tmp_path / "lecture.txt"
    transcript.write_text("Today we trace factorial(3) on the whiteboard.", encoding="utf-8")

    output = _invoke(
        "jobs",
        "enqueue",
        "--db-path",
        db_path,
        "--topic",
        "Recursion",
        "--transcript",
        str(transcript),
    )
    job_id = _job_id(output)

    payload = json.loads(
        _invoke("jobs", "inspect", "--db-path", db_path, "--job-id", job_id, "--format", "json"),
    )
    assert payload["status"] == "queued"
    assert payload["gap_analysis"] is None


def test_stop_then_retry_with_resume_token(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    job_id = _job_id(
        _invoke(
            "jobs",
            "enqueue",
            "--db-path",
            db_path,
            "--topic",
            "Sorting",
            "--mode",
            "assignment",
            "--mcsc",
            "2",
        ),
    )

    stopped = _invoke("jobs", "stop", "--db-path", db_path, "--job-id", job_id)
    token = re.search(r"Resume token: (\w+)", stopped)
    assert "status=failed" in stopped
    assert token is not None

    retried = _invoke(
        "jobs",
        "retry",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--resume-token",
        token.group(1),
        "--process",
    )
    assert f"Job re-queued: {job_id} status=queued" in retried
    assert "outcome=completed" in retried


def test_retry_with_wrong_token_fails(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    job_id = _job_id(_invoke("jobs", "enqueue", "--db-path", db_path, "--topic", "Sorting"))
    _invoke("jobs", "stop", "--db-path", db_path, "--job-id", job_id)

    result = CliRunner().invoke(
        coursegen,
        ["jobs", "retry", "--db-path", db_path, "--job-id", job_id, "--resume-token", "nope"],
    )

    assert result.exit_code != 0
    assert "Resume token does not match" in result.output


def test_stuck_commands_with_nothing_stuck(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    _invoke("jobs", "enqueue", "--db-path", db_path, "--topic", "Sorting")

    assert "Stuck jobs: 0" in _invoke("jobs", "stuck", "--db-path", db_path)
    assert "Processed stuck jobs: 0" in _invoke("jobs", "process-stuck", "--db-path", db_path)


def test_unknown_job_is_reported(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    assert "outcome=not_found" in _invoke("jobs", "process", "--db-path", db_path, "--job-id", "x")
    assert "Job not found: x" in _invoke("jobs", "inspect", "--db-path", db_path, "--job-id", "x")


def test_invalid_configuration_is_a_usage_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("COURSEGEN_MAX_LOOPS", "0")

    result = CliRunner().invoke(
        coursegen,
        ["jobs", "list", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code != 0
    assert "COURSEGEN_MAX_LOOPS" in result.output

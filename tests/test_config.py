from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from coursegen.config import GenerationSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_match_pipeline_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "COURSEGEN_DB_PATH",
        "COURSEGEN_LLM_PROVIDER",
        "COURSEGEN_MAX_DURATION_SECONDS",
        "COURSEGEN_STALE_AFTER_SECONDS",
        "COURSEGEN_QUALITY_THRESHOLD",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".coursegen.db")
    assert settings.backend.provider == "http"
    assert settings.generation.max_duration_seconds == 300
    assert settings.generation.stale_after_seconds == 120
    assert settings.generation.quality_threshold == 9.0
    assert settings.generation.max_loops == 3
    assert settings.generation.creator_timeout_seconds == 240.0
    settings.validate()


def test_environment_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("COURSEGEN_LLM_PROVIDER", " Scripted ")
    monkeypatch.setenv("COURSEGEN_MAX_LOOPS", "5")
    monkeypatch.setenv("COURSEGEN_HEARTBEAT_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("COURSEGEN_LLM_PRICING", "gemini-2.5-pro:1:8")
    monkeypatch.setenv("COURSEGEN_USER_ID", "instructor-7")

    settings = Settings.from_env(db_path=tmp_path / "jobs.db")

    assert settings.db_path == tmp_path / "jobs.db"
    assert settings.backend.provider == "scripted"
    assert settings.generation.max_loops == 5
    assert settings.generation.heartbeat_interval_seconds == 2.5
    assert settings.backend.pricing_overrides == "gemini-2.5-pro:1:8"
    assert settings.user_context.user_id == "instructor-7"
    settings.validate()


@pytest.mark.parametrize(
    ("generation", "message"),
    [
        (GenerationSettings(stale_after_seconds=0), "STALE_AFTER"),
        (GenerationSettings(heartbeat_interval_seconds=200), "shorter than"),
        (GenerationSettings(max_loops=0), "MAX_LOOPS"),
        (GenerationSettings(dedup_threshold=1.5), "DEDUP_THRESHOLD"),
        (GenerationSettings(max_duration_seconds=0), "MAX_DURATION"),
    ],
)
def test_invalid_generation_settings_are_rejected(
    generation: GenerationSettings,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(generation=generation).validate()


def test_invalid_backend_settings_are_rejected() -> None:
    settings = Settings()

    with pytest.raises(ValueError, match="COURSEGEN_LLM_PROVIDER"):
        replace(settings, backend=replace(settings.backend, provider="carrier-pigeon")).validate()
    with pytest.raises(ValueError, match="COURSEGEN_LLM_BASE_URL"):
        replace(settings, backend=replace(settings.backend, base_url="not a url")).validate()
    with pytest.raises(ValueError, match="MAX_RETRIES"):
        replace(settings, backend=replace(settings.backend, max_retries=-1)).validate()

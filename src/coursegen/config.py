"""Runtime configuration for the generation pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_PROVIDERS = ("http", "scripted")


@dataclass(slots=True)
class GenerationSettings:
    """Claim, heartbeat, quality-loop and stage-deadline tunables."""

    stale_after_seconds: int = 120
    heartbeat_interval_seconds: float = 10.0
    max_duration_seconds: int = 300
    quality_threshold: float = 9.0
    max_loops: int = 3
    dedup_threshold: float = 0.85
    analyzer_timeout_seconds: float = 120.0
    instructor_timeout_seconds: float = 90.0
    creator_timeout_seconds: float = 240.0
    refiner_timeout_seconds: float = 180.0
    default_stage_timeout_seconds: float = 120.0
    stuck_batch_limit: int = 10


@dataclass(slots=True)
class BackendSettings:
    """Model backend connection settings."""

    provider: str = "http"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    api_key: str | None = None
    pro_model: str = "gemini-2.5-pro"
    flash_model: str = "gemini-2.5-flash"
    max_tokens: int = 8192
    request_timeout_seconds: float = 120.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    pricing_overrides: str = ""


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".coursegen.db")
    sqlite_busy_timeout_ms: int = 5_000
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("COURSEGEN_DB_PATH", ".coursegen.db")),
            sqlite_busy_timeout_ms=int(os.getenv("COURSEGEN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            generation=GenerationSettings(
                stale_after_seconds=int(os.getenv("COURSEGEN_STALE_AFTER_SECONDS", "120")),
                heartbeat_interval_seconds=float(
                    os.getenv("COURSEGEN_HEARTBEAT_INTERVAL_SECONDS", "10"),
                ),
                max_duration_seconds=int(os.getenv("COURSEGEN_MAX_DURATION_SECONDS", "300")),
                quality_threshold=float(os.getenv("COURSEGEN_QUALITY_THRESHOLD", "9")),
                max_loops=int(os.getenv("COURSEGEN_MAX_LOOPS", "3")),
                dedup_threshold=float(os.getenv("COURSEGEN_DEDUP_THRESHOLD", "0.85")),
                analyzer_timeout_seconds=float(
                    os.getenv("COURSEGEN_ANALYZER_TIMEOUT_SECONDS", "120"),
                ),
                instructor_timeout_seconds=float(
                    os.getenv("COURSEGEN_INSTRUCTOR_TIMEOUT_SECONDS", "90"),
                ),
                creator_timeout_seconds=float(
                    os.getenv("COURSEGEN_CREATOR_TIMEOUT_SECONDS", "240"),
                ),
                refiner_timeout_seconds=float(
                    os.getenv("COURSEGEN_REFINER_TIMEOUT_SECONDS", "180"),
                ),
                default_stage_timeout_seconds=float(
                    os.getenv("COURSEGEN_STAGE_TIMEOUT_SECONDS", "120"),
                ),
                stuck_batch_limit=int(os.getenv("COURSEGEN_STUCK_BATCH_LIMIT", "10")),
            ),
            backend=BackendSettings(
                provider=os.getenv("COURSEGEN_LLM_PROVIDER", "http").strip().lower(),
                base_url=os.getenv(
                    "COURSEGEN_LLM_BASE_URL",
                    "https://generativelanguage.googleapis.com/v1beta/openai",
                ),
                api_key=os.getenv("COURSEGEN_LLM_API_KEY") or None,
                pro_model=os.getenv("COURSEGEN_LLM_PRO_MODEL", "gemini-2.5-pro"),
                flash_model=os.getenv("COURSEGEN_LLM_FLASH_MODEL", "gemini-2.5-flash"),
                max_tokens=int(os.getenv("COURSEGEN_LLM_MAX_TOKENS", "8192")),
                request_timeout_seconds=float(
                    os.getenv("COURSEGEN_LLM_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
                max_retries=int(os.getenv("COURSEGEN_LLM_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("COURSEGEN_LLM_RETRY_BASE_SECONDS", "1.0")),
                pricing_overrides=os.getenv("COURSEGEN_LLM_PRICING", ""),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("COURSEGEN_USER_ID", "default_user"),
                user_name=os.getenv("COURSEGEN_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        generation = self.generation
        if generation.stale_after_seconds <= 0:
            raise ValueError("COURSEGEN_STALE_AFTER_SECONDS must be a positive integer.")
        if generation.heartbeat_interval_seconds <= 0:
            raise ValueError("COURSEGEN_HEARTBEAT_INTERVAL_SECONDS must be positive.")
        if generation.heartbeat_interval_seconds >= generation.stale_after_seconds:
            raise ValueError(
                "COURSEGEN_HEARTBEAT_INTERVAL_SECONDS must be shorter than "
                "COURSEGEN_STALE_AFTER_SECONDS, otherwise live jobs look stalled.",
            )
        if generation.max_loops < 1:
            raise ValueError("COURSEGEN_MAX_LOOPS must be at least 1.")
        if not 0 < generation.dedup_threshold <= 1:
            raise ValueError("COURSEGEN_DEDUP_THRESHOLD must be within (0, 1].")
        if generation.max_duration_seconds <= 0:
            raise ValueError("COURSEGEN_MAX_DURATION_SECONDS must be a positive integer.")

        backend = self.backend
        if backend.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"COURSEGEN_LLM_PROVIDER must be one of {', '.join(SUPPORTED_PROVIDERS)}, "
                f"got {backend.provider!r}.",
            )
        if backend.provider == "http":
            parsed = urlparse(backend.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(f"Invalid COURSEGEN_LLM_BASE_URL: {backend.base_url!r}")
        if backend.max_retries < 0:
            raise ValueError("COURSEGEN_LLM_MAX_RETRIES must be >= 0.")

"""Deterministic model-call failure classification for backend retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    RATE_LIMIT = "rate_limit"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"


RETRYABLE_CLASSES = frozenset({FailureClass.RATE_LIMIT, FailureClass.BACKEND_TRANSIENT})

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient",
    "billing",
    "payment",
    "credits",
    "quota exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "api key not valid",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "is not found for api version",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "resource_exhausted",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_CLASSES


def classify_failure(*, status: int | None, message: str) -> FailureClassification:
    """Classify a failed model call; status codes win over message patterns."""

    haystack = message.lower()

    if status == 429:
        return FailureClassification(FailureClass.RATE_LIMIT, "status_429", None)
    if status is not None and status in TRANSIENT_STATUS_CODES:
        return FailureClassification(
            FailureClass.BACKEND_TRANSIENT,
            f"status_{status}",
            None,
        )
    if status in {401, 403}:
        return FailureClassification(FailureClass.ACCESS_OR_AUTH, f"status_{status}", None)
    if status == 402:
        return FailureClassification(FailureClass.BILLING_OR_QUOTA, "status_402", None)

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.BILLING_OR_QUOTA, "billing_or_quota", pattern)

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.ACCESS_OR_AUTH, "access_or_auth", pattern)

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            FailureClass.MODEL_NOT_AVAILABLE,
            "model_not_available",
            pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(FailureClass.RATE_LIMIT, "rate_limit", pattern)

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            FailureClass.BACKEND_TRANSIENT,
            "generic_transient",
            pattern,
        )

    return FailureClassification(
        FailureClass.BACKEND_NON_RETRYABLE,
        "fallback_non_retryable",
        None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None

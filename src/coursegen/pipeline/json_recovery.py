"""Best-effort JSON recovery from model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json|JSON)?\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class JsonRecoveryError(ValueError):
    """Model output contained no recoverable JSON value."""


def parse_model_json(text: str) -> Any:
    """Parse JSON from model output, tolerating fences, chatter and truncation.

    Raises `JsonRecoveryError` when nothing parseable remains.
    """

    if not text or not text.strip():
        raise JsonRecoveryError("Empty model output")

    stripped = text.strip()
    candidates = [stripped, _strip_fences(stripped)]
    fenced = _FENCED_BLOCK.search(stripped)
    if fenced is not None:
        candidates.append(fenced.group(1).strip())
    extracted = _extract_json_span(candidates[-1]) or _extract_json_span(stripped)
    if extracted is not None:
        candidates.append(extracted)

    for candidate in candidates:
        for variant in (candidate, _repair(candidate)):
            parsed = _try_load(variant)
            if parsed is not None:
                return parsed

    for candidate in reversed(candidates):
        completed = _complete_truncated(_repair(candidate))
        if completed is not None:
            logger.info("Recovered truncated JSON from model output")
            return completed

    preview = stripped if len(stripped) <= 300 else f"{stripped[:150]} ... {stripped[-100:]}"
    raise JsonRecoveryError(f"Could not parse JSON from model output: {preview}")


def parse_model_json_object(text: str) -> dict[str, Any]:
    parsed = parse_model_json(text)
    if not isinstance(parsed, dict):
        raise JsonRecoveryError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def parse_model_json_list(text: str) -> list[Any]:
    """Parse a JSON list; an object wrapping a single list value is unwrapped."""

    parsed = parse_model_json(text)
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        lists = [value for value in parsed.values() if isinstance(value, list)]
        if len(lists) == 1:
            return lists[0]
    raise JsonRecoveryError(f"Expected a JSON list, got {type(parsed).__name__}")


def _try_load(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _strip_fences(text: str) -> str:
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text)).strip()


def _extract_json_span(text: str) -> str | None:
    starts = [index for index in (text.find("{"), text.find("[")) if index != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end <= start:
        return text[start:]
    return text[start : end + 1]


def _repair(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def _complete_truncated(text: str) -> Any:
    """Close open strings, arrays and objects of a cut-off JSON document."""

    closers, in_string, last_safe = _scan(text)
    if not closers and not in_string:
        return None

    tail = '"' if in_string else ""
    attempts = [text + tail + "".join(reversed(closers))]
    prefix = text[:last_safe].rstrip().rstrip(",")
    prefix_closers, _, _ = _scan(prefix)
    attempts.append(prefix + "".join(reversed(prefix_closers)))
    for attempt in attempts:
        parsed = _try_load(_repair(attempt))
        if parsed is not None:
            return parsed
    return None


def _scan(text: str) -> tuple[list[str], bool, int]:
    """Return pending closers, whether a string is open, and the last safe cut index."""

    closers: list[str] = []
    in_string = False
    escaped = False
    last_safe = 0
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            closers.append("}" if char == "{" else "]")
        elif char in "}]":
            if closers:
                closers.pop()
            last_safe = index + 1
        elif char == ",":
            last_safe = index
    return closers, in_string, last_safe

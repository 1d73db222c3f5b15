"""Search/replace patch application for refiner output."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

NO_CHANGES_MARKER = "NO_CHANGES_NEEDED"

_PATCH_BLOCK = re.compile(r"<<<<<<< SEARCH\n(.*?)\n=======\n(.*?)\n>>>>>>>", re.DOTALL)
_AGENT_MARKERS = (
    re.compile(r"<<<<<<< SEARCH\n?"),
    re.compile(r"=======\n?"),
    re.compile(r">>>>>>>\n?"),
    re.compile(r"<<<<<<<"),
    re.compile(r">>>>>>>"),
    re.compile(NO_CHANGES_MARKER + r"\n?"),
)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(slots=True)
class PatchResult:
    content: str
    applied: int = 0
    failed: int = 0


def strip_agent_markers(content: str) -> str:
    """Remove leaked patch markers and collapse the blank lines they leave."""

    result = content
    for pattern in _AGENT_MARKERS:
        result = pattern.sub("", result)
    return _EXCESS_BLANK_LINES.sub("\n\n", result)


def apply_search_replace(original: str, patch: str) -> PatchResult:
    """Apply every SEARCH/REPLACE block of `patch` to `original`.

    Each block replaces only the first occurrence of its search text. A block
    whose search text is absent is retried with surrounding whitespace
    trimmed, and skipped if that also fails.
    """

    original = original.replace("\r\n", "\n")
    patch = patch.replace("\r\n", "\n")
    if NO_CHANGES_MARKER in patch:
        return PatchResult(content=original)

    result = original
    applied = 0
    failed = 0
    for match in _PATCH_BLOCK.finditer(patch):
        search, replace = match.group(1), match.group(2)
        if search and search in result:
            index = result.index(search)
            result = result[:index] + replace + result[index + len(search) :]
            applied += 1
            continue
        trimmed = search.strip()
        if trimmed and trimmed in result:
            index = result.index(trimmed)
            result = result[:index] + replace.strip() + result[index + len(trimmed) :]
            applied += 1
            continue
        logger.warning("Patch block not found in content: %r", search[:50])
        failed += 1

    if applied or failed:
        logger.info("Applied %d patch blocks, %d failed", applied, failed)
    result = strip_agent_markers(result)
    if applied and len(result) > len(original) * 1.5:
        logger.warning(
            "Patched content grew to %d%% of original; replacement may have appended",
            round(len(result) / max(1, len(original)) * 100),
        )
    return PatchResult(content=result, applied=applied, failed=failed)

"""Near-duplicate block and repeated-header removal for generated markdown."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher

DEFAULT_SIMILARITY_THRESHOLD = 0.85
MIN_BLOCK_CHARS = 20
MIN_COMPARABLE_CHARS = 50
LONG_TEXT_CHARS = 1000

_BLOCK_SPLIT = re.compile(r"\n\n+|(?=^#{1,6}\s)", re.MULTILINE)
_WHITESPACE = re.compile(r"\s+")
_HEADER = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(slots=True)
class DedupResult:
    content: str
    removed_count: int = 0
    removed_previews: list[str] = field(default_factory=list)


def similarity(first: str, second: str) -> float:
    """Similarity in [0, 1]: `SequenceMatcher` ratio, or trigram Jaccard for long texts."""

    if not first and not second:
        return 1.0
    if not first or not second:
        return 0.0
    if len(first) > LONG_TEXT_CHARS or len(second) > LONG_TEXT_CHARS:
        return _trigram_similarity(first, second)
    return SequenceMatcher(None, first, second, autojunk=False).ratio()


def is_near_duplicate(first: str, second: str, threshold: float) -> bool:
    """Word-level threshold test; the cheap upper bounds reject most distinct pairs.

    Letter frequencies of any two prose paragraphs are close, so the quick
    ratios only prune when computed over words.
    """

    if not first or not second:
        return similarity(first, second) >= threshold
    if len(first) > LONG_TEXT_CHARS or len(second) > LONG_TEXT_CHARS:
        return _trigram_similarity(first, second) >= threshold
    matcher = SequenceMatcher(None, first.split(), second.split(), autojunk=False)
    return (
        matcher.real_quick_ratio() >= threshold
        and matcher.quick_ratio() >= threshold
        and matcher.ratio() >= threshold
    )


def deduplicate_content(
    content: str,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> DedupResult:
    """Remove later blocks that are near-duplicates of an earlier block."""

    blocks = _split_blocks(content)
    normalized = [_normalize(block) for block in blocks]
    removed: set[int] = set()
    previews: list[str] = []

    for i in range(len(blocks)):
        if i in removed or len(normalized[i]) < MIN_COMPARABLE_CHARS:
            continue
        for j in range(i + 1, len(blocks)):
            if j in removed or len(normalized[j]) < MIN_COMPARABLE_CHARS:
                continue
            if is_near_duplicate(normalized[i], normalized[j], threshold):
                removed.add(j)
                previews.append(blocks[j][:100] + "...")

    if not removed:
        return DedupResult(content=content)

    result = content
    for index in sorted(removed, reverse=True):
        block = blocks[index]
        position = result.rfind(block)
        if position != -1:
            result = result[:position] + result[position + len(block) :]
    result = _EXCESS_BLANK_LINES.sub("\n\n", result).strip()
    return DedupResult(content=result, removed_count=len(removed), removed_previews=previews)


def deduplicate_headers(content: str) -> str:
    """Drop markdown headers that repeat an earlier header of the same level and title."""

    seen: set[str] = set()

    def _keep_first(match: re.Match[str]) -> str:
        key = f"{len(match.group(1))}:{match.group(2).strip().lower()}"
        if key in seen:
            return ""
        seen.add(key)
        return match.group(0)

    return _EXCESS_BLANK_LINES.sub("\n\n", _HEADER.sub(_keep_first, content))


def _split_blocks(content: str) -> list[str]:
    blocks = (block.strip() for block in _BLOCK_SPLIT.split(content))
    return [block for block in blocks if len(block) > MIN_BLOCK_CHARS]


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text.lower()).strip()


def _trigrams(text: str) -> set[str]:
    normalized = _WHITESPACE.sub(" ", text.lower())
    return {normalized[i : i + 3] for i in range(len(normalized) - 2)}


def _trigram_similarity(first: str, second: str) -> float:
    left = _trigrams(first)
    right = _trigrams(second)
    union = len(left | right)
    if union == 0:
        return 0.0
    return len(left & right) / union

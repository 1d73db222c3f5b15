"""Assignment formatting and question validation/replacement."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from coursegen.agents import prompts
from coursegen.agents.base import Agent, AgentCall, AgentOutput
from coursegen.backend.base import CallContext
from coursegen.pipeline.json_recovery import JsonRecoveryError, parse_model_json_list
from coursegen.pipeline.models import AssignmentCounts

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("mcsc", "mcmc", "subjective")
MAX_REPLACEMENT_ATTEMPTS = 3
MIN_BODY_CHARS = 10
MIN_ANSWER_CHARS = 20
_FORBIDDEN_OPTION = re.compile(
    r"^(all of the above|none of the above|both a and b|a and b)$",
    re.IGNORECASE,
)
_LETTERS = {"a": 1, "b": 2, "c": 3, "d": 4}


def normalize_question(raw: dict[str, Any]) -> dict[str, Any]:
    """Coerce common model variations into the canonical question shape."""

    question = dict(raw)
    question["questionType"] = str(question.get("questionType") or "").strip().lower()
    question["contentBody"] = str(question.get("contentBody") or "").strip()

    options = question.get("options")
    if isinstance(options, list):
        options = {str(index): value for index, value in enumerate(options[:4], start=1)}
    if isinstance(options, dict):
        question["options"] = {
            str(_option_number(key) or key): str(value or "").strip()
            for key, value in options.items()
        }

    if "mcscAnswer" in question and question["mcscAnswer"] is not None:
        question["mcscAnswer"] = _option_number(question["mcscAnswer"])
    mcmc = question.get("mcmcAnswer")
    if isinstance(mcmc, list):
        numbers = [_option_number(item) for item in mcmc]
        question["mcmcAnswer"] = ", ".join(str(n) for n in numbers if n is not None)
    elif isinstance(mcmc, str):
        numbers = [_option_number(part) for part in mcmc.split(",")]
        question["mcmcAnswer"] = ", ".join(str(n) for n in numbers if n is not None)
    return question


def validate_question(question: dict[str, Any], index: int) -> list[str]:
    """Return validation issues; an empty list means the question is usable."""

    label = f"Q{index + 1}"
    issues: list[str] = []
    qtype = question.get("questionType")
    body = str(question.get("contentBody") or "").strip()
    if len(body) < MIN_BODY_CHARS:
        issues.append(f"{label}: Question body is missing or too short")
    if qtype not in QUESTION_TYPES:
        issues.append(f"{label}: Invalid questionType")

    if qtype in {"mcsc", "mcmc"}:
        options = question.get("options")
        if not isinstance(options, dict):
            issues.append(f"{label}: Options object is missing")
        else:
            for number in range(1, 5):
                option = str(options.get(str(number)) or "").strip()
                if not option:
                    issues.append(f"{label}: Option {number} is empty")
                elif _FORBIDDEN_OPTION.match(option):
                    issues.append(f"{label}: Option {number} uses forbidden pattern {option!r}")

    if qtype == "mcsc":
        answer = question.get("mcscAnswer")
        if not isinstance(answer, int) or not 1 <= answer <= 4:
            issues.append(f"{label}: mcscAnswer must be number 1-4")
    elif qtype == "mcmc":
        raw = question.get("mcmcAnswer")
        answers = _parse_numbers(raw) if isinstance(raw, str) else []
        if len(answers) < 2:
            issues.append(f"{label}: mcmcAnswer must have at least 2 correct options")
        if any(not 1 <= answer <= 4 for answer in answers):
            issues.append(f"{label}: mcmcAnswer contains invalid option numbers")
    elif qtype == "subjective":
        if len(str(question.get("subjectiveAnswer") or "").strip()) < MIN_ANSWER_CHARS:
            issues.append(f"{label}: subjectiveAnswer is missing or too short")

    if len(str(question.get("answerExplanation") or "").strip()) < MIN_ANSWER_CHARS:
        issues.append(f"{label}: answerExplanation is missing or too short")
    return issues


class Formatter(Agent):
    """Turns assignment content into the structured question list."""

    name = "Formatter"
    system_prompt = prompts.FORMATTER_SYSTEM
    temperature = 0.0

    def format(self, *, content: str, context: CallContext) -> AgentOutput[list[dict[str, Any]]]:
        direct = _as_question_list(content)
        if direct is not None:
            logger.info("Assignment content is already structured, skipping formatter call")
            return AgentOutput(value=direct)
        call = self._generate(prompts.FORMATTER_PROMPT.format(content=content), context)
        questions = _as_question_list(call.output_text)
        if questions is None:
            raise JsonRecoveryError("Formatter output is not a question list")
        return AgentOutput(value=questions, calls=[call])


@dataclass(slots=True)
class SanitizeReport:
    questions: list[dict[str, Any]]
    removed_count: int = 0
    replaced_count: int = 0
    issues: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Slot:
    qtype: str


class AssignmentSanitizer(Agent):
    """Validates questions, regenerates invalid or missing ones, dedups and sorts."""

    name = "AssignmentSanitizer"
    system_prompt = prompts.ASSIGNMENT_REPLACEMENT_SYSTEM
    temperature = 0.7

    def sanitize(  # noqa: C901
        self,
        *,
        questions: list[dict[str, Any]],
        topic: str,
        subtopics: list[str],
        counts: AssignmentCounts,
        context: CallContext,
    ) -> AgentOutput[SanitizeReport]:
        issues: list[str] = []
        valid: list[dict[str, Any]] = []
        pending: list[_Slot] = []
        calls: list[AgentCall] = []

        for index, question in enumerate(questions):
            problems = validate_question(question, index)
            if problems:
                issues.extend(problems)
                qtype = question.get("questionType")
                pending.append(_Slot(qtype if qtype in QUESTION_TYPES else "mcsc"))
            else:
                valid.append(question)
        removed_count = len(pending)

        expected = counts.to_payload()
        for qtype in QUESTION_TYPES:
            have = sum(1 for question in valid if question["questionType"] == qtype)
            queued = sum(1 for slot in pending if slot.qtype == qtype)
            missing = expected[qtype] - have
            pending.extend(_Slot(qtype) for _ in range(max(0, missing - queued)))

        replaced = 0
        attempts = 0
        while pending and attempts < MAX_REPLACEMENT_ATTEMPTS:
            attempts += 1
            logger.info(
                "Replacement attempt %d/%d for %d questions",
                attempts,
                MAX_REPLACEMENT_ATTEMPTS,
                len(pending),
            )
            call = self._generate(
                prompts.ASSIGNMENT_REPLACEMENT_PROMPT.format(
                    topic=topic,
                    subtopics=", ".join(subtopics),
                    count=len(pending),
                    types="\n".join(f"{n}. {slot.qtype}" for n, slot in enumerate(pending, 1)),
                    existing="\n".join(f"- {q['contentBody'][:120]}" for q in valid) or "- (none)",
                ),
                context,
            )
            calls.append(call)
            try:
                candidates = [normalize_question(item) for item in _dict_items(call.output_text)]
            except JsonRecoveryError as error:
                issues.append(f"Replacement attempt {attempts} failed: {error}")
                continue

            still_pending: list[_Slot] = []
            for slot_index, slot in enumerate(pending):
                if slot_index >= len(candidates):
                    still_pending.append(slot)
                    continue
                candidate = candidates[slot_index]
                problems = validate_question(candidate, len(valid))
                if problems:
                    issues.append(f"Replacement attempt {attempts} failed: {'; '.join(problems)}")
                    still_pending.append(slot)
                elif candidate["questionType"] != slot.qtype:
                    still_pending.append(slot)
                else:
                    valid.append(candidate)
                    replaced += 1
            pending = still_pending

        if pending:
            issues.append(
                f"Failed to generate {len(pending)} replacement questions "
                f"after {MAX_REPLACEMENT_ATTEMPTS} attempts",
            )

        unique = _remove_duplicates(valid)
        if len(unique) < len(valid):
            issues.append(f"Removed {len(valid) - len(unique)} duplicate questions")
        unique.sort(key=lambda question: QUESTION_TYPES.index(question["questionType"]))
        report = SanitizeReport(
            questions=unique,
            removed_count=removed_count,
            replaced_count=replaced,
            issues=issues,
        )
        return AgentOutput(value=report, calls=calls)


def _as_question_list(text: str) -> list[dict[str, Any]] | None:
    stripped = text.strip()
    if not stripped.startswith(("[", "{", "```")):
        return None
    try:
        items = _dict_items(stripped)
    except JsonRecoveryError:
        return None
    if not items or not all("questionType" in item for item in items):
        return None
    return [normalize_question(item) for item in items]


def _dict_items(text: str) -> list[dict[str, Any]]:
    return [item for item in parse_model_json_list(text) if isinstance(item, dict)]


def _remove_duplicates(questions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[str] = set()
    unique = []
    for question in questions:
        key = str(question.get("contentBody") or "").lower().strip()[:100]
        if key in seen:
            continue
        seen.add(key)
        unique.append(question)
    return unique


def _option_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip().lower().rstrip(").")
    if text in _LETTERS:
        return _LETTERS[text]
    if text.startswith("option"):
        text = text.removeprefix("option").strip()
    try:
        return int(text)
    except ValueError:
        return None


def _parse_numbers(raw: str) -> list[int]:
    numbers = []
    for part in raw.split(","):
        try:
            numbers.append(int(part.strip()))
        except ValueError:
            continue
    return numbers

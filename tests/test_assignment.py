from __future__ import annotations

import json
from typing import Any

import allure
import pytest

from coursegen.agents.assignment import (
    AssignmentSanitizer,
    Formatter,
    normalize_question,
    validate_question,
)
from coursegen.backend.base import CallContext
from coursegen.backend.scripted import ScriptedBackend
from coursegen.pipeline.json_recovery import JsonRecoveryError
from coursegen.pipeline.models import AssignmentCounts

pytestmark = [
    allure.epic("Generation Pipeline"),
    allure.feature("Assignment Questions"),
]


def _mcsc(body: str = "Which data structure gives O(1) average lookup by key?") -> dict[str, Any]:
    return {
        "questionType": "mcsc",
        "contentBody": body,
        "options": {"1": "Hash map", "2": "Linked list", "3": "Stack", "4": "Queue"},
        "mcscAnswer": 1,
        "answerExplanation": "Hashing maps a key straight to its bucket in constant time.",
    }


def _subjective(body: str = "Explain why binary search needs a sorted list.") -> dict[str, Any]:
    return {
        "questionType": "subjective",
        "contentBody": body,
        "subjectiveAnswer": "It discards half the range by comparing against the middle item.",
        "answerExplanation": "Without ordering the discarded half could hold the target.",
    }


def test_normalize_coerces_common_model_variations() -> None:
    question = normalize_question(
        {
            "questionType": " MCMC ",
            "contentBody": "  Which sorts are stable?  ",
            "options": ["Merge sort", "Quick sort", "Insertion sort", "Heap sort"],
            "mcmcAnswer": ["A", "option 3"],
        },
    )

    assert question["questionType"] == "mcmc"
    assert question["contentBody"] == "Which sorts are stable?"
    assert question["options"] == {
        "1": "Merge sort",
        "2": "Quick sort",
        "3": "Insertion sort",
        "4": "Heap sort",
    }
    assert question["mcmcAnswer"] == "1, 3"
    assert normalize_question({"questionType": "mcsc", "mcscAnswer": "c)"})["mcscAnswer"] == 3


def test_valid_questions_have_no_issues() -> None:
    assert validate_question(_mcsc(), 0) == []
    assert validate_question(_subjective(), 1) == []


def test_validation_reports_each_problem_with_question_label() -> None:
    question = _mcsc(body="Short")
    question["options"]["4"] = "All of the above"
    question["mcscAnswer"] = 7
    question["answerExplanation"] = ""

    issues = validate_question(question, 2)

    assert issues == [
        "Q3: Question body is missing or too short",
        "Q3: Option 4 uses forbidden pattern 'All of the above'",
        "Q3: mcscAnswer must be number 1-4",
        "Q3: answerExplanation is missing or too short",
    ]


def test_mcmc_needs_two_valid_answers() -> None:
    question = normalize_question({**_mcsc(), "questionType": "mcmc", "mcmcAnswer": "2"})
    question.pop("mcscAnswer")

    assert "Q1: mcmcAnswer must have at least 2 correct options" in validate_question(question, 0)
    question["mcmcAnswer"] = "1, 5"
    assert "Q1: mcmcAnswer contains invalid option numbers" in validate_question(question, 0)


def test_formatter_skips_model_call_for_structured_content() -> None:
    backend = ScriptedBackend()

    output = Formatter(backend, model="flash").format(
        content=json.dumps([_mcsc(), _subjective()]),
        context=CallContext(),
    )

    assert [q["questionType"] for q in output.value] == ["mcsc", "subjective"]
    assert output.calls == []
    assert backend.calls == []


def test_formatter_rejects_output_that_is_not_a_question_list() -> None:
    backend = ScriptedBackend(script={"Formatter": ['{"note": "no questions today"}']})

    with pytest.raises(JsonRecoveryError):
        Formatter(backend, model="flash").format(
            content="## Assignment\n\n1. Explain recursion.",
            context=CallContext(),
        )


def test_sanitizer_fills_missing_slots_and_removes_duplicates() -> None:
    backend = ScriptedBackend(
        script={"AssignmentSanitizer": [json.dumps([_subjective("Describe a stable sort.")])]},
    )

    output = AssignmentSanitizer(backend, model="flash").sanitize(
        questions=[_subjective(), _mcsc(), _mcsc()],
        topic="Algorithms",
        subtopics=["Searching", "Sorting"],
        counts=AssignmentCounts(mcsc=2, mcmc=0, subjective=2),
        context=CallContext(),
    )

    report = output.value
    assert [q["questionType"] for q in report.questions] == ["mcsc", "subjective", "subjective"]
    assert report.removed_count == 0
    assert report.replaced_count == 1
    assert "Removed 1 duplicate questions" in report.issues
    assert len(output.calls) == 1
    assert "Searching, Sorting" in backend.calls[0].messages[0].content


def test_sanitizer_gives_up_after_three_attempts() -> None:
    backend = ScriptedBackend(script={"AssignmentSanitizer": ["not json at all"]})

    output = AssignmentSanitizer(backend, model="flash").sanitize(
        questions=[{"questionType": "essay", "contentBody": "Discuss."}],
        topic="Algorithms",
        subtopics=[],
        counts=AssignmentCounts(mcsc=1, mcmc=0, subjective=0),
        context=CallContext(),
    )

    report = output.value
    assert report.questions == []
    assert report.removed_count == 1
    assert len(backend.calls) == 3
    assert report.issues[-1] == "Failed to generate 1 replacement questions after 3 attempts"
    assert "Q1: Invalid questionType" in report.issues

"""Pre-draft analysis agents: course domain, transcript gaps, instructor quality."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from coursegen.agents import prompts
from coursegen.agents.base import TRANSCRIPT_PROMPT_CHARS, Agent, AgentOutput, bullet_list
from coursegen.backend.base import CallContext
from coursegen.pipeline.json_recovery import JsonRecoveryError, parse_model_json_object

COURSE_DETECTOR_TRANSCRIPT_CHARS = 3_000
_CHARACTERISTIC_KEYS = ("exampleTypes", "formats", "vocabulary", "styleHints", "relatableExamples")


class CourseDetector(Agent):
    """Detects the course domain and writing guidelines for it."""

    name = "CourseDetector"
    system_prompt = prompts.COURSE_DETECTOR_SYSTEM
    temperature = 0.3

    def detect(
        self,
        *,
        topic: str,
        subtopics: list[str],
        transcript: str | None,
        context: CallContext,
    ) -> AgentOutput[dict[str, Any]]:
        call = self._generate(
            prompts.COURSE_DETECTOR_PROMPT.format(
                topic=topic,
                subtopics=bullet_list(subtopics),
                transcript_excerpt=(transcript or "")[:COURSE_DETECTOR_TRANSCRIPT_CHARS],
            ),
            context,
        )
        return AgentOutput(value=normalize_course_context(call.output_text), calls=[call])


def normalize_course_context(text: str) -> dict[str, Any]:
    payload = parse_model_json_object(text)
    domain = str(payload.get("domain") or "").strip()
    if not domain:
        raise JsonRecoveryError("Course context has no domain")
    raw_characteristics = payload.get("characteristics")
    characteristics = raw_characteristics if isinstance(raw_characteristics, dict) else {}
    try:
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    voice_model = payload.get("voiceModel")
    return {
        "domain": domain,
        "confidence": max(0.0, min(1.0, confidence)),
        "characteristics": {
            key: _string_list(characteristics.get(key)) for key in _CHARACTERISTIC_KEYS
        },
        "contentGuidelines": str(payload.get("contentGuidelines") or ""),
        "qualityCriteria": str(payload.get("qualityCriteria") or ""),
        "voiceModel": voice_model if isinstance(voice_model, dict) else None,
    }


class Analyzer(Agent):
    """Compares the transcript with the requested subtopics."""

    name = "Analyzer"
    system_prompt = prompts.ANALYZER_SYSTEM
    temperature = 0.0

    def analyze(
        self,
        *,
        subtopics: list[str],
        transcript: str,
        context: CallContext,
    ) -> AgentOutput[dict[str, Any]]:
        call = self._generate(
            prompts.ANALYZER_PROMPT.format(
                subtopics=bullet_list(subtopics),
                transcript=transcript[:TRANSCRIPT_PROMPT_CHARS],
            ),
            context,
        )
        payload = parse_model_json_object(call.output_text)
        missing = payload.get("missingElements")
        value = {
            "covered": _string_list(payload.get("covered")),
            "notCovered": _string_list(payload.get("notCovered")),
            "partiallyCovered": _string_list(payload.get("partiallyCovered")),
            "missingElements": missing if isinstance(missing, dict) else {},
            "transcriptTopics": _string_list(payload.get("transcriptTopics")),
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }
        return AgentOutput(value=value, calls=[call])


class InstructorQuality(Agent):
    """Scores the instructor's delivery in the transcript."""

    name = "InstructorQuality"
    system_prompt = prompts.INSTRUCTOR_QUALITY_SYSTEM
    temperature = 0.3

    def evaluate(
        self,
        *,
        topic: str,
        transcript: str,
        context: CallContext,
    ) -> AgentOutput[dict[str, Any]]:
        call = self._generate(
            prompts.INSTRUCTOR_QUALITY_PROMPT.format(
                topic=topic,
                transcript=transcript[:TRANSCRIPT_PROMPT_CHARS],
            ),
            context,
        )
        payload = parse_model_json_object(call.output_text)
        try:
            score = float(payload.get("overallScore", 0))
        except (TypeError, ValueError) as error:
            raise JsonRecoveryError("Instructor quality score is not numeric") from error
        breakdown = payload.get("breakdown")
        value = {
            "overallScore": score,
            "breakdown": breakdown if isinstance(breakdown, list) else [],
            "strengths": _string_list(payload.get("strengths")),
            "improvementAreas": _string_list(payload.get("improvementAreas")),
        }
        return AgentOutput(value=value, calls=[call])


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]

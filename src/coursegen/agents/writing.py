"""Drafting agents: the streamed creator and the transcript fact-check pass."""

from __future__ import annotations

from typing import Any

from coursegen.agents import prompts
from coursegen.agents.base import TRANSCRIPT_PROMPT_CHARS, Agent, AgentOutput, bullet_list
from coursegen.backend.base import CallContext
from coursegen.pipeline.models import AssignmentCounts, ContentMode


class Creator(Agent):
    """Streams the first full draft."""

    name = "Creator"
    system_prompt = prompts.CREATOR_SYSTEM
    temperature = 0.7

    def create(  # noqa: PLR0913
        self,
        *,
        topic: str,
        subtopics: list[str],
        mode: ContentMode,
        transcript: str | None,
        course_context: dict[str, Any] | None,
        gap_analysis: dict[str, Any] | None,
        instructor_quality: dict[str, Any] | None,
        assignment_counts: AssignmentCounts,
        context: CallContext,
    ) -> AgentOutput[str]:
        prompt = prompts.CREATOR_PROMPT.format(
            topic=topic,
            subtopics=bullet_list(subtopics),
            mode_guidance=prompts.CREATOR_MODE_GUIDANCE[mode.value].format(
                **assignment_counts.to_payload(),
            ),
            domain_guidance=domain_guidance(course_context),
            gap_guidance=_gap_guidance(gap_analysis),
            instructor_guidance=_instructor_guidance(instructor_quality),
            transcript_block=(
                f"Lecture transcript (primary source):\n{transcript[:TRANSCRIPT_PROMPT_CHARS]}"
                if transcript
                else ""
            ),
        )
        call = self._stream(prompt, context)
        return AgentOutput(value=call.output_text.strip(), calls=[call])


class Sanitizer(Agent):
    """Removes claims the transcript contradicts."""

    name = "Sanitizer"
    system_prompt = prompts.SANITIZER_SYSTEM
    temperature = 0.2

    def sanitize(self, *, content: str, transcript: str, context: CallContext) -> AgentOutput[str]:
        call = self._generate(
            prompts.SANITIZER_PROMPT.format(
                transcript=transcript[:TRANSCRIPT_PROMPT_CHARS],
                content=content,
            ),
            context,
        )
        return AgentOutput(value=call.output_text.strip(), calls=[call])


def domain_guidance(course_context: dict[str, Any] | None) -> str:
    if not course_context:
        return ""
    characteristics = course_context.get("characteristics") or {}
    lines = [f"Domain: {course_context.get('domain', 'general')}"]
    if course_context.get("contentGuidelines"):
        lines.append(f"Guidelines: {course_context['contentGuidelines']}")
    examples = characteristics.get("exampleTypes") or []
    if examples:
        lines.append(f"Preferred example types: {', '.join(examples[:3])}")
    hints = characteristics.get("styleHints") or []
    if hints:
        lines.append(f"Style: {', '.join(hints[:3])}")
    return "\n".join(lines)


def _gap_guidance(gap_analysis: dict[str, Any] | None) -> str:
    if not gap_analysis:
        return ""
    lines = []
    if gap_analysis.get("notCovered"):
        lines.append(
            "Not covered in the transcript, explain from first principles: "
            + ", ".join(gap_analysis["notCovered"]),
        )
    if gap_analysis.get("partiallyCovered"):
        lines.append(
            "Partially covered, fill in what is missing: "
            + ", ".join(gap_analysis["partiallyCovered"]),
        )
    return "\n".join(lines)


def _instructor_guidance(instructor_quality: dict[str, Any] | None) -> str:
    if not instructor_quality:
        return ""
    areas = instructor_quality.get("improvementAreas") or []
    if not areas:
        return ""
    return "Compensate for weaknesses in the lecture delivery: " + "; ".join(areas[:5])

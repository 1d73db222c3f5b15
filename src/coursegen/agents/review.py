"""Quality-loop agents: reviewer scoring and search/replace refinement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from coursegen.agents import prompts
from coursegen.agents.base import REVIEW_CONTENT_CHARS, Agent, AgentOutput, bullet_list
from coursegen.agents.writing import domain_guidance
from coursegen.backend.base import CallContext
from coursegen.pipeline.json_recovery import JsonRecoveryError, parse_model_json_object


@dataclass(slots=True)
class ReviewResult:
    score: float
    needs_polish: bool
    feedback: str
    detailed_feedback: list[str] = field(default_factory=list)


class Reviewer(Agent):
    """Scores a draft 1-10 and lists concrete fixes."""

    name = "Reviewer"
    system_prompt = prompts.REVIEWER_SYSTEM
    temperature = 0.2

    def review(
        self,
        *,
        content: str,
        mode: str,
        course_context: dict[str, Any] | None,
        context: CallContext,
    ) -> AgentOutput[ReviewResult]:
        criteria = ""
        if course_context and course_context.get("qualityCriteria"):
            criteria = (
                f"Domain-specific requirements ({course_context.get('domain')}):\n"
                f"{course_context['qualityCriteria']}\n"
            )
        call = self._generate(
            prompts.REVIEWER_PROMPT.format(
                mode=mode,
                domain_criteria=criteria,
                content=content[:REVIEW_CONTENT_CHARS],
            ),
            context,
        )
        return AgentOutput(value=parse_review(call.output_text), calls=[call])


def parse_review(text: str) -> ReviewResult:
    payload = parse_model_json_object(text)
    try:
        score = float(payload["score"])
    except (KeyError, TypeError, ValueError) as error:
        raise JsonRecoveryError("Review has no numeric score") from error
    detailed = payload.get("detailedFeedback")
    needs_polish = payload.get("needsPolish")
    return ReviewResult(
        score=score,
        needs_polish=bool(needs_polish) if needs_polish is not None else True,
        feedback=str(payload.get("feedback") or ""),
        detailed_feedback=[str(item) for item in detailed] if isinstance(detailed, list) else [],
    )


class Refiner(Agent):
    """Streams a search/replace patch addressing reviewer feedback."""

    name = "Refiner"
    system_prompt = prompts.REFINER_SYSTEM
    temperature = 0.3

    def refine(
        self,
        *,
        content: str,
        review: ReviewResult,
        course_context: dict[str, Any] | None,
        context: CallContext,
    ) -> AgentOutput[str]:
        guidance = domain_guidance(course_context)
        call = self._stream(
            prompts.REFINER_PROMPT.format(
                feedback=review.feedback or "(none)",
                detailed_feedback=bullet_list(review.detailed_feedback),
                domain_guidance=f"\n{guidance}\n" if guidance else "",
                content=content,
            ),
            context,
        )
        return AgentOutput(value=call.output_text, calls=[call])

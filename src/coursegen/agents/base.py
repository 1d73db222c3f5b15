"""Shared plumbing for stage agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from coursegen.backend.base import (
    CallContext,
    ChatMessage,
    ModelBackend,
    ModelRequest,
    TokenUsage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSCRIPT_PROMPT_CHARS = 60_000
REVIEW_CONTENT_CHARS = 20_000


@dataclass(slots=True)
class AgentCall:
    """One completed model call, kept for cost accounting."""

    agent: str
    model: str
    prompt_text: str
    output_text: str
    usage: TokenUsage | None = None


@dataclass(slots=True)
class AgentOutput(Generic[T]):
    value: T
    calls: list[AgentCall] = field(default_factory=list)


class Agent:
    """Base class: one named stage bound to a model on a backend."""

    name = "Agent"
    system_prompt = ""
    temperature = 0.7

    def __init__(self, backend: ModelBackend, *, model: str, max_tokens: int = 8192) -> None:
        self._backend = backend
        self.model = model
        self.max_tokens = max_tokens

    def _request(self, prompt: str, *, system: str | None = None) -> ModelRequest:
        return ModelRequest(
            model=self.model,
            system=self.system_prompt if system is None else system,
            messages=[ChatMessage(role="user", content=prompt)],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            tag=self.name,
        )

    def _generate(
        self,
        prompt: str,
        context: CallContext,
        *,
        system: str | None = None,
    ) -> AgentCall:
        request = self._request(prompt, system=system)
        response = self._backend.generate(request, context)
        return AgentCall(
            agent=self.name,
            model=self.model,
            prompt_text=request.prompt_text,
            output_text=response.text,
            usage=response.usage,
        )

    def _stream(
        self,
        prompt: str,
        context: CallContext,
        *,
        system: str | None = None,
    ) -> AgentCall:
        request = self._request(prompt, system=system)
        stream = self._backend.stream(request, context)
        text = stream.collect()
        logger.debug("%s streamed %d chars", self.name, len(text))
        return AgentCall(
            agent=self.name,
            model=self.model,
            prompt_text=request.prompt_text,
            output_text=text,
            usage=stream.usage,
        )


def bullet_list(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"

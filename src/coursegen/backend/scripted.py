"""Deterministic scripted backend for demos and tests.

Replies are keyed by request tag (the stage name); each call consumes the next
scripted reply for its tag and the last one repeats once the script runs out.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from coursegen.backend.base import (
    BackendError,
    CallContext,
    ModelRequest,
    ModelResponse,
    TokenStream,
    TokenUsage,
)

STREAM_CHUNK_CHARS = 64


@dataclass(slots=True)
class ScriptedReply:
    """One scripted model answer, failure or delay."""

    text: str = ""
    usage: TokenUsage | None = None
    error: BackendError | None = None
    delay_seconds: float = 0.0


ReplySpec = str | ScriptedReply | Callable[[ModelRequest], str]


@dataclass(slots=True)
class ScriptedBackend:
    """In-process backend returning scripted replies per tag."""

    script: dict[str, list[ReplySpec]] = field(default_factory=dict)
    default: ReplySpec | None = None
    calls: list[ModelRequest] = field(default_factory=list)
    _cursor: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def generate(self, request: ModelRequest, context: CallContext) -> ModelResponse:
        reply = self._next(request)
        self._wait(reply.delay_seconds, context)
        context.check()
        if reply.error is not None:
            raise reply.error
        return ModelResponse(text=reply.text, usage=reply.usage)

    def stream(self, request: ModelRequest, context: CallContext) -> TokenStream:
        reply = self._next(request)

        def produce(stream: TokenStream) -> None:
            self._wait(reply.delay_seconds, context)
            if reply.error is not None:
                raise reply.error
            stream.usage = reply.usage
            for start in range(0, len(reply.text), STREAM_CHUNK_CHARS):
                if not stream.emit(reply.text[start : start + STREAM_CHUNK_CHARS]):
                    return

        return TokenStream(produce, context=context)

    def calls_for(self, tag: str) -> list[ModelRequest]:
        with self._lock:
            return [call for call in self.calls if call.tag == tag]

    def _next(self, request: ModelRequest) -> ScriptedReply:
        with self._lock:
            self.calls.append(request)
            replies = self.script.get(request.tag)
            if replies:
                index = self._cursor.get(request.tag, 0)
                self._cursor[request.tag] = index + 1
                spec = replies[min(index, len(replies) - 1)]
            elif self.default is not None:
                spec = self.default
            else:
                raise BackendError(f"No scripted reply for tag {request.tag!r}", status=500)
        return _as_reply(spec, request)

    @staticmethod
    def _wait(seconds: float, context: CallContext) -> None:
        if seconds <= 0:
            return
        deadline = time.monotonic() + seconds
        while not context.cancelled and not context.expired:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            context.cancel_event.wait(timeout=min(remaining, 0.05))


def _as_reply(spec: ReplySpec, request: ModelRequest) -> ScriptedReply:
    if isinstance(spec, ScriptedReply):
        return spec
    if isinstance(spec, str):
        return ScriptedReply(text=spec)
    return ScriptedReply(text=spec(request))


def demo_script(topic_hint: str = "the topic") -> dict[str, list[ReplySpec]]:
    """Plausible replies for every stage, used by the `scripted` provider."""

    draft = "\n\n".join(
        [
            f"# Understanding {topic_hint}",
            "## Learning Objectives\n\n- Explain the core idea\n- Apply it to a worked example",
            "## Core Idea\n\nEvery concept in this lecture builds on a small number of "
            "principles that we introduce one at a time, each with an example.",
            "## Worked Example\n\nWe walk through a concrete case step by step and note "
            "where learners typically go wrong.",
            "## Synthesis\n\nThe principles combine into a reusable approach.",
        ],
    )
    return {
        "CourseDetector": [
            json.dumps(
                {
                    "domain": "general",
                    "confidence": 0.8,
                    "characteristics": {
                        "exampleTypes": ["worked examples"],
                        "formats": ["markdown"],
                        "vocabulary": [],
                        "styleHints": ["clear", "direct"],
                        "relatableExamples": [],
                    },
                    "contentGuidelines": "Explain concepts with concrete examples.",
                    "qualityCriteria": "Accurate, well-structured, example-driven.",
                },
            ),
        ],
        "Analyzer": [
            json.dumps(
                {
                    "covered": [],
                    "notCovered": [],
                    "partiallyCovered": [],
                    "transcriptTopics": [],
                },
            ),
        ],
        "InstructorQuality": [
            json.dumps(
                {
                    "overallScore": 8,
                    "breakdown": [],
                    "strengths": ["clear pacing"],
                    "improvementAreas": [],
                },
            ),
        ],
        "Creator": [draft],
        "Sanitizer": [draft],
        "Reviewer": [json.dumps({"score": 9.5, "needsPolish": False, "feedback": "Ready."})],
        "Refiner": ["NO_CHANGES_NEEDED"],
        "Formatter": ["[]"],
        "AssignmentSanitizer": ["[]"],
    }


def scripted_backend_from(replies: Iterable[tuple[str, ReplySpec]]) -> ScriptedBackend:
    """Build a backend from `(tag, reply)` pairs in call order."""

    script: dict[str, list[ReplySpec]] = {}
    for tag, reply in replies:
        script.setdefault(tag, []).append(reply)
    return ScriptedBackend(script=script)

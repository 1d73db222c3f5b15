"""Model backend interface: requests, responses, deadlines and token streams."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Protocol

from coursegen.pipeline.errors import CoursegenError

DEFAULT_STREAM_BUFFER = 256


class BackendError(CoursegenError):
    """Model call failure with the provider status when one is known."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


class StageTimeoutError(TimeoutError):
    """A call context deadline passed before the model call finished."""


class CallCancelledError(RuntimeError):
    """The call context was cancelled by its owner."""


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str


@dataclass(slots=True)
class ModelRequest:
    """One model invocation."""

    model: str
    system: str
    messages: list[ChatMessage]
    max_tokens: int = 8192
    temperature: float = 0.7
    tag: str = ""

    @property
    def prompt_text(self) -> str:
        return "\n".join([self.system, *(message.content for message in self.messages)])


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_reported(self) -> bool:
        return self.input_tokens > 0 or self.output_tokens > 0


@dataclass(slots=True)
class ModelResponse:
    text: str
    usage: TokenUsage | None = None


@dataclass(slots=True)
class CallContext:
    """Deadline plus cancellation signal shared by a stage and its model calls."""

    deadline: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def with_timeout(cls, seconds: float | None) -> CallContext:
        if seconds is None:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def check(self) -> None:
        """Raise if the call should not continue."""

        if self.cancelled:
            raise CallCancelledError("Model call cancelled")
        if self.expired:
            raise StageTimeoutError("Model call deadline exceeded")


StreamProducer = Callable[["TokenStream"], None]


class TokenStream:
    """Bounded chunk channel between a producer thread and one consumer.

    The producer pushes text chunks with `emit`; the consumer iterates the
    stream (or calls `collect`) under the owning `CallContext` deadline.
    `close()` cancels the producer.
    """

    _END = object()

    def __init__(
        self,
        producer: StreamProducer,
        *,
        context: CallContext,
        maxsize: int = DEFAULT_STREAM_BUFFER,
    ) -> None:
        self._context = context
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._error: BaseException | None = None
        self.usage: TokenUsage | None = None
        self._thread = threading.Thread(
            target=self._run,
            args=(producer,),
            daemon=True,
            name="model-stream",
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._context.cancelled

    def emit(self, chunk: str) -> bool:
        """Push one chunk; returns False once the consumer has gone away."""

        while not self.closed:
            try:
                self._queue.put(chunk, timeout=0.1)
            except queue.Full:
                continue
            return True
        return False

    def close(self) -> None:
        self._closed.set()

    def __iter__(self) -> Iterator[str]:
        try:
            while True:
                self._context.check()
                remaining = self._context.remaining()
                wait = 0.1 if remaining is None else min(0.1, remaining)
                try:
                    item = self._queue.get(timeout=wait)
                except queue.Empty:
                    continue
                if item is self._END:
                    if self._error is not None:
                        raise self._error
                    return
                yield str(item)
        finally:
            self.close()

    def collect(self) -> str:
        return "".join(self)

    def _run(self, producer: StreamProducer) -> None:
        try:
            producer(self)
        except Exception as error:  # noqa: BLE001
            self._error = error
        while True:
            try:
                self._queue.put(self._END, timeout=0.1)
            except queue.Full:
                if self.closed:
                    return
                continue
            return


class ModelBackend(Protocol):
    """Protocol implemented by model backends."""

    def generate(self, request: ModelRequest, context: CallContext) -> ModelResponse:
        """Run one non-streaming call."""

    def stream(self, request: ModelRequest, context: CallContext) -> TokenStream:
        """Start one streaming call."""

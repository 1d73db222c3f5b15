"""OpenAI-compatible chat-completions backend over httpx."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import httpx

from coursegen.backend.base import (
    BackendError,
    CallContext,
    ModelRequest,
    ModelResponse,
    StageTimeoutError,
    TokenStream,
    TokenUsage,
)
from coursegen.backend.failure_classifier import classify_failure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_SECONDS = 1.0
MAX_RETRY_DELAY_SECONDS = 30.0
USER_AGENT = "coursegen/1.0"

T = TypeVar("T")


class HttpModelBackend:
    """Chat-completions client with retry on rate limits and transient failures."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._retry_base = retry_base_seconds
        headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def generate(self, request: ModelRequest, context: CallContext) -> ModelResponse:
        payload = _build_payload(request, stream=False)

        def call() -> ModelResponse:
            response = self._client.post(
                "/chat/completions",
                json=payload,
                timeout=self._timeout_for(context),
            )
            _raise_for_status(response)
            body = response.json()
            return ModelResponse(text=_message_text(body), usage=_usage(body.get("usage")))

        return self._with_retries(call, context=context, tag=request.tag)

    def stream(self, request: ModelRequest, context: CallContext) -> TokenStream:
        payload = _build_payload(request, stream=True)

        def produce(stream: TokenStream) -> None:
            started = False

            def call() -> None:
                nonlocal started
                with self._client.stream(
                    "POST",
                    "/chat/completions",
                    json=payload,
                    timeout=self._timeout_for(context),
                ) as response:
                    if response.is_error:
                        response.read()
                        _raise_for_status(response)
                    for line in response.iter_lines():
                        chunk = _parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk.get("usage"):
                            stream.usage = _usage(chunk["usage"])
                        text = _delta_text(chunk)
                        if text:
                            started = True
                            if not stream.emit(text):
                                return

            # Retrying after the first chunk would duplicate output.
            self._with_retries(
                call,
                context=context,
                tag=request.tag,
                can_retry=lambda: not started,
            )

        return TokenStream(produce, context=context)

    def _with_retries(
        self,
        call: Callable[[], T],
        *,
        context: CallContext,
        tag: str,
        can_retry: Callable[[], bool] = lambda: True,
    ) -> T:
        attempt = 0
        while True:
            context.check()
            try:
                return call()
            except httpx.TimeoutException as error:
                if context.expired:
                    raise StageTimeoutError(f"{tag or 'model call'} timed out") from error
                failure = BackendError(f"Request timed out: {error}", status=None)
            except httpx.HTTPError as error:
                failure = BackendError(f"HTTP error: {error}", status=None)
            except BackendError as error:
                failure = error

            classification = classify_failure(status=failure.status, message=failure.message)
            if not classification.retryable or attempt >= self._max_retries or not can_retry():
                logger.warning(
                    "Model call %s failed (%s): %s",
                    tag,
                    classification.failure_class.value,
                    failure.message,
                )
                raise failure
            delay = min(MAX_RETRY_DELAY_SECONDS, self._retry_base * (2**attempt))
            attempt += 1
            logger.info(
                "Model call %s failed (%s), retry %d/%d in %.1fs",
                tag,
                classification.failure_class.value,
                attempt,
                self._max_retries,
                delay,
            )
            remaining = context.remaining()
            if remaining is not None and remaining <= delay:
                raise failure
            if context.cancel_event.wait(timeout=delay):
                raise failure

    def _timeout_for(self, context: CallContext) -> httpx.Timeout:
        remaining = context.remaining()
        seconds = self._timeout_seconds
        if remaining is not None:
            seconds = min(seconds, remaining)
        return httpx.Timeout(max(seconds, 0.001), connect=min(10.0, max(seconds, 0.001)))


def _build_payload(request: ModelRequest, *, stream: bool) -> dict[str, Any]:
    messages = [{"role": "system", "content": request.system}] if request.system else []
    messages.extend({"role": msg.role, "content": msg.content} for msg in request.messages)
    payload: dict[str, Any] = {
        "model": request.model,
        "messages": messages,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "stream": stream,
    }
    if stream:
        payload["stream_options"] = {"include_usage": True}
    return payload


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    detail = response.text[:500] if response.text else response.reason_phrase
    raise BackendError(f"HTTP {response.status_code}: {detail}", status=response.status_code)


def _message_text(body: dict[str, Any]) -> str:
    choices = body.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    return str(message.get("content") or "")


def _delta_text(chunk: dict[str, Any]) -> str:
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    return str(delta.get("content") or "")


def _usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        input_tokens=int(raw.get("prompt_tokens") or 0),
        output_tokens=int(raw.get("completion_tokens") or 0),
    )


def _parse_sse_line(line: str) -> dict[str, Any] | None:
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if not data or data == "[DONE]":
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream line: %s", data[:120])
        return None
    return parsed if isinstance(parsed, dict) else None

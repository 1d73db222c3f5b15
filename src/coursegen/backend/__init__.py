"""Model backend implementations."""

from coursegen.backend.base import (
    BackendError,
    CallContext,
    ModelBackend,
    ModelRequest,
    ModelResponse,
    StageTimeoutError,
    TokenStream,
    TokenUsage,
)
from coursegen.backend.http_backend import HttpModelBackend
from coursegen.backend.scripted import ScriptedBackend, ScriptedReply

__all__ = [
    "BackendError",
    "CallContext",
    "HttpModelBackend",
    "ModelBackend",
    "ModelRequest",
    "ModelResponse",
    "ScriptedBackend",
    "ScriptedReply",
    "StageTimeoutError",
    "TokenStream",
    "TokenUsage",
]

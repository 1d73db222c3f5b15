"""Per-stage deadlines enforced around blocking model calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from coursegen.backend.base import CallContext, StageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_deadline(
    fn: Callable[[CallContext], T],
    *,
    timeout_seconds: float | None,
    label: str,
) -> T:
    """Run `fn` in a worker thread and stop waiting once the deadline passes.

    The call receives a `CallContext` carrying the same deadline; on timeout the
    context is cancelled so backends and streams can wind down, and
    `StageTimeoutError` is raised to the caller. Errors raised by `fn` propagate
    unchanged.
    """

    context = CallContext.with_timeout(timeout_seconds)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{label}")
    future = executor.submit(fn, context)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as error:
        context.cancel()
        logger.warning("%s exceeded its %.0fs deadline", label, timeout_seconds or 0)
        raise StageTimeoutError(
            f"{label} timed out after {timeout_seconds:.0f}s",
        ) from error
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

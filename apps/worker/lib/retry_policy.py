"""
Bounded retry with exponential backoff, applied at stage boundaries around
network collaborators (LLM, PDF renderer, notification transport).
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from packages.shared.errors import TransientTransportFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_before_sleep(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    code = getattr(exc, "code", type(exc).__name__)
    logger.warning(f"Attempt {state.attempt_number} failed ({code}); backing off")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff: float = 0.5
    max_backoff: float = 8.0
    retry_on: tuple[type[BaseException], ...] = (TransientTransportFailure,)
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run *fn*, retrying on ``retry_on`` errors; the last error is re-raised once attempts run out."""
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
            sleep=self.sleep,
            before_sleep=_log_before_sleep,
        )
        return retrying(fn, *args, **kwargs)


def no_sleep(_seconds: float) -> None:
    return None


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: Any, **kwargs: Any) -> T:
    """Run *fn* in a worker thread and give up after *timeout* seconds."""
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        raise TransientTransportFailure(f"Call timed out after {timeout}s", code="TIMEOUT") from exc
    finally:
        # Do not wait on a hung call; the thread is abandoned.
        executor.shutdown(wait=False, cancel_futures=True)

"""Retry policy for calls to external collaborators."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from errors import is_transient_error

LOGGER = logging.getLogger(__name__)

RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "2.0"))

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-delay retry: at most ``max_attempts`` calls, only for retryable errors.

    Anything ``is_retryable`` rejects propagates from the first attempt.
    Exhausting the attempts re-raises the last error.
    """

    max_attempts: int = RETRY_MAX_ATTEMPTS
    delay_seconds: float = RETRY_DELAY_SECONDS
    is_retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], None] = time.sleep

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                LOGGER.warning(
                    "Transient failure in %s on attempt %s/%s, retrying in %.1fs: %s",
                    getattr(fn, "__name__", fn),
                    attempt,
                    attempts,
                    self.delay_seconds,
                    exc,
                )
                self.sleep(self.delay_seconds)
        return fn(*args, **kwargs)

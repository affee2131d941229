from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt of a bounded retry failed."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

    def call(self, operation: Callable[[], T], *, label: str = "operation") -> T:
        for attempt in range(1, self.max_attempts):
            try:
                return operation()
            except Exception as exc:
                self._log_failure(label, attempt, exc)
                if self.backoff_seconds > 0:
                    self.sleep(self.backoff_seconds)
        try:
            return operation()
        except Exception as exc:
            self._log_failure(label, self.max_attempts, exc)
            raise RetryExhaustedError(self.max_attempts, exc) from exc

    def _log_failure(self, label: str, attempt: int, exc: Exception) -> None:
        logger.warning(
            "retry_attempt_failed: %s attempt=%s/%s error=%s",
            label,
            attempt,
            self.max_attempts,
            exc,
        )


MARK_SENT_RETRY_POLICY = RetryPolicy(max_attempts=3, backoff_seconds=0.0)

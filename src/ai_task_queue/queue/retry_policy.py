"""Retry decisions for failed provider calls."""

from __future__ import annotations

from dataclasses import dataclass

from ai_task_queue.queue.models import FailureClass

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS_MS: tuple[int, ...] = (1_000, 2_000, 5_000)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retries with a fixed backoff schedule; the last delay is reused."""

    max_retries: int = DEFAULT_MAX_RETRIES
    delays_ms: tuple[int, ...] = DEFAULT_RETRY_DELAYS_MS

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if not self.delays_ms:
            raise ValueError("delays_ms must contain at least one delay.")
        if any(delay < 0 for delay in self.delays_ms):
            raise ValueError("delays_ms must not contain negative delays.")

    def backoff_ms(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (1-based)."""

        index = min(max(attempt, 1), len(self.delays_ms)) - 1
        return self.delays_ms[index]

    def should_retry(self, failure_class: FailureClass, retry_count: int) -> bool:
        """Whether a task that already retried ``retry_count`` times gets another attempt."""

        return failure_class.is_transient and retry_count < self.max_retries

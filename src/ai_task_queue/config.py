"""Runtime configuration for the AI task queue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ai_task_queue.queue.models import ProviderLimits

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class TaskSettings:
    """Task record settings."""

    retention_days: int = 3
    result_max_chars: int = 500
    error_max_chars: int = 1_000


@dataclass(slots=True)
class DispatcherSettings:
    """Scheduling loop and provider call settings."""

    poll_interval_seconds: float = 0.1
    provider_timeout_seconds: float = 30.0
    max_concurrent_calls: int = 8


@dataclass(slots=True)
class RetrySettings:
    """Retry budget and backoff table for transient failures."""

    max_retries: int = 3
    delays_ms: tuple[int, ...] = (1_000, 2_000, 5_000)


@dataclass(slots=True)
class RecoverySettings:
    """Startup recovery settings."""

    stuck_threshold_seconds: int = 600


@dataclass(slots=True)
class RateLimitSettings:
    """Global per-provider rate limit overrides."""

    overrides: dict[str, ProviderLimits] = field(default_factory=dict)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".ai_task_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    tasks: TaskSettings = field(default_factory=TaskSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AI_TASK_QUEUE_DB_PATH", ".ai_task_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AI_TASK_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("AI_TASK_QUEUE_LOG_LEVEL", "INFO").strip().upper(),
            tasks=TaskSettings(
                retention_days=int(os.getenv("AI_TASK_QUEUE_TASK_RETENTION_DAYS", "3")),
                result_max_chars=int(os.getenv("AI_TASK_QUEUE_RESULT_MAX_CHARS", "500")),
                error_max_chars=int(os.getenv("AI_TASK_QUEUE_ERROR_MAX_CHARS", "1000")),
            ),
            dispatcher=DispatcherSettings(
                poll_interval_seconds=float(
                    os.getenv("AI_TASK_QUEUE_POLL_INTERVAL_SECONDS", "0.1"),
                ),
                provider_timeout_seconds=float(
                    os.getenv("AI_TASK_QUEUE_PROVIDER_TIMEOUT_SECONDS", "30"),
                ),
                max_concurrent_calls=int(os.getenv("AI_TASK_QUEUE_MAX_CONCURRENT_CALLS", "8")),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("AI_TASK_QUEUE_MAX_RETRIES", "3")),
                delays_ms=_collect_retry_delays(),
            ),
            recovery=RecoverySettings(
                stuck_threshold_seconds=int(
                    os.getenv("AI_TASK_QUEUE_STUCK_THRESHOLD_SECONDS", "600"),
                ),
            ),
            rate_limits=RateLimitSettings(overrides=_collect_rate_limit_overrides()),
        )

    def validate(self) -> None:
        """Raise configuration error when a value cannot work."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AI_TASK_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"AI_TASK_QUEUE_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.tasks.retention_days <= 0:
            raise ValueError("AI_TASK_QUEUE_TASK_RETENTION_DAYS must be > 0.")
        if self.tasks.result_max_chars <= 3:
            raise ValueError("AI_TASK_QUEUE_RESULT_MAX_CHARS must be > 3.")
        if self.tasks.error_max_chars <= 3:
            raise ValueError("AI_TASK_QUEUE_ERROR_MAX_CHARS must be > 3.")
        if self.dispatcher.poll_interval_seconds <= 0:
            raise ValueError("AI_TASK_QUEUE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.dispatcher.provider_timeout_seconds <= 0:
            raise ValueError("AI_TASK_QUEUE_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        if self.dispatcher.max_concurrent_calls <= 0:
            raise ValueError("AI_TASK_QUEUE_MAX_CONCURRENT_CALLS must be > 0.")
        if self.retry.max_retries < 0:
            raise ValueError("AI_TASK_QUEUE_MAX_RETRIES must be >= 0.")
        if not self.retry.delays_ms or any(delay < 0 for delay in self.retry.delays_ms):
            raise ValueError(
                "AI_TASK_QUEUE_RETRY_DELAYS_MS must list one or more non-negative delays.",
            )
        if self.recovery.stuck_threshold_seconds <= 0:
            raise ValueError("AI_TASK_QUEUE_STUCK_THRESHOLD_SECONDS must be > 0.")


def _collect_retry_delays() -> tuple[int, ...]:
    raw = os.getenv("AI_TASK_QUEUE_RETRY_DELAYS_MS", "").strip()
    if not raw:
        return RetrySettings().delays_ms
    delays: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            delays.append(int(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid AI_TASK_QUEUE_RETRY_DELAYS_MS entry: {token!r}",
            ) from error
    return tuple(delays)


def _collect_rate_limit_overrides() -> dict[str, ProviderLimits]:
    raw = os.getenv("AI_TASK_QUEUE_RATE_LIMITS", "").strip()
    if not raw:
        return {}

    overrides: dict[str, ProviderLimits] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        pieces = [piece.strip() for piece in token.split("|")]
        if len(pieces) != 3 or not pieces[0]:
            raise ValueError(
                "Invalid AI_TASK_QUEUE_RATE_LIMITS entry: "
                f"{token!r}. Expected format '<provider>|<requests_per_minute>|<tokens_per_minute>'.",
            )
        provider, rpm_raw, tpm_raw = pieces
        try:
            overrides[provider] = ProviderLimits(
                requests_per_minute=int(rpm_raw),
                tokens_per_minute=int(tpm_raw),
            )
        except ValueError as error:
            raise ValueError(
                f"Invalid AI_TASK_QUEUE_RATE_LIMITS value for {provider!r}: {error}",
            ) from error
    return overrides

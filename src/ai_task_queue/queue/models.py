"""Domain models for the AI task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

PROGRESS_CREATED = 10
PROGRESS_QUEUED = 10
PROGRESS_RUNNING = 20
PROGRESS_BULK_END = 90
PROGRESS_COMPLETED = 100


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.FAILED}),
    TaskStatus.QUEUED: frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.QUEUED, TaskStatus.COMPLETED, TaskStatus.FAILED},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class TaskType(str, Enum):
    """Kinds of AI work accepted by the queue."""

    TRANSLATION = "translation"
    TRANSLATION_BULK = "translationBulk"
    FORMATTING = "formatting"
    AI_GENERATION = "aiGeneration"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy and diagnostics."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TRANSIENT = "provider_transient"
    ACCESS_OR_AUTH = "access_or_auth"
    INVALID_REQUEST = "invalid_request"
    BILLING_OR_QUOTA = "billing_or_quota"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    STUCK = "stuck"
    RECOVERY_FAILED = "recovery_failed"
    INTERNAL_ERROR = "internal_error"

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_FAILURE_CLASSES


TRANSIENT_FAILURE_CLASSES = frozenset(
    {FailureClass.TIMEOUT, FailureClass.RATE_LIMITED, FailureClass.PROVIDER_TRANSIENT},
)


class TaskNotFoundError(LookupError):
    """Raised when a task id does not exist in the store."""


class InvalidTransitionError(ValueError):
    """Raised when a caller asks for a backward or unknown status move."""


class ConcurrentTransitionError(RuntimeError):
    """Raised when a transition keeps losing compare-and-set races."""


@dataclass(frozen=True, slots=True)
class TranslationTarget:
    """Single field translated into one locale."""

    task_type: ClassVar[TaskType] = TaskType.TRANSLATION

    resource_type: str
    resource_id: str
    field_type: str
    target_locale: str
    resource_title: str | None = None


@dataclass(frozen=True, slots=True)
class BulkTranslationTarget:
    """One field fanned out over several target locales."""

    task_type: ClassVar[TaskType] = TaskType.TRANSLATION_BULK

    resource_type: str
    resource_id: str
    field_type: str
    target_locales: tuple[str, ...]
    resource_title: str | None = None

    def __post_init__(self) -> None:
        if not self.target_locales:
            raise ValueError("Bulk translation needs at least one target locale.")
        if len(set(self.target_locales)) != len(self.target_locales):
            raise ValueError(f"Duplicate target locales: {', '.join(self.target_locales)}")


@dataclass(frozen=True, slots=True)
class FormattingTarget:
    """Formatting pass over an existing field value."""

    task_type: ClassVar[TaskType] = TaskType.FORMATTING

    resource_type: str
    resource_id: str
    field_type: str
    resource_title: str | None = None


@dataclass(frozen=True, slots=True)
class GenerationTarget:
    """Fresh content generation for one field."""

    task_type: ClassVar[TaskType] = TaskType.AI_GENERATION

    resource_type: str
    resource_id: str
    field_type: str
    resource_title: str | None = None


TaskTarget = TranslationTarget | BulkTranslationTarget | FormattingTarget | GenerationTarget


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting a task."""

    tenant: str
    provider: str
    prompt: str
    target: TaskTarget
    estimated_tokens: int | None = None
    task_id: str | None = None

    @property
    def task_type(self) -> TaskType:
        return self.target.task_type


@dataclass(slots=True)
class TransitionFields:
    """Optional column updates applied together with a status transition."""

    progress: int | None = None
    result: str | None = None
    error: str | None = None
    failure_class: FailureClass | None = None
    retry_count: int | None = None
    run_after: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    dispatcher_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot for callers, dispatcher and recovery."""

    task_id: str
    tenant: str
    task_type: TaskType
    status: TaskStatus
    provider: str | None
    prompt: str | None
    target: TaskTarget
    progress: int
    retry_count: int
    estimated_tokens: int | None
    result: str | None
    error: str | None
    failure_class: FailureClass | None
    dispatcher_id: str | None
    run_after: datetime
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime


@dataclass(slots=True)
class TransitionResult:
    """Outcome of a transition request; no-ops are reported, never dropped."""

    applied: bool
    task: TaskView
    reason: str | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class LocaleResultView:
    """Per-locale outcome of a bulk translation task."""

    task_id: str
    locale: str
    succeeded: bool
    output: str | None
    error: str | None
    failure_class: FailureClass | None
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class ProviderLimits:
    """Per-minute request and token budgets for one provider."""

    requests_per_minute: int
    tokens_per_minute: int

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute must be > 0, got {self.requests_per_minute}")
        if self.tokens_per_minute <= 0:
            raise ValueError(f"tokens_per_minute must be > 0, got {self.tokens_per_minute}")


@dataclass(slots=True)
class QueueStats:
    """Active work counters for observability."""

    by_status: dict[str, int] = field(default_factory=dict)
    by_provider: dict[str, int] = field(default_factory=dict)
    by_tenant: dict[str, int] = field(default_factory=dict)

    @property
    def active(self) -> int:
        return sum(self.by_status.values())


@dataclass(slots=True)
class RecoveryReport:
    """Counters produced by one recovery sweep."""

    recovered: int = 0
    stuck_failed: int = 0
    recovery_failed: int = 0
    skipped_no_credential: int = 0
    already_owned: int = 0

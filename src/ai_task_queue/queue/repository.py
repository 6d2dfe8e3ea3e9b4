"""Persistent task record store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from ai_task_queue.queue.models import (
    ALLOWED_TRANSITIONS,
    PROGRESS_COMPLETED,
    PROGRESS_CREATED,
    BulkTranslationTarget,
    ConcurrentTransitionError,
    FailureClass,
    FormattingTarget,
    GenerationTarget,
    InvalidTransitionError,
    LocaleResultView,
    QueueStats,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskNotFoundError,
    TaskStatus,
    TaskTarget,
    TaskType,
    TaskView,
    TransitionFields,
    TransitionResult,
    TranslationTarget,
)
from ai_task_queue.queue.prompts import estimate_tokens, truncate_text
from ai_task_queue.storage.alembic_runner import upgrade_head
from ai_task_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from ai_task_queue.storage.sqlmodel_models import AiTask, AiTaskEvent, AiTaskLocaleResult

logger = logging.getLogger(__name__)

_MAX_TRANSITION_ATTEMPTS = 5
_ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.RUNNING)
_EVENT_TYPES: dict[tuple[TaskStatus, TaskStatus], str] = {
    (TaskStatus.PENDING, TaskStatus.QUEUED): "admitted",
    (TaskStatus.QUEUED, TaskStatus.QUEUED): "resubmitted",
    (TaskStatus.QUEUED, TaskStatus.RUNNING): "started",
    (TaskStatus.RUNNING, TaskStatus.QUEUED): "retry_scheduled",
    (TaskStatus.RUNNING, TaskStatus.COMPLETED): "completed",
}


class TaskRepository:
    """Task Record Store: the single source of truth for task existence and status."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        retention_days: int = 3,
        result_max_chars: int = 500,
        error_max_chars: int = 1_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.retention_days = retention_days
        self.result_max_chars = result_max_chars
        self.error_max_chars = error_max_chars
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self.clock()

    def create_task(
        self,
        payload: TaskCreate,
        *,
        dispatcher_id: str | None = None,
    ) -> TaskView:
        """Persist a new task in ``pending`` with its immutable prompt and provider."""

        if not payload.tenant.strip():
            raise ValueError("Task tenant must not be empty.")
        if not payload.provider.strip():
            raise ValueError("Task provider must not be empty.")
        if not payload.prompt.strip():
            raise ValueError("Task prompt must not be empty.")
        if payload.estimated_tokens is not None and payload.estimated_tokens <= 0:
            raise ValueError(f"estimated_tokens must be > 0, got {payload.estimated_tokens}")

        now = self.now()
        task_id = payload.task_id or str(uuid4())
        target = payload.target
        with Session(self.engine) as session:
            row = AiTask(
                task_id=task_id,
                tenant=payload.tenant,
                task_type=target.task_type.value,
                status=TaskStatus.PENDING.value,
                provider=payload.provider,
                prompt=payload.prompt,
                resource_type=target.resource_type,
                resource_id=target.resource_id,
                resource_title=target.resource_title,
                field_type=target.field_type,
                target_locale=(
                    target.target_locale if isinstance(target, TranslationTarget) else None
                ),
                target_locales_json=(
                    json.dumps(list(target.target_locales))
                    if isinstance(target, BulkTranslationTarget)
                    else None
                ),
                progress=PROGRESS_CREATED,
                retry_count=0,
                estimated_tokens=payload.estimated_tokens or estimate_tokens(payload.prompt),
                dispatcher_id=dispatcher_id,
                run_after=to_db_datetime(now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
                expires_at=to_db_datetime(now + timedelta(days=self.retention_days)),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "tenant": payload.tenant,
                    "task_type": target.task_type.value,
                    "provider": payload.provider,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def transition(  # noqa: C901
        self,
        task_id: str,
        new_status: TaskStatus,
        fields: TransitionFields | None = None,
        *,
        expected_status: TaskStatus | None = None,
        event_type: str | None = None,
        event_details: dict[str, object] | None = None,
    ) -> TransitionResult:
        """Atomically move a task to ``new_status`` and apply optional field updates."""

        fields = fields or TransitionFields()
        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            now = self.now()
            with Session(self.engine) as session:
                row = self._get_row(session=session, task_id=task_id)
                current = TaskStatus(row.status)
                if current.is_terminal:
                    return TransitionResult(
                        applied=False,
                        task=_to_task_view(row),
                        reason="already_terminal",
                    )
                if expected_status is not None and current != expected_status:
                    return TransitionResult(
                        applied=False,
                        task=_to_task_view(row),
                        reason="status_mismatch",
                    )
                if new_status not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"Task {task_id} cannot move from {current.value} to {new_status.value}.",
                    )

                values = self._transition_values(
                    row=row,
                    new_status=new_status,
                    fields=fields,
                    now=now,
                )
                result = session.exec(
                    sa_update(AiTask)
                    .where(
                        col(AiTask.task_id) == task_id,
                        col(AiTask.status) == current.value,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                resolved_event = event_type or _default_event_type(current, new_status)
                if resolved_event is not None:
                    details: dict[str, object] = dict(event_details or {})
                    if fields.failure_class is not None:
                        details.setdefault("failure_class", fields.failure_class.value)
                    if fields.retry_count is not None:
                        details.setdefault("retry_count", fields.retry_count)
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type=resolved_event,
                        status_from=current,
                        status_to=new_status,
                        details=details,
                    )
                session.commit()
                updated = self._get_row(session=session, task_id=task_id)
                return TransitionResult(applied=True, task=_to_task_view(updated))

        raise ConcurrentTransitionError(
            f"Task state changed concurrently while transitioning (task_id={task_id}).",
        )

    def find_recoverable(self, *, now: datetime) -> list[TaskView]:
        """Pending/queued tasks with persisted prompt and provider that have not expired."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AiTask)
                .where(
                    col(AiTask.status).in_([TaskStatus.PENDING.value, TaskStatus.QUEUED.value]),
                    col(AiTask.prompt).is_not(None),
                    col(AiTask.prompt) != "",
                    col(AiTask.provider).is_not(None),
                    col(AiTask.provider) != "",
                    col(AiTask.expires_at) > to_db_datetime(now),
                )
                .order_by(col(AiTask.created_at).asc(), col(AiTask.task_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def find_stuck(self, *, threshold: datetime) -> list[TaskView]:
        """Running tasks whose last update is older than ``threshold``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AiTask)
                .where(
                    AiTask.status == TaskStatus.RUNNING.value,
                    col(AiTask.updated_at) < to_db_datetime(threshold),
                )
                .order_by(col(AiTask.updated_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def find_dispatchable(
        self,
        *,
        dispatcher_id: str,
        now: datetime,
        limit: int = 100,
    ) -> list[TaskView]:
        """Queued tasks owned by ``dispatcher_id`` whose backoff has elapsed, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AiTask)
                .where(
                    AiTask.dispatcher_id == dispatcher_id,
                    AiTask.status == TaskStatus.QUEUED.value,
                    col(AiTask.run_after) <= to_db_datetime(now),
                )
                .order_by(col(AiTask.created_at).asc(), col(AiTask.task_id).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def find_owned(
        self,
        *,
        dispatcher_id: str,
        status: TaskStatus,
        limit: int = 100,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AiTask)
                .where(
                    AiTask.dispatcher_id == dispatcher_id,
                    AiTask.status == status.value,
                )
                .order_by(col(AiTask.created_at).asc(), col(AiTask.task_id).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def next_run_after(self, *, dispatcher_id: str) -> datetime | None:
        """Earliest ``run_after`` among queued tasks owned by ``dispatcher_id``."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.min(AiTask.run_after)).where(
                    AiTask.dispatcher_id == dispatcher_id,
                    AiTask.status == TaskStatus.QUEUED.value,
                ),
            ).one()
        return to_optional_utc(value)

    def count_owned_active(self, *, dispatcher_id: str) -> int:
        with Session(self.engine) as session:
            value = session.exec(
                select(func.count())
                .select_from(AiTask)
                .where(
                    AiTask.dispatcher_id == dispatcher_id,
                    col(AiTask.status).in_([status.value for status in _ACTIVE_STATUSES]),
                ),
            ).one()
        return int(value or 0)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        tenant: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and tenant."""

        with Session(self.engine) as session:
            statement = select(AiTask).order_by(col(AiTask.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(AiTask.status == status.value)
            if tenant is not None:
                statement = statement.where(AiTask.tenant == tenant)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(select(AiTask).where(AiTask.task_id == task_id)).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(AiTaskEvent)
                .where(AiTaskEvent.task_id == task_id)
                .order_by(col(AiTaskEvent.created_at).asc(), col(AiTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    def record_locale_result(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        locale: str,
        succeeded: bool,
        output: str | None = None,
        error: str | None = None,
        failure_class: FailureClass | None = None,
    ) -> None:
        """Upsert the outcome of one locale of a bulk translation task."""

        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            row = session.exec(
                select(AiTaskLocaleResult).where(
                    AiTaskLocaleResult.task_id == task_id,
                    AiTaskLocaleResult.locale == locale,
                ),
            ).one_or_none()
            if row is None:
                row = AiTaskLocaleResult(task_id=task_id, locale=locale, succeeded=succeeded,
                                         created_at=now, updated_at=now)
            row.succeeded = succeeded
            row.output = output
            row.error = truncate_text(error, self.error_max_chars) if error is not None else None
            row.failure_class = failure_class.value if failure_class is not None else None
            row.updated_at = now
            session.add(row)
            session.commit()

    def list_locale_results(self, *, task_id: str) -> list[LocaleResultView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AiTaskLocaleResult)
                .where(AiTaskLocaleResult.task_id == task_id)
                .order_by(col(AiTaskLocaleResult.id).asc()),
            ).all()
        return [
            LocaleResultView(
                task_id=row.task_id,
                locale=row.locale,
                succeeded=row.succeeded,
                output=row.output,
                error=row.error,
                failure_class=(
                    FailureClass(row.failure_class) if row.failure_class is not None else None
                ),
                updated_at=to_utc_aware_datetime(row.updated_at),
            )
            for row in rows
        ]

    def queue_stats(self, *, tenant: str | None = None) -> QueueStats:
        """Active (pending/queued/running) task counts by status, provider and tenant."""

        stats = QueueStats()
        with Session(self.engine) as session:
            statement = select(AiTask.status, AiTask.provider, AiTask.tenant).where(
                col(AiTask.status).in_([status.value for status in _ACTIVE_STATUSES]),
            )
            if tenant is not None:
                statement = statement.where(AiTask.tenant == tenant)
            rows = session.exec(statement).all()
        for status, provider, row_tenant in rows:
            stats.by_status[status] = stats.by_status.get(status, 0) + 1
            provider_key = provider or "unknown"
            stats.by_provider[provider_key] = stats.by_provider.get(provider_key, 0) + 1
            stats.by_tenant[row_tenant] = stats.by_tenant.get(row_tenant, 0) + 1
        return stats

    def _transition_values(
        self,
        *,
        row: AiTask,
        new_status: TaskStatus,
        fields: TransitionFields,
        now: datetime,
    ) -> dict[str, object]:
        values: dict[str, object] = {
            "status": new_status.value,
            "updated_at": to_db_datetime(now),
        }
        progress = row.progress
        if fields.progress is not None:
            progress = max(progress, min(100, max(0, fields.progress)))
        if new_status == TaskStatus.COMPLETED:
            progress = PROGRESS_COMPLETED
        values["progress"] = progress

        if fields.result is not None:
            values["result"] = truncate_text(fields.result, self.result_max_chars)
        if fields.error is not None:
            values["error"] = truncate_text(fields.error, self.error_max_chars)
        if fields.failure_class is not None:
            values["failure_class"] = fields.failure_class.value
        if fields.retry_count is not None:
            values["retry_count"] = fields.retry_count
        if fields.run_after is not None:
            values["run_after"] = to_db_datetime(fields.run_after)
        if fields.started_at is not None:
            values["started_at"] = to_db_datetime(fields.started_at)
        if fields.dispatcher_id is not None:
            values["dispatcher_id"] = fields.dispatcher_id
        if new_status.is_terminal:
            values["completed_at"] = to_db_datetime(fields.completed_at or now)
        return values

    def _get_row(self, *, session: Session, task_id: str) -> AiTask:
        row = session.exec(select(AiTask).where(AiTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AiTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.now()),
            ),
        )


def _default_event_type(current: TaskStatus, new_status: TaskStatus) -> str | None:
    if new_status == TaskStatus.FAILED:
        return "failed"
    return _EVENT_TYPES.get((current, new_status))


def _to_target(row: AiTask) -> TaskTarget:
    task_type = TaskType(row.task_type)
    resource_type = row.resource_type or ""
    resource_id = row.resource_id or ""
    field_type = row.field_type or ""
    if task_type == TaskType.TRANSLATION:
        return TranslationTarget(
            resource_type=resource_type,
            resource_id=resource_id,
            field_type=field_type,
            target_locale=row.target_locale or "",
            resource_title=row.resource_title,
        )
    if task_type == TaskType.TRANSLATION_BULK:
        locales = json.loads(row.target_locales_json or "[]")
        return BulkTranslationTarget(
            resource_type=resource_type,
            resource_id=resource_id,
            field_type=field_type,
            target_locales=tuple(str(locale) for locale in locales),
            resource_title=row.resource_title,
        )
    if task_type == TaskType.FORMATTING:
        return FormattingTarget(
            resource_type=resource_type,
            resource_id=resource_id,
            field_type=field_type,
            resource_title=row.resource_title,
        )
    return GenerationTarget(
        resource_type=resource_type,
        resource_id=resource_id,
        field_type=field_type,
        resource_title=row.resource_title,
    )


def _to_task_view(row: AiTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        tenant=row.tenant,
        task_type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        provider=row.provider,
        prompt=row.prompt,
        target=_to_target(row),
        progress=row.progress,
        retry_count=row.retry_count,
        estimated_tokens=row.estimated_tokens,
        result=row.result,
        error=row.error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        dispatcher_id=row.dispatcher_id,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=to_optional_utc(row.started_at),
        completed_at=to_optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
    )

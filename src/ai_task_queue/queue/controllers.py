"""Controllers for task queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ai_task_queue.config import Settings
from ai_task_queue.providers.echo import EchoProvider
from ai_task_queue.queue.models import (
    BulkTranslationTarget,
    FormattingTarget,
    GenerationTarget,
    RecoveryReport,
    TaskCreate,
    TaskStatus,
    TaskTarget,
    TaskType,
    TaskView,
    TranslationTarget,
)
from ai_task_queue.queue.repository import TaskRepository
from ai_task_queue.queue.runtime import build_runtime
from ai_task_queue.queue.tenant_settings import TenantSettingsRepository
from ai_task_queue.storage.alembic_runner import upgrade_head


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for storing a task."""

    db_path: Path | None
    tenant: str
    provider: str
    task_type: str
    prompt: str
    resource_type: str
    resource_id: str
    field_type: str
    resource_title: str | None
    locales: tuple[str, ...]
    estimated_tokens: int | None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    tenant: str | None
    limit: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None
    tenant: str | None


@dataclass(slots=True)
class RecoverCommand:
    db_path: Path | None


@dataclass(slots=True)
class ServeCommand:
    """CLI input for running the dispatcher."""

    db_path: Path | None
    until_idle: bool


@dataclass(slots=True)
class TenantProviderCommand:
    """CLI input for tenant provider settings."""

    db_path: Path | None
    tenant: str
    provider: str
    api_key: str | None
    requests_per_minute: int | None
    tokens_per_minute: int | None


@dataclass(slots=True)
class QueueCliController:
    """Coordinates submission, dispatch and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        """Store a pending task; the next ``serve`` picks it up through recovery."""

        settings = _settings(command.db_path)
        payload = TaskCreate(
            tenant=command.tenant,
            provider=command.provider,
            prompt=command.prompt,
            target=_build_target(command),
            estimated_tokens=command.estimated_tokens,
        )
        with _repository(settings) as repository:
            task = repository.create_task(payload)
        return [
            f"Task stored: task_id={task.task_id} type={task.task_type.value} "
            f"status={task.status.value} tokens={task.estimated_tokens}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
            locale_results = repository.list_locale_results(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Tenant: {task.tenant}",
            f"Type: {task.task_type.value}",
            f"Provider: {task.provider or '-'}",
            f"Status: {task.status.value}",
            f"Progress: {task.progress}",
            f"Retries: {task.retry_count}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Result: {task.result or '-'}",
            f"Error: {task.error or '-'}",
            f"Expires: {task.expires_at.isoformat()}",
        ]
        for row in locale_results:
            outcome = "ok" if row.succeeded else f"failed ({row.error or '-'})"
            lines.append(f"  locale {row.locale}: {outcome}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                tenant=command.tenant,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            stats = repository.queue_stats(tenant=command.tenant)

        lines = [f"Active tasks: {stats.active}"]
        for title, counters in (
            ("By status", stats.by_status),
            ("By provider", stats.by_provider),
            ("By tenant", stats.by_tenant),
        ):
            lines.append(f"{title}:")
            lines.extend(f"  {name}: {count}" for name, count in sorted(counters.items()))
        return lines

    def recover(self, command: RecoverCommand) -> list[str]:
        """Fail stuck tasks; pending and queued work is left to the next ``serve``.

        Resubmitting here would hand tasks to a dispatcher that exits with this
        command, taking them away from any running ``serve``.
        """

        settings = _settings(command.db_path)
        runtime = build_runtime(settings, invoker=EchoProvider())
        try:
            report = runtime.recovery.sweep_stuck()
        finally:
            runtime.shutdown()
        return [f"Stuck sweep: stuck_failed={report.stuck_failed}"]

    def serve(self, command: ServeCommand) -> list[str]:
        settings = _settings(command.db_path)
        runtime = build_runtime(settings, invoker=EchoProvider())
        try:
            report = runtime.init()
            signal_name = runtime.serve_forever(until_idle=command.until_idle)
        finally:
            runtime.shutdown()
        lines = [_report_line(report)]
        if signal_name is not None:
            lines.append(f"Stopped by {signal_name}")
        else:
            lines.append("Queue idle, dispatcher stopped")
        return lines

    def set_tenant_provider(self, command: TenantProviderCommand) -> list[str]:
        settings = _settings(command.db_path)
        upgrade_head(settings.db_path)
        tenant_settings = TenantSettingsRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        try:
            tenant_settings.set_provider(
                tenant=command.tenant,
                provider=command.provider,
                api_key=command.api_key,
                requests_per_minute=command.requests_per_minute,
                tokens_per_minute=command.tokens_per_minute,
            )
        finally:
            tenant_settings.close()
        limits = (
            f"{command.requests_per_minute}rpm/{command.tokens_per_minute}tpm"
            if command.requests_per_minute and command.tokens_per_minute
            else "defaults"
        )
        return [
            f"Tenant {command.tenant} provider {command.provider}: "
            f"credential={'set' if command.api_key else 'missing'} limits={limits}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _build_target(command: SubmitCommand) -> TaskTarget:
    task_type = TaskType(command.task_type)
    if task_type == TaskType.TRANSLATION:
        if len(command.locales) != 1:
            raise ValueError("A translation task needs exactly one --locale.")
        return TranslationTarget(
            resource_type=command.resource_type,
            resource_id=command.resource_id,
            field_type=command.field_type,
            target_locale=command.locales[0],
            resource_title=command.resource_title,
        )
    if task_type == TaskType.TRANSLATION_BULK:
        return BulkTranslationTarget(
            resource_type=command.resource_type,
            resource_id=command.resource_id,
            field_type=command.field_type,
            target_locales=command.locales,
            resource_title=command.resource_title,
        )
    target_cls = FormattingTarget if task_type == TaskType.FORMATTING else GenerationTarget
    return target_cls(
        resource_type=command.resource_type,
        resource_id=command.resource_id,
        field_type=command.field_type,
        resource_title=command.resource_title,
    )


def _task_line(task: TaskView) -> str:
    return (
        f"  {task.task_id} tenant={task.tenant} type={task.task_type.value} "
        f"provider={task.provider or '-'} status={task.status.value} "
        f"progress={task.progress} retries={task.retry_count} "
        f"created_at={task.created_at.isoformat()}"
    )


def _report_line(report: RecoveryReport) -> str:
    return (
        "Recovery: "
        f"recovered={report.recovered} stuck_failed={report.stuck_failed} "
        f"recovery_failed={report.recovery_failed} "
        f"skipped_no_credential={report.skipped_no_credential} "
        f"already_owned={report.already_owned}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        retention_days=settings.tasks.retention_days,
        result_max_chars=settings.tasks.result_max_chars,
        error_max_chars=settings.tasks.error_max_chars,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

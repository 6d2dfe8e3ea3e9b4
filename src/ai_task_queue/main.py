"""CLI entrypoint for ai-task-queue."""

import logging
import os
from pathlib import Path

import rich_click as click

from ai_task_queue import __version__
from ai_task_queue.queue.controllers import (
    ListTasksCommand,
    QueueCliController,
    RecoverCommand,
    ServeCommand,
    StatsCommand,
    StatusCommand,
    SubmitCommand,
    TenantProviderCommand,
)
from ai_task_queue.queue.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ai-task-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to AI_TASK_QUEUE_LOG_LEVEL or INFO).",
)
def ai_task_queue(log_level: str | None) -> None:
    """AI task queue CLI."""

    level = (log_level or os.getenv("AI_TASK_QUEUE_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ai_task_queue.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant", required=True, help="Owning shop/account.")
@click.option("--provider", required=True, help="AI provider the task is bound to.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType]),
    default=TaskType.TRANSLATION.value,
    show_default=True,
    help="Task type.",
)
@click.option("--prompt", required=True, help="Fully materialized prompt text.")
@click.option("--resource-type", default="product", show_default=True)
@click.option("--resource-id", default="-", show_default=True)
@click.option("--field-type", default="title", show_default=True)
@click.option("--resource-title", default=None)
@click.option(
    "--locale",
    "locales",
    multiple=True,
    help="Target locale. Repeat for translationBulk.",
)
@click.option(
    "--estimated-tokens",
    type=click.IntRange(min=1),
    default=None,
    help="Token estimate for rate limiting (defaults to prompt length / 4).",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    tenant: str,
    provider: str,
    task_type: str,
    prompt: str,
    resource_type: str,
    resource_id: str,
    field_type: str,
    resource_title: str | None,
    locales: tuple[str, ...],
    estimated_tokens: int | None,
) -> None:
    """Store a pending task for the next `serve` to recover and dispatch."""

    try:
        lines = QUEUE_CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                tenant=tenant,
                provider=provider,
                task_type=task_type,
                prompt=prompt,
                resource_type=resource_type,
                resource_id=resource_id,
                field_type=field_type,
                resource_title=resource_title,
                locales=locales,
                estimated_tokens=estimated_tokens,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@ai_task_queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def status(db_path: Path | None, task_id: str) -> None:
    """Show one task with its locale results and event trail."""

    _emit_lines(QUEUE_CONTROLLER.status(StatusCommand(db_path=db_path, task_id=task_id)))


@ai_task_queue.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([value.value for value in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--tenant", default=None, help="Optional tenant filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def tasks(db_path: Path | None, status_filter: str | None, tenant: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        QUEUE_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status_filter.lower() if status_filter else None,
                tenant=tenant,
                limit=limit,
            ),
        ),
    )


@ai_task_queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant", default=None, help="Optional tenant filter.")
def stats(db_path: Path | None, tenant: str | None) -> None:
    """Show active task counts by status, provider and tenant."""

    _emit_lines(QUEUE_CONTROLLER.stats(StatsCommand(db_path=db_path, tenant=tenant)))


@ai_task_queue.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def recover(db_path: Path | None) -> None:
    """Fail tasks stuck in running; pending and queued tasks wait for `serve`."""

    _emit_lines(QUEUE_CONTROLLER.recover(RecoverCommand(db_path=db_path)))


@ai_task_queue.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Exit once no owned task is pending, queued or running.",
)
def serve(db_path: Path | None, until_idle: bool) -> None:
    """Recover, then dispatch tasks with the local echo provider until stopped."""

    _emit_lines(QUEUE_CONTROLLER.serve(ServeCommand(db_path=db_path, until_idle=until_idle)))


@ai_task_queue.group()
def tenant() -> None:
    """Tenant settings commands."""


@tenant.command("set-provider")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant", "tenant_name", required=True, help="Tenant (shop/account).")
@click.option("--provider", required=True, help="Provider name.")
@click.option("--api-key", default=None, help="Credential; omit to clear it.")
@click.option("--rpm", type=click.IntRange(min=1), default=None, help="Requests per minute.")
@click.option("--tpm", type=click.IntRange(min=1), default=None, help="Tokens per minute.")
def tenant_set_provider(  # noqa: PLR0913
    db_path: Path | None,
    tenant_name: str,
    provider: str,
    api_key: str | None,
    rpm: int | None,
    tpm: int | None,
) -> None:
    """Store a tenant's credential and optional limits for one provider."""

    _emit_lines(
        QUEUE_CONTROLLER.set_tenant_provider(
            TenantProviderCommand(
                db_path=db_path,
                tenant=tenant_name,
                provider=provider,
                api_key=api_key,
                requests_per_minute=rpm,
                tokens_per_minute=tpm,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ai_task_queue()

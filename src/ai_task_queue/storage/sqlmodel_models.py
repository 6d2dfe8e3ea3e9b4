"""SQLModel ORM tables for task queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AiTask(SQLModel, table=True):
    __tablename__ = "ai_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_ai_tasks_tenant_status", "tenant", "status"),
        Index("idx_ai_tasks_status_created", "status", "created_at"),
        Index("idx_ai_tasks_dispatch", "dispatcher_id", "status", "run_after"),
        Index("idx_ai_tasks_expires_at", "expires_at"),
    )

    task_id: str = Field(primary_key=True)
    tenant: str
    task_type: str
    status: str
    provider: str | None = None
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    resource_type: str | None = None
    resource_id: str | None = None
    resource_title: str | None = None
    field_type: str | None = None
    target_locale: str | None = None
    target_locales_json: str | None = Field(default=None, sa_column=Column(Text))
    progress: int = Field(default=0)
    retry_count: int = Field(default=0)
    estimated_tokens: int | None = None
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    dispatcher_id: str | None = None
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiTaskEvent(SQLModel, table=True):
    __tablename__ = "ai_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ai_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("ai_tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiTaskLocaleResult(SQLModel, table=True):
    __tablename__ = "ai_task_locale_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "locale", name="uq_ai_task_locale_results_task_locale"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("ai_tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    locale: str
    succeeded: bool
    output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TenantProviderSettings(SQLModel, table=True):
    __tablename__ = "tenant_provider_settings"  # type: ignore[bad-override]

    tenant: str = Field(primary_key=True)
    provider: str = Field(primary_key=True)
    api_key: str | None = Field(default=None, sa_column=Column(Text))
    max_requests_per_minute: int | None = None
    max_tokens_per_minute: int | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

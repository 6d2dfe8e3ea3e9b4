"""AI task queue baseline: tasks, events, bulk locale results, tenant provider settings."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ai_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("tenant", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("resource_title", sa.String(), nullable=True),
        sa.Column("field_type", sa.String(), nullable=True),
        sa.Column("target_locale", sa.String(), nullable=True),
        sa.Column("target_locales_json", sa.Text(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_tokens", sa.Integer(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("dispatcher_id", sa.String(), nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("idx_ai_tasks_tenant_status", "ai_tasks", ["tenant", "status"], unique=False)
    op.create_index(
        "idx_ai_tasks_status_created",
        "ai_tasks",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_ai_tasks_dispatch",
        "ai_tasks",
        ["dispatcher_id", "status", "run_after"],
        unique=False,
    )
    op.create_index("idx_ai_tasks_expires_at", "ai_tasks", ["expires_at"], unique=False)

    op.create_table(
        "ai_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["ai_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_ai_task_events_task_time",
        "ai_task_events",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "ai_task_locale_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("locale", sa.String(), nullable=False),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["ai_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", "locale", name="uq_ai_task_locale_results_task_locale"),
    )

    op.create_table(
        "tenant_provider_settings",
        sa.Column("tenant", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("max_requests_per_minute", sa.Integer(), nullable=True),
        sa.Column("max_tokens_per_minute", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant", "provider"),
    )


def downgrade() -> None:
    op.drop_table("tenant_provider_settings")
    op.drop_table("ai_task_locale_results")
    op.drop_index("idx_ai_task_events_task_time", table_name="ai_task_events")
    op.drop_table("ai_task_events")
    op.drop_index("idx_ai_tasks_expires_at", table_name="ai_tasks")
    op.drop_index("idx_ai_tasks_dispatch", table_name="ai_tasks")
    op.drop_index("idx_ai_tasks_status_created", table_name="ai_tasks")
    op.drop_index("idx_ai_tasks_tenant_status", table_name="ai_tasks")
    op.drop_table("ai_tasks")

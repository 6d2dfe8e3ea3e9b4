"""Tenant provider credentials and per-tenant rate limit overrides."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from sqlmodel import Session, select

from ai_task_queue.queue.models import ProviderLimits
from ai_task_queue.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from ai_task_queue.storage.sqlmodel_models import TenantProviderSettings


class TenantSettingsSource(Protocol):
    """What recovery needs to know about a tenant's current settings."""

    def has_credential(self, tenant: str, provider: str) -> bool:
        """Whether ``tenant`` holds a usable credential for ``provider``."""

    def load_limits(self, tenant: str) -> dict[str, ProviderLimits]:
        """Per-provider limits currently configured for ``tenant``."""


class TenantSettingsRepository:
    """SQLite-backed tenant settings."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def has_credential(self, tenant: str, provider: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(TenantProviderSettings, (tenant, provider))
        return row is not None and bool((row.api_key or "").strip())

    def load_limits(self, tenant: str) -> dict[str, ProviderLimits]:
        """Limits for providers where both budgets are set; others keep defaults."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TenantProviderSettings).where(TenantProviderSettings.tenant == tenant),
            ).all()
        return {
            row.provider: ProviderLimits(
                requests_per_minute=row.max_requests_per_minute,
                tokens_per_minute=row.max_tokens_per_minute,
            )
            for row in rows
            if row.max_requests_per_minute and row.max_tokens_per_minute
        }

    def set_provider(  # noqa: PLR0913
        self,
        *,
        tenant: str,
        provider: str,
        api_key: str | None = None,
        requests_per_minute: int | None = None,
        tokens_per_minute: int | None = None,
    ) -> None:
        """Create or replace one tenant/provider settings row."""

        if not tenant.strip() or not provider.strip():
            raise ValueError("Tenant and provider must not be empty.")
        with Session(self.engine) as session:
            row = session.get(TenantProviderSettings, (tenant, provider))
            if row is None:
                row = TenantProviderSettings(
                    tenant=tenant,
                    provider=provider,
                    updated_at=to_db_datetime(utc_now()),
                )
            row.api_key = api_key
            row.max_requests_per_minute = requests_per_minute
            row.max_tokens_per_minute = tokens_per_minute
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ai_task_queue.queue.models import ProviderLimits
from ai_task_queue.queue.tenant_settings import TenantSettingsRepository
from ai_task_queue.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("AI Task Queue"),
    allure.feature("Tenant Settings"),
]


@pytest.fixture()
def tenant_repository(tmp_path: Path):
    db_path = tmp_path / "tenants.db"
    upgrade_head(db_path)
    repository = TenantSettingsRepository(db_path)
    try:
        yield repository
    finally:
        repository.close()


def test_credential_requires_non_empty_key(tenant_repository) -> None:
    tenant_repository.set_provider(tenant="shop-a", provider="openai", api_key="sk-live")
    tenant_repository.set_provider(tenant="shop-a", provider="claude", api_key="   ")

    assert tenant_repository.has_credential("shop-a", "openai")
    assert not tenant_repository.has_credential("shop-a", "claude")
    assert not tenant_repository.has_credential("shop-a", "gemini")
    assert not tenant_repository.has_credential("shop-b", "openai")


def test_load_limits_returns_only_fully_configured_providers(tenant_repository) -> None:
    tenant_repository.set_provider(
        tenant="shop-a",
        provider="openai",
        api_key="sk-live",
        requests_per_minute=20,
        tokens_per_minute=4_000,
    )
    tenant_repository.set_provider(
        tenant="shop-a",
        provider="gemini",
        api_key="g-key",
        requests_per_minute=5,
    )
    tenant_repository.set_provider(
        tenant="shop-b",
        provider="openai",
        requests_per_minute=1,
        tokens_per_minute=1,
    )

    assert tenant_repository.load_limits("shop-a") == {"openai": ProviderLimits(20, 4_000)}


def test_set_provider_replaces_existing_row(tenant_repository) -> None:
    tenant_repository.set_provider(
        tenant="shop-a",
        provider="openai",
        api_key="sk-old",
        requests_per_minute=20,
        tokens_per_minute=4_000,
    )
    tenant_repository.set_provider(tenant="shop-a", provider="openai", api_key=None)

    assert not tenant_repository.has_credential("shop-a", "openai")
    assert tenant_repository.load_limits("shop-a") == {}


def test_set_provider_rejects_blank_names(tenant_repository) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        tenant_repository.set_provider(tenant=" ", provider="openai")

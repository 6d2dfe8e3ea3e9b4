from __future__ import annotations

import allure
import pytest

from ai_task_queue.providers import EchoProvider, ProviderError, ProviderRegistry

pytestmark = [
    allure.epic("AI Task Queue"),
    allure.feature("Providers"),
]


def test_echo_provider_is_deterministic() -> None:
    provider = EchoProvider()

    assert provider.invoke("demo", "  Hello  ", 1.0) == "[demo] Hello"


def test_echo_provider_simulates_http_errors() -> None:
    with pytest.raises(ProviderError) as raised:
        EchoProvider().invoke("demo", "Hello [[error:429]]", 1.0)

    assert raised.value.status_code == 429


def test_registry_routes_by_provider_name() -> None:
    registry = ProviderRegistry(
        {
            "openai": lambda prompt, timeout: f"openai:{prompt}:{timeout:g}",
            "claude": lambda prompt, _: f"claude:{prompt}",
        },
    )

    assert registry.providers == ("claude", "openai")
    assert registry.invoke("openai", "hi", 2.5) == "openai:hi:2.5"

    with pytest.raises(ProviderError) as raised:
        registry.invoke("grok", "hi", 1.0)
    assert raised.value.status_code == 400

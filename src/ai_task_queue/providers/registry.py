"""Route provider calls to per-provider handlers."""

from __future__ import annotations

from collections.abc import Callable, Mapping

from ai_task_queue.providers.base import ProviderError

ProviderHandler = Callable[[str, float], str]


class ProviderRegistry:
    """Invoker that dispatches by provider name."""

    def __init__(self, handlers: Mapping[str, ProviderHandler]) -> None:
        self._handlers = dict(handlers)

    @property
    def providers(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def invoke(self, provider: str, prompt: str, timeout_seconds: float) -> str:
        handler = self._handlers.get(provider)
        if handler is None:
            raise ProviderError(f"Unknown provider: {provider}", status_code=400)
        return handler(prompt, timeout_seconds)

"""AI provider invocation adapters."""

from ai_task_queue.providers.base import ProviderError, ProviderInvoker, ProviderTimeoutError
from ai_task_queue.providers.echo import EchoProvider
from ai_task_queue.providers.registry import ProviderRegistry

__all__ = [
    "EchoProvider",
    "ProviderError",
    "ProviderInvoker",
    "ProviderRegistry",
    "ProviderTimeoutError",
]

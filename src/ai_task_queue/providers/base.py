"""Provider interface for task execution."""

from __future__ import annotations

from typing import Protocol


class ProviderError(Exception):
    """Provider call failed; ``status_code`` carries the HTTP-like code when known."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its time bound."""


class ProviderInvoker(Protocol):
    """Protocol implemented by provider adapters."""

    def invoke(self, provider: str, prompt: str, timeout_seconds: float) -> str:
        """Send one prompt to ``provider`` and return the produced text."""

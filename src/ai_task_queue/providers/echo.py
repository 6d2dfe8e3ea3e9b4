"""Local deterministic provider for demos and integration tests."""

from __future__ import annotations

import re

from ai_task_queue.providers.base import ProviderError

_ERROR_MARKER = re.compile(r"\[\[error:(\d{3})\]\]")


class EchoProvider:
    """Echo the prompt back, or fail when it carries an ``[[error:<code>]]`` marker."""

    def invoke(self, provider: str, prompt: str, timeout_seconds: float) -> str:
        del timeout_seconds
        match = _ERROR_MARKER.search(prompt)
        if match is not None:
            code = int(match.group(1))
            raise ProviderError(f"{provider} returned HTTP {code}", status_code=code)
        return f"[{provider}] {prompt.strip()}"

"""Prompt helpers shared by submission and dispatch."""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4
TARGET_LOCALE_PLACEHOLDER = "{target_locale}"


def estimate_tokens(prompt: str) -> int:
    """Rough token estimate used when the caller does not provide one."""

    return max(1, math.ceil(len(prompt) / CHARS_PER_TOKEN))


def render_locale_prompt(prompt: str, locale: str) -> str:
    """Materialize the per-locale prompt of a bulk translation task."""

    if TARGET_LOCALE_PLACEHOLDER in prompt:
        return prompt.replace(TARGET_LOCALE_PLACEHOLDER, locale)
    return f"{prompt.rstrip()}\n\nTarget locale: {locale}"


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[: max_chars - 3] + "..."

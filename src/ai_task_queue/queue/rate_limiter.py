"""Per-(tenant, provider) sliding-window request and token budgets."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from ai_task_queue.queue.models import ProviderLimits

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0

DEFAULT_PROVIDER_LIMITS: dict[str, ProviderLimits] = {
    "huggingface": ProviderLimits(requests_per_minute=100, tokens_per_minute=1_000_000),
    "gemini": ProviderLimits(requests_per_minute=15, tokens_per_minute=1_000_000),
    "claude": ProviderLimits(requests_per_minute=5, tokens_per_minute=40_000),
    "openai": ProviderLimits(requests_per_minute=500, tokens_per_minute=200_000),
    "grok": ProviderLimits(requests_per_minute=60, tokens_per_minute=100_000),
    "deepseek": ProviderLimits(requests_per_minute=60, tokens_per_minute=100_000),
}
FALLBACK_PROVIDER_LIMITS = ProviderLimits(requests_per_minute=60, tokens_per_minute=100_000)


@dataclass(slots=True, eq=False)
class UsageEntry:
    """One admitted request inside a window."""

    at: float
    tokens: int


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    """Outcome of ``RateLimiter.try_admit``."""

    ok: bool
    wait_ms: int = 0
    exceeds_budget: bool = False
    entry: UsageEntry | None = None


@dataclass(slots=True)
class _Window:
    entries: deque[UsageEntry] = field(default_factory=deque)
    tokens: int = 0

    def prune(self, *, now: float, window_seconds: float) -> None:
        while self.entries and now - self.entries[0].at >= window_seconds:
            expired = self.entries.popleft()
            self.tokens -= expired.tokens


class RateLimiter:
    """Admission control; check-and-record is atomic under a single lock."""

    def __init__(
        self,
        *,
        default_limits: Mapping[str, ProviderLimits] | None = None,
        fallback_limits: ProviderLimits = FALLBACK_PROVIDER_LIMITS,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._defaults = dict(DEFAULT_PROVIDER_LIMITS if default_limits is None else default_limits)
        self._fallback = fallback_limits
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[tuple[str, str], _Window] = {}
        self._tenant_limits: dict[str, dict[str, ProviderLimits]] = {}
        self._warned_providers: set[str] = set()
        self._last_eviction = clock()

    def try_admit(self, tenant: str, provider: str, estimated_tokens: int) -> AdmissionDecision:
        """Admit one request when both budgets have headroom, otherwise report the wait."""

        tokens = max(0, estimated_tokens)
        with self._lock:
            limits = self._limits_locked(tenant, provider)
            if tokens > limits.tokens_per_minute:
                return AdmissionDecision(ok=False, exceeds_budget=True)

            now = self._clock()
            self._evict_idle_locked(now)
            window = self._windows.setdefault((tenant, provider), _Window())
            window.prune(now=now, window_seconds=self._window_seconds)
            if _fits(window, limits, tokens):
                entry = UsageEntry(at=now, tokens=tokens)
                window.entries.append(entry)
                window.tokens += tokens
                return AdmissionDecision(ok=True, entry=entry)

            return AdmissionDecision(ok=False, wait_ms=self._wait_ms(window, limits, tokens, now))

    def release(self, tenant: str, provider: str, decision: AdmissionDecision) -> None:
        """Return an admitted slot that was not used."""

        if decision.entry is None:
            return
        with self._lock:
            window = self._windows.get((tenant, provider))
            if window is None:
                return
            for index, entry in enumerate(window.entries):
                if entry is decision.entry:
                    del window.entries[index]
                    window.tokens -= entry.tokens
                    if not window.entries:
                        del self._windows[(tenant, provider)]
                    return

    def update_limits(self, tenant: str, limits: Mapping[str, ProviderLimits]) -> None:
        """Replace a tenant's per-provider overrides; current windows are kept."""

        with self._lock:
            self._tenant_limits[tenant] = dict(limits)
        if limits:
            logger.info(
                "Rate limits updated for tenant %s: %s",
                tenant,
                ", ".join(
                    f"{name}={value.requests_per_minute}rpm/{value.tokens_per_minute}tpm"
                    for name, value in sorted(limits.items())
                ),
            )

    def limits_for(self, tenant: str, provider: str) -> ProviderLimits:
        with self._lock:
            return self._limits_locked(tenant, provider)

    def usage(self, tenant: str, provider: str) -> tuple[int, int]:
        """Requests and tokens currently counted in the window."""

        with self._lock:
            window = self._windows.get((tenant, provider))
            if window is None:
                return 0, 0
            window.prune(now=self._clock(), window_seconds=self._window_seconds)
            if not window.entries:
                del self._windows[(tenant, provider)]
            return len(window.entries), window.tokens

    def _evict_idle_locked(self, now: float) -> None:
        """Drop keys whose window emptied; runs at most once per window length."""

        if now - self._last_eviction < self._window_seconds:
            return
        self._last_eviction = now
        for key, window in list(self._windows.items()):
            window.prune(now=now, window_seconds=self._window_seconds)
            if not window.entries:
                del self._windows[key]

    def _limits_locked(self, tenant: str, provider: str) -> ProviderLimits:
        tenant_limits = self._tenant_limits.get(tenant, {})
        if provider in tenant_limits:
            return tenant_limits[provider]
        if provider in self._defaults:
            return self._defaults[provider]
        if provider not in self._warned_providers:
            self._warned_providers.add(provider)
            logger.warning(
                "No rate limits configured for provider %s; using %s rpm / %s tpm",
                provider,
                self._fallback.requests_per_minute,
                self._fallback.tokens_per_minute,
            )
        return self._fallback

    def _wait_ms(
        self,
        window: _Window,
        limits: ProviderLimits,
        tokens: int,
        now: float,
    ) -> int:
        requests = len(window.entries)
        used_tokens = window.tokens
        wait_seconds = 0.0
        for entry in window.entries:
            if (
                requests + 1 <= limits.requests_per_minute
                and used_tokens + tokens <= limits.tokens_per_minute
            ):
                break
            requests -= 1
            used_tokens -= entry.tokens
            wait_seconds = entry.at + self._window_seconds - now
        return max(1, math.ceil(wait_seconds * 1000))


def _fits(window: _Window, limits: ProviderLimits, tokens: int) -> bool:
    return (
        len(window.entries) + 1 <= limits.requests_per_minute
        and window.tokens + tokens <= limits.tokens_per_minute
    )

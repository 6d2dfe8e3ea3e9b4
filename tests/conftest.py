"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ai_task_queue.queue.dispatcher import DispatchPassSummary, QueueDispatcher
from ai_task_queue.queue.models import ProviderLimits
from ai_task_queue.queue.rate_limiter import RateLimiter
from ai_task_queue.queue.repository import TaskRepository
from ai_task_queue.queue.retry_policy import RetryPolicy


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        self._monotonic = 1_000.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self._monotonic += seconds


@dataclass(slots=True)
class _FailureRule:
    marker: str
    error: Exception
    remaining: int | None


class ScriptedProvider:
    """Provider double that echoes prompts and fails on configured markers."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self._rules: list[_FailureRule] = []
        self._lock = threading.Lock()

    def fail_when(self, marker: str, error: Exception, *, times: int | None = None) -> None:
        with self._lock:
            self._rules.append(_FailureRule(marker=marker, error=error, remaining=times))

    def invoke(self, provider: str, prompt: str, timeout_seconds: float) -> str:
        with self._lock:
            self.calls.append((provider, prompt))
            for rule in self._rules:
                if rule.marker not in prompt:
                    continue
                if rule.remaining is None:
                    raise rule.error
                if rule.remaining > 0:
                    rule.remaining -= 1
                    raise rule.error
        return f"{provider}:{prompt}"


@dataclass(slots=True)
class FakeTenantSettings:
    """In-memory tenant settings source."""

    credentials: set[tuple[str, str]]
    limits: dict[str, dict[str, ProviderLimits]]
    broken_tenants: frozenset[str] = frozenset()
    load_calls: int = 0

    def has_credential(self, tenant: str, provider: str) -> bool:
        if tenant in self.broken_tenants:
            raise RuntimeError(f"settings store unavailable for {tenant}")
        return (tenant, provider) in self.credentials

    def load_limits(self, tenant: str) -> dict[str, ProviderLimits]:
        self.load_calls += 1
        return dict(self.limits.get(tenant, {}))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "queue.db", clock=clock.now)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture()
def make_dispatcher(repository: TaskRepository, clock: FakeClock, provider: ScriptedProvider):
    """Factory for dispatchers on the shared repository and fake clock."""

    created: list[QueueDispatcher] = []

    def _make(  # noqa: PLR0913
        *,
        limits: dict[str, ProviderLimits] | None = None,
        retry_policy: RetryPolicy | None = None,
        invoker=None,
        provider_timeout_seconds: float = 5.0,
        dispatcher_id: str | None = None,
        max_concurrent_calls: int = 8,
        start: bool = True,
    ) -> QueueDispatcher:
        dispatcher = QueueDispatcher(
            repository=repository,
            rate_limiter=RateLimiter(
                default_limits=limits
                or {"demo": ProviderLimits(requests_per_minute=100, tokens_per_minute=1_000_000)},
                clock=clock.monotonic,
            ),
            invoker=invoker or provider,
            retry_policy=retry_policy or RetryPolicy(),
            dispatcher_id=dispatcher_id,
            provider_timeout_seconds=provider_timeout_seconds,
            max_concurrent_calls=max_concurrent_calls,
        )
        if start:
            dispatcher.start(background=False)
        created.append(dispatcher)
        return dispatcher

    yield _make

    for dispatcher in created:
        dispatcher.shutdown(wait=True)


@pytest.fixture()
def tenant_settings() -> FakeTenantSettings:
    return FakeTenantSettings(credentials=set(), limits={})


@pytest.fixture()
def drive():
    """Run one scheduling pass and wait for the work it launched."""

    def _drive(dispatcher: QueueDispatcher) -> DispatchPassSummary:
        summary = dispatcher.run_once()
        assert dispatcher.wait_idle(timeout=5.0)
        return summary

    return _drive

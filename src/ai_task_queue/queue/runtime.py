"""Process-level scheduler lifecycle: recovery first, then dispatch."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import timedelta

from ai_task_queue.config import Settings
from ai_task_queue.providers.base import ProviderInvoker
from ai_task_queue.queue.dispatcher import QueueDispatcher
from ai_task_queue.queue.models import ProviderLimits, RecoveryReport, TaskCreate, TaskView
from ai_task_queue.queue.rate_limiter import DEFAULT_PROVIDER_LIMITS, RateLimiter
from ai_task_queue.queue.recovery import RecoveryService
from ai_task_queue.queue.repository import TaskRepository
from ai_task_queue.queue.retry_policy import RetryPolicy
from ai_task_queue.queue.tenant_settings import TenantSettingsRepository, TenantSettingsSource

logger = logging.getLogger(__name__)


class QueueRuntime:
    """Explicitly constructed scheduler owned by the process startup sequence."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        dispatcher: QueueDispatcher,
        recovery: RecoveryService,
        on_close: tuple[Callable[[], None], ...] = (),
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.recovery = recovery
        self._on_close = on_close
        self._stop_requested = threading.Event()
        self._stop_signal_name: str | None = None
        self.recovery_report: RecoveryReport | None = None

    def __enter__(self) -> QueueRuntime:
        self.init()
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    def init(self, *, background: bool = True) -> RecoveryReport:
        """Run recovery once, then start the dispatcher."""

        if self.dispatcher.started:
            raise RuntimeError("Queue runtime already initialized.")
        self.recovery_report = self.recovery.run()
        self.dispatcher.start(background=background)
        return self.recovery_report

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        self.dispatcher.shutdown(wait=wait, timeout=timeout)
        for close in self._on_close:
            close()

    def submit(self, payload: TaskCreate) -> str:
        return self.dispatcher.submit(payload)

    def get_status(self, task_id: str) -> TaskView:
        return self.dispatcher.get_status(task_id)

    def update_limits(self, tenant: str, limits: Mapping[str, ProviderLimits]) -> None:
        self.dispatcher.update_limits(tenant, limits)

    def wait_until_idle(self, timeout: float | None = None, *, poll_seconds: float = 0.1) -> bool:
        """Block until no owned task is pending, queued or running."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._stop_requested.is_set():
            if (
                self.dispatcher.in_flight_count == 0
                and self.repository.count_owned_active(
                    dispatcher_id=self.dispatcher.dispatcher_id,
                )
                == 0
            ):
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self._stop_requested.wait(poll_seconds)
        return False

    def serve_forever(self, *, until_idle: bool = False) -> str | None:
        """Serve until SIGINT/SIGTERM (or until idle); returns the stop signal name."""

        with self._signal_handlers():
            if until_idle:
                self.wait_until_idle()
            else:
                self._stop_requested.wait()
        return self._stop_signal_name

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_signal_name = signal_name
        self._stop_requested.set()
        logger.info("Stop requested (%s)", signal_name)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def build_runtime(
    settings: Settings,
    *,
    invoker: ProviderInvoker,
    tenant_settings: TenantSettingsSource | None = None,
    repository: TaskRepository | None = None,
    dispatcher_id: str | None = None,
) -> QueueRuntime:
    """Wire repository, limiter, dispatcher and recovery from settings."""

    on_close: list[Callable[[], None]] = []
    if repository is None:
        repository = TaskRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            retention_days=settings.tasks.retention_days,
            result_max_chars=settings.tasks.result_max_chars,
            error_max_chars=settings.tasks.error_max_chars,
        )
        repository.init_schema()
        on_close.append(repository.close)
    if tenant_settings is None:
        tenant_repository = TenantSettingsRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        on_close.append(tenant_repository.close)
        tenant_settings = tenant_repository

    dispatcher = QueueDispatcher(
        repository=repository,
        rate_limiter=RateLimiter(
            default_limits={**DEFAULT_PROVIDER_LIMITS, **settings.rate_limits.overrides},
        ),
        invoker=invoker,
        retry_policy=RetryPolicy(
            max_retries=settings.retry.max_retries,
            delays_ms=settings.retry.delays_ms,
        ),
        dispatcher_id=dispatcher_id,
        poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
        provider_timeout_seconds=settings.dispatcher.provider_timeout_seconds,
        max_concurrent_calls=settings.dispatcher.max_concurrent_calls,
    )
    recovery = RecoveryService(
        repository=repository,
        dispatcher=dispatcher,
        tenant_settings=tenant_settings,
        stuck_threshold=timedelta(seconds=settings.recovery.stuck_threshold_seconds),
    )
    return QueueRuntime(
        repository=repository,
        dispatcher=dispatcher,
        recovery=recovery,
        on_close=tuple(on_close),
    )

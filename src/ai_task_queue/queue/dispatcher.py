"""Queue dispatcher: admits, rate limits, executes and retries owned tasks."""

from __future__ import annotations

import concurrent.futures
import functools
import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from ai_task_queue.providers.base import ProviderInvoker, ProviderTimeoutError
from ai_task_queue.queue.failure_classifier import classify_provider_failure
from ai_task_queue.queue.models import (
    PROGRESS_BULK_END,
    PROGRESS_QUEUED,
    PROGRESS_RUNNING,
    BulkTranslationTarget,
    FailureClass,
    ProviderLimits,
    TaskCreate,
    TaskStatus,
    TaskView,
    TransitionFields,
)
from ai_task_queue.queue.prompts import estimate_tokens, render_locale_prompt
from ai_task_queue.queue.rate_limiter import AdmissionDecision, RateLimiter
from ai_task_queue.queue.repository import TaskRepository
from ai_task_queue.queue.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

_ERROR_BACKOFF_SECONDS = 5.0
_MIN_WAKE_SECONDS = 0.001


class DispatcherNotReadyError(RuntimeError):
    """Raised when tasks are submitted before recovery finished or after shutdown."""


@dataclass(slots=True)
class DispatchPassSummary:
    """Counters for one scheduling pass."""

    admitted: int = 0
    started: int = 0
    deferred: int = 0
    failed: int = 0
    next_wake_seconds: float = 0.0


@dataclass(slots=True)
class _LocaleFailure:
    failure_class: FailureClass
    error: str


class QueueDispatcher:
    """Single logical scheduler for the tasks owned by this process."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        rate_limiter: RateLimiter,
        invoker: ProviderInvoker,
        retry_policy: RetryPolicy | None = None,
        dispatcher_id: str | None = None,
        poll_interval_seconds: float = 0.1,
        provider_timeout_seconds: float = 30.0,
        max_concurrent_calls: int = 8,
        max_batch: int = 50,
    ) -> None:
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.invoker = invoker
        self.retry_policy = retry_policy or RetryPolicy()
        self.dispatcher_id = dispatcher_id or str(uuid4())
        self.poll_interval_seconds = poll_interval_seconds
        self.provider_timeout_seconds = provider_timeout_seconds
        self.max_concurrent_calls = max_concurrent_calls
        self.max_batch = max_batch
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_calls,
            thread_name_prefix="ai-task",
        )
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future[None]] = {}
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = False
        self._accepting = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def submit(self, payload: TaskCreate) -> str:
        """Persist a new task owned by this dispatcher and return its id."""

        if not self._accepting:
            raise DispatcherNotReadyError(
                "Dispatcher is not accepting tasks (recovery not finished or shut down).",
            )
        task = self.repository.create_task(payload, dispatcher_id=self.dispatcher_id)
        logger.info(
            "Submitted task %s (%s, tenant=%s, provider=%s)",
            task.task_id,
            task.task_type.value,
            task.tenant,
            task.provider,
        )
        self._wakeup.set()
        return task.task_id

    def get_status(self, task_id: str) -> TaskView:
        return self.repository.get_task(task_id=task_id)

    def update_limits(self, tenant: str, limits: Mapping[str, ProviderLimits]) -> None:
        self.rate_limiter.update_limits(tenant, limits)
        self._wakeup.set()

    def resubmit(self, task: TaskView) -> bool:
        """Adopt a recovered task and put it back in ``queued``.

        A retry backoff stored by the previous owner is kept.
        """

        result = self.repository.transition(
            task.task_id,
            TaskStatus.QUEUED,
            TransitionFields(
                progress=PROGRESS_QUEUED,
                run_after=max(task.run_after, self.repository.now()),
                dispatcher_id=self.dispatcher_id,
            ),
            expected_status=task.status,
            event_type="recovered",
            event_details={"previous_dispatcher_id": task.dispatcher_id},
        )
        if result.applied:
            self._wakeup.set()
        return result.applied

    def start(self, *, background: bool = True) -> None:
        """Start accepting tasks; ``background=False`` leaves passes to ``run_once``."""

        with self._lock:
            if self._started:
                raise RuntimeError("Dispatcher already started.")
            self._started = True
            self._accepting = True
        if background:
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"ai-task-dispatcher-{self.dispatcher_id[:8]}",
                daemon=True,
            )
            self._thread.start()
        logger.info("Dispatcher %s started", self.dispatcher_id)

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop polling; in-flight work finishes when ``wait`` is true."""

        self._accepting = False
        self._stop.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("Dispatcher %s stopped", self.dispatcher_id)

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Block until no task is executing; False when ``timeout`` elapsed first."""

        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                futures = list(self._in_flight.values())
            if not futures:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            concurrent.futures.wait(futures, timeout=remaining)

    def run_once(self) -> DispatchPassSummary:
        """Admit owned pending tasks and launch the queued ones the limiter allows."""

        summary = DispatchPassSummary(next_wake_seconds=self.poll_interval_seconds)
        if self._stop.is_set():
            return summary

        for task in self.repository.find_owned(
            dispatcher_id=self.dispatcher_id,
            status=TaskStatus.PENDING,
            limit=self.max_batch,
        ):
            admitted = self.repository.transition(
                task.task_id,
                TaskStatus.QUEUED,
                TransitionFields(progress=PROGRESS_QUEUED),
                expected_status=TaskStatus.PENDING,
            )
            if admitted.applied:
                summary.admitted += 1

        denied: dict[tuple[str, str], int] = {}
        for task in self.repository.find_dispatchable(
            dispatcher_id=self.dispatcher_id,
            now=self.repository.now(),
            limit=self.max_batch,
        ):
            if self._stop.is_set():
                break
            with self._lock:
                if task.task_id in self._in_flight:
                    continue
                if len(self._in_flight) >= self.max_concurrent_calls:
                    break
            provider = task.provider or ""
            key = (task.tenant, provider)
            if key in denied:
                continue

            tokens = _call_tokens(task)
            decision = self.rate_limiter.try_admit(task.tenant, provider, tokens)
            if decision.exceeds_budget:
                self._fail_over_budget(task, tokens)
                summary.failed += 1
                continue
            if not decision.ok:
                denied[key] = decision.wait_ms
                summary.deferred += 1
                logger.debug(
                    "Task %s deferred %sms by rate limit (tenant=%s, provider=%s)",
                    task.task_id,
                    decision.wait_ms,
                    task.tenant,
                    provider,
                )
                continue

            started = self.repository.transition(
                task.task_id,
                TaskStatus.RUNNING,
                TransitionFields(progress=PROGRESS_RUNNING, started_at=self.repository.now()),
                expected_status=TaskStatus.QUEUED,
            )
            if not started.applied:
                self.rate_limiter.release(task.tenant, provider, decision)
                continue
            self._launch(started.task)
            summary.started += 1

        summary.next_wake_seconds = self._next_wake_seconds(denied)
        return summary

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            self._wakeup.clear()
            try:
                wait_seconds = self.run_once().next_wake_seconds
            except Exception:
                logger.exception(
                    "Dispatch pass failed; retrying in %.1fs",
                    _ERROR_BACKOFF_SECONDS,
                )
                wait_seconds = _ERROR_BACKOFF_SECONDS
            self._wakeup.wait(timeout=wait_seconds)

    def _next_wake_seconds(self, denied: Mapping[tuple[str, str], int]) -> float:
        candidates = [wait_ms / 1000 for wait_ms in denied.values()]
        next_run_after = self.repository.next_run_after(dispatcher_id=self.dispatcher_id)
        if next_run_after is not None:
            delay = (next_run_after - self.repository.now()).total_seconds()
            if delay > 0:
                candidates.append(delay)
        if not candidates:
            return self.poll_interval_seconds
        return max(_MIN_WAKE_SECONDS, min(candidates))

    def _launch(self, task: TaskView) -> None:
        with self._lock:
            future = self._executor.submit(self._execute, task)
            self._in_flight[task.task_id] = future
        future.add_done_callback(functools.partial(self._forget, task.task_id))

    def _forget(self, task_id: str, _: Future[None]) -> None:
        with self._lock:
            self._in_flight.pop(task_id, None)
        self._wakeup.set()

    def _execute(self, task: TaskView) -> None:
        try:
            if isinstance(task.target, BulkTranslationTarget):
                self._execute_bulk(task, task.target)
            else:
                self._execute_single(task)
        except Exception as error:
            logger.exception("Task %s crashed while executing", task.task_id)
            try:
                self.repository.transition(
                    task.task_id,
                    TaskStatus.FAILED,
                    TransitionFields(
                        error=f"Internal error: {error}",
                        failure_class=FailureClass.INTERNAL_ERROR,
                    ),
                    event_details={"exception": type(error).__name__},
                )
            except Exception:
                logger.exception("Could not record failure of task %s", task.task_id)

    def _execute_single(self, task: TaskView) -> None:
        provider = task.provider or ""
        if self._stop.is_set():
            self._requeue_on_shutdown(task)
            return
        try:
            output = self._call_provider(provider, task.prompt or "")
        except Exception as error:  # noqa: BLE001
            classification = classify_provider_failure(provider=provider, error=error)
            self._handle_failure(
                task,
                failure_class=classification.failure_class,
                error=str(error) or type(error).__name__,
                details=classification.to_event_details(provider=provider),
            )
            return

        self.repository.transition(
            task.task_id,
            TaskStatus.COMPLETED,
            TransitionFields(result=output),
            expected_status=TaskStatus.RUNNING,
        )
        logger.info("Task %s completed", task.task_id)

    def _execute_bulk(self, task: TaskView, target: BulkTranslationTarget) -> None:  # noqa: C901
        provider = task.provider or ""
        locales = target.target_locales
        succeeded = {
            row.locale
            for row in self.repository.list_locale_results(task_id=task.task_id)
            if row.succeeded
        }
        failures: dict[str, _LocaleFailure] = {}
        tokens = _call_tokens(task)
        admitted_by_pass = True

        for locale in locales:
            if locale in succeeded:
                continue
            if self._stop.is_set():
                self._requeue_on_shutdown(task)
                return
            if not admitted_by_pass:
                decision = self._wait_for_budget(task.tenant, provider, tokens)
                if decision is None:
                    self._requeue_on_shutdown(task)
                    return
                if decision.exceeds_budget:
                    failures[locale] = _LocaleFailure(
                        failure_class=FailureClass.CAPACITY_EXCEEDED,
                        error=f"Estimated {tokens} tokens exceed the {provider} budget",
                    )
                    self._record_locale_failure(task, locale, failures[locale])
                    continue
            admitted_by_pass = False

            try:
                output = self._call_provider(
                    provider,
                    render_locale_prompt(task.prompt or "", locale),
                )
            except Exception as error:  # noqa: BLE001
                classification = classify_provider_failure(provider=provider, error=error)
                failures[locale] = _LocaleFailure(
                    failure_class=classification.failure_class,
                    error=str(error) or type(error).__name__,
                )
                self._record_locale_failure(task, locale, failures[locale])
                logger.warning(
                    "Task %s locale %s failed: %s",
                    task.task_id,
                    locale,
                    classification.failure_class.value,
                )
            else:
                self.repository.record_locale_result(
                    task_id=task.task_id,
                    locale=locale,
                    succeeded=True,
                    output=output,
                )
                succeeded.add(locale)

            processed = len(succeeded) + len(failures)
            self.repository.transition(
                task.task_id,
                TaskStatus.RUNNING,
                TransitionFields(
                    progress=PROGRESS_RUNNING
                    + (PROGRESS_BULK_END - PROGRESS_RUNNING) * processed // len(locales),
                ),
                expected_status=TaskStatus.RUNNING,
            )

        if not succeeded:
            transient = [item for item in failures.values() if item.failure_class.is_transient]
            chosen = transient[0] if transient else next(iter(failures.values()))
            self._handle_failure(
                task,
                failure_class=chosen.failure_class,
                error=_bulk_summary(locales, succeeded, failures),
                details={"failed_locales": sorted(failures)},
            )
            return

        self.repository.transition(
            task.task_id,
            TaskStatus.COMPLETED,
            TransitionFields(result=_bulk_summary(locales, succeeded, failures)),
            expected_status=TaskStatus.RUNNING,
            event_details={
                "succeeded_locales": sorted(succeeded),
                "failed_locales": sorted(failures),
            },
        )
        logger.info(
            "Bulk task %s completed: %s/%s locales",
            task.task_id,
            len(succeeded),
            len(locales),
        )

    def _record_locale_failure(self, task: TaskView, locale: str, failure: _LocaleFailure) -> None:
        self.repository.record_locale_result(
            task_id=task.task_id,
            locale=locale,
            succeeded=False,
            error=failure.error,
            failure_class=failure.failure_class,
        )

    def _call_provider(self, provider: str, prompt: str) -> str:
        """Invoke the provider on its own thread so the timeout covers only the call.

        A call that overruns is abandoned; its thread never holds back later calls.
        """

        future: Future[str] = Future()

        def _invoke() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(
                    self.invoker.invoke(provider, prompt, self.provider_timeout_seconds),
                )
            except BaseException as error:  # noqa: BLE001
                future.set_exception(error)

        threading.Thread(target=_invoke, name=f"ai-provider-call-{provider}", daemon=True).start()
        try:
            return future.result(timeout=self.provider_timeout_seconds)
        except concurrent.futures.TimeoutError as error:
            logger.warning(
                "Abandoning %s call after %ss without a response",
                provider,
                self.provider_timeout_seconds,
            )
            raise ProviderTimeoutError(
                f"{provider} did not respond within {self.provider_timeout_seconds:g}s",
            ) from error

    def _wait_for_budget(
        self,
        tenant: str,
        provider: str,
        tokens: int,
    ) -> AdmissionDecision | None:
        while not self._stop.is_set():
            decision = self.rate_limiter.try_admit(tenant, provider, tokens)
            if decision.ok or decision.exceeds_budget:
                return decision
            self._stop.wait(decision.wait_ms / 1000)
        return None

    def _handle_failure(
        self,
        task: TaskView,
        *,
        failure_class: FailureClass,
        error: str,
        details: dict[str, object],
    ) -> None:
        if self.retry_policy.should_retry(failure_class, task.retry_count):
            retry_count = task.retry_count + 1
            delay_ms = self.retry_policy.backoff_ms(retry_count)
            self.repository.transition(
                task.task_id,
                TaskStatus.QUEUED,
                TransitionFields(
                    error=error,
                    failure_class=failure_class,
                    retry_count=retry_count,
                    run_after=self.repository.now() + timedelta(milliseconds=delay_ms),
                ),
                expected_status=TaskStatus.RUNNING,
                event_details={**details, "delay_ms": delay_ms},
            )
            self._wakeup.set()
            logger.info(
                "Task %s retry %s/%s in %sms (%s)",
                task.task_id,
                retry_count,
                self.retry_policy.max_retries,
                delay_ms,
                failure_class.value,
            )
            return

        self.repository.transition(
            task.task_id,
            TaskStatus.FAILED,
            TransitionFields(error=error, failure_class=failure_class),
            expected_status=TaskStatus.RUNNING,
            event_details=details,
        )
        logger.warning("Task %s failed: %s", task.task_id, failure_class.value)

    def _fail_over_budget(self, task: TaskView, tokens: int) -> None:
        limits = self.rate_limiter.limits_for(task.tenant, task.provider or "")
        self.repository.transition(
            task.task_id,
            TaskStatus.FAILED,
            TransitionFields(
                error=(
                    f"Estimated {tokens} tokens exceed the {task.provider} budget of "
                    f"{limits.tokens_per_minute} tokens per minute"
                ),
                failure_class=FailureClass.CAPACITY_EXCEEDED,
            ),
            expected_status=TaskStatus.QUEUED,
        )
        logger.warning("Task %s can never fit its token budget", task.task_id)

    def _requeue_on_shutdown(self, task: TaskView) -> None:
        self.repository.transition(
            task.task_id,
            TaskStatus.QUEUED,
            TransitionFields(run_after=self.repository.now()),
            expected_status=TaskStatus.RUNNING,
            event_type="shutdown_requeued",
        )
        logger.info("Task %s returned to queue on shutdown", task.task_id)


def _call_tokens(task: TaskView) -> int:
    return task.estimated_tokens or estimate_tokens(task.prompt or "")


def _bulk_summary(
    locales: tuple[str, ...],
    succeeded: set[str],
    failures: Mapping[str, _LocaleFailure],
) -> str:
    summary = f"Translated {len(succeeded)}/{len(locales)} locales"
    if not failures:
        return summary
    failed = ", ".join(
        f"{locale} ({failures[locale].failure_class.value})"
        for locale in locales
        if locale in failures
    )
    return f"{summary}; failed: {failed}"

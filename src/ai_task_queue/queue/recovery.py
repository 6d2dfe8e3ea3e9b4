"""Startup reconciliation of tasks left behind by a previous process."""

from __future__ import annotations

import logging
from datetime import timedelta

from ai_task_queue.queue.dispatcher import QueueDispatcher
from ai_task_queue.queue.models import (
    FailureClass,
    RecoveryReport,
    TaskStatus,
    TaskView,
    TransitionFields,
)
from ai_task_queue.queue.repository import TaskRepository
from ai_task_queue.queue.tenant_settings import TenantSettingsSource

logger = logging.getLogger(__name__)

DEFAULT_STUCK_THRESHOLD = timedelta(minutes=10)


class RecoveryService:
    """Fails stuck work and hands recoverable work to the dispatcher.

    Runs once per process start, before the dispatcher accepts new tasks.
    Phase 2 operates on the snapshot read at sweep start; tasks the current
    dispatcher already owns are left alone, so a second run recovers nothing.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        dispatcher: QueueDispatcher,
        tenant_settings: TenantSettingsSource,
        stuck_threshold: timedelta = DEFAULT_STUCK_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.tenant_settings = tenant_settings
        self.stuck_threshold = stuck_threshold

    def run(self) -> RecoveryReport:
        report = RecoveryReport()
        self._fail_stuck_tasks(report)
        self._resubmit_recoverable_tasks(report)
        logger.info(
            "Recovery finished: recovered=%s stuck_failed=%s recovery_failed=%s "
            "skipped_no_credential=%s already_owned=%s",
            report.recovered,
            report.stuck_failed,
            report.recovery_failed,
            report.skipped_no_credential,
            report.already_owned,
        )
        return report

    def sweep_stuck(self) -> RecoveryReport:
        """Fail stuck tasks only; ownership of pending and queued work is untouched.

        Safe to run next to a live dispatcher, unlike ``run``.
        """

        report = RecoveryReport()
        self._fail_stuck_tasks(report)
        logger.info("Stuck sweep finished: stuck_failed=%s", report.stuck_failed)
        return report

    def _fail_stuck_tasks(self, report: RecoveryReport) -> None:
        now = self.repository.now()
        for task in self.repository.find_stuck(threshold=now - self.stuck_threshold):
            idle_seconds = int((now - task.updated_at).total_seconds())
            result = self.repository.transition(
                task.task_id,
                TaskStatus.FAILED,
                TransitionFields(
                    error=(
                        f"Task was stuck in running state (no update for {idle_seconds} "
                        "seconds); the previous process likely crashed mid-call"
                    ),
                    failure_class=FailureClass.STUCK,
                ),
                expected_status=TaskStatus.RUNNING,
                event_type="stuck_failed",
                event_details={"idle_seconds": idle_seconds},
            )
            if result.applied:
                report.stuck_failed += 1
                logger.warning(
                    "Task %s failed after %ss stuck in running",
                    task.task_id,
                    idle_seconds,
                )

    def _resubmit_recoverable_tasks(self, report: RecoveryReport) -> None:
        reloaded_tenants: set[str] = set()
        for task in self.repository.find_recoverable(now=self.repository.now()):
            if task.dispatcher_id == self.dispatcher.dispatcher_id:
                report.already_owned += 1
                continue
            try:
                self._recover_task(task, report, reloaded_tenants)
            except Exception as error:  # noqa: BLE001
                logger.exception("Recovery of task %s failed", task.task_id)
                self._mark_recovery_failed(task, error, report)

    def _recover_task(
        self,
        task: TaskView,
        report: RecoveryReport,
        reloaded_tenants: set[str],
    ) -> None:
        provider = task.provider or ""
        if not self.tenant_settings.has_credential(task.tenant, provider):
            report.skipped_no_credential += 1
            logger.warning(
                "Skipping task %s: tenant %s has no credential for provider %s",
                task.task_id,
                task.tenant,
                provider,
            )
            return
        if task.tenant not in reloaded_tenants:
            self.dispatcher.update_limits(task.tenant, self.tenant_settings.load_limits(task.tenant))
            reloaded_tenants.add(task.tenant)
        if self.dispatcher.resubmit(task):
            report.recovered += 1

    def _mark_recovery_failed(
        self,
        task: TaskView,
        error: Exception,
        report: RecoveryReport,
    ) -> None:
        report.recovery_failed += 1
        try:
            self.repository.transition(
                task.task_id,
                TaskStatus.FAILED,
                TransitionFields(
                    error=f"Recovery failed: {error}",
                    failure_class=FailureClass.RECOVERY_FAILED,
                ),
                event_type="recovery_failed",
            )
        except Exception:  # noqa: BLE001
            # Record vanished or store unavailable; the next sweep sees it again.
            logger.exception("Could not mark task %s as recovery_failed", task.task_id)

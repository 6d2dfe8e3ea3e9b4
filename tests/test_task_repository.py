from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from ai_task_queue.queue.models import (
    BulkTranslationTarget,
    FailureClass,
    GenerationTarget,
    InvalidTransitionError,
    TaskCreate,
    TaskNotFoundError,
    TaskStatus,
    TaskType,
    TransitionFields,
    TranslationTarget,
)

pytestmark = [
    allure.epic("AI Task Queue"),
    allure.feature("Task Record Store"),
]


def _translation(prompt: str = "Translate: Blue shirt", tenant: str = "shop-a") -> TaskCreate:
    return TaskCreate(
        tenant=tenant,
        provider="demo",
        prompt=prompt,
        target=TranslationTarget(
            resource_type="product",
            resource_id="gid://shop/Product/1",
            field_type="title",
            target_locale="de",
            resource_title="Blue shirt",
        ),
    )


def _start(repository, task_id: str) -> None:
    repository.transition(task_id, TaskStatus.QUEUED)
    repository.transition(task_id, TaskStatus.RUNNING, TransitionFields(progress=20))


def test_create_task_sets_pending_defaults(repository, clock) -> None:
    task = repository.create_task(_translation(prompt="x" * 41))

    assert task.status == TaskStatus.PENDING
    assert task.task_type == TaskType.TRANSLATION
    assert task.progress == 10
    assert task.retry_count == 0
    assert task.estimated_tokens == 11
    assert task.created_at == clock.now()
    assert task.expires_at == clock.now() + timedelta(days=3)
    assert task.target == TranslationTarget(
        resource_type="product",
        resource_id="gid://shop/Product/1",
        field_type="title",
        target_locale="de",
        resource_title="Blue shirt",
    )

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]


def test_create_task_rejects_empty_prompt(repository) -> None:
    with pytest.raises(ValueError, match="prompt"):
        repository.create_task(_translation(prompt="   "))


def test_bulk_target_round_trips_locales(repository) -> None:
    task = repository.create_task(
        TaskCreate(
            tenant="shop-a",
            provider="demo",
            prompt="Translate {target_locale}",
            target=BulkTranslationTarget(
                resource_type="collection",
                resource_id="7",
                field_type="description",
                target_locales=("de", "fr", "es"),
            ),
            estimated_tokens=30,
        ),
    )

    loaded = repository.get_task(task_id=task.task_id)
    assert loaded.task_type == TaskType.TRANSLATION_BULK
    assert isinstance(loaded.target, BulkTranslationTarget)
    assert loaded.target.target_locales == ("de", "fr", "es")
    assert loaded.estimated_tokens == 30


def test_transition_to_completed_sets_progress_and_completed_at(repository, clock) -> None:
    task = repository.create_task(_translation())
    _start(repository, task.task_id)
    clock.advance(5)

    result = repository.transition(
        task.task_id,
        TaskStatus.COMPLETED,
        TransitionFields(result="Blaues Hemd"),
    )

    assert result.applied
    assert result.task.status == TaskStatus.COMPLETED
    assert result.task.progress == 100
    assert result.task.result == "Blaues Hemd"
    assert result.task.completed_at == clock.now()
    assert result.task.updated_at == clock.now()

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "admitted",
        "started",
        "completed",
    ]


def test_transition_on_terminal_task_is_reported_noop(repository) -> None:
    task = repository.create_task(_translation())
    repository.transition(task.task_id, TaskStatus.FAILED, TransitionFields(error="boom"))

    result = repository.transition(task.task_id, TaskStatus.QUEUED)

    assert not result.applied
    assert result.reason == "already_terminal"
    assert result.task.status == TaskStatus.FAILED


def test_transition_rejects_backward_move(repository) -> None:
    task = repository.create_task(_translation())
    _start(repository, task.task_id)

    with pytest.raises(InvalidTransitionError):
        repository.transition(task.task_id, TaskStatus.PENDING)


def test_transition_unknown_task_raises(repository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.transition("missing", TaskStatus.QUEUED)


def test_transition_with_stale_expected_status_is_noop(repository) -> None:
    task = repository.create_task(_translation())

    result = repository.transition(
        task.task_id,
        TaskStatus.RUNNING,
        expected_status=TaskStatus.QUEUED,
    )

    assert not result.applied
    assert result.reason == "status_mismatch"
    assert result.task.status == TaskStatus.PENDING


def test_progress_never_decreases(repository) -> None:
    task = repository.create_task(_translation())
    _start(repository, task.task_id)
    repository.transition(task.task_id, TaskStatus.RUNNING, TransitionFields(progress=60))

    result = repository.transition(task.task_id, TaskStatus.RUNNING, TransitionFields(progress=30))

    assert result.task.progress == 60


def test_result_and_error_are_truncated(repository) -> None:
    first = repository.create_task(_translation())
    _start(repository, first.task_id)
    completed = repository.transition(
        first.task_id,
        TaskStatus.COMPLETED,
        TransitionFields(result="r" * 800),
    )
    assert completed.task.result is not None
    assert len(completed.task.result) == 500
    assert completed.task.result.endswith("...")

    second = repository.create_task(_translation())
    failed = repository.transition(
        second.task_id,
        TaskStatus.FAILED,
        TransitionFields(error="e" * 2_000, failure_class=FailureClass.INVALID_REQUEST),
    )
    assert failed.task.error is not None
    assert len(failed.task.error) == 1_000
    assert failed.task.completed_at is not None


def test_find_recoverable_orders_oldest_first_and_skips_expired(repository, clock) -> None:
    expired = repository.create_task(_translation(prompt="expired"))
    clock.advance(timedelta(days=2).total_seconds())
    older = repository.create_task(_translation(prompt="older"))
    clock.advance(60)
    newer = repository.create_task(_translation(prompt="newer"))
    repository.transition(newer.task_id, TaskStatus.QUEUED)
    running = repository.create_task(_translation(prompt="running"))
    _start(repository, running.task_id)
    clock.advance(timedelta(days=1).total_seconds())

    recoverable = repository.find_recoverable(now=clock.now())

    assert [task.task_id for task in recoverable] == [older.task_id, newer.task_id]
    assert expired.task_id not in {task.task_id for task in recoverable}


def test_find_stuck_uses_updated_at_threshold(repository, clock) -> None:
    stuck = repository.create_task(_translation(prompt="stuck"))
    _start(repository, stuck.task_id)
    clock.advance(11 * 60)
    fresh = repository.create_task(_translation(prompt="fresh"))
    _start(repository, fresh.task_id)

    found = repository.find_stuck(threshold=clock.now() - timedelta(minutes=10))

    assert [task.task_id for task in found] == [stuck.task_id]


def test_find_dispatchable_respects_owner_and_run_after(repository, clock) -> None:
    mine = repository.create_task(_translation(prompt="mine"), dispatcher_id="d1")
    later = repository.create_task(_translation(prompt="later"), dispatcher_id="d1")
    other = repository.create_task(_translation(prompt="other"), dispatcher_id="d2")
    for task in (mine, later, other):
        repository.transition(task.task_id, TaskStatus.QUEUED)
    repository.transition(
        later.task_id,
        TaskStatus.QUEUED,
        TransitionFields(run_after=clock.now() + timedelta(seconds=5)),
    )

    ready = repository.find_dispatchable(dispatcher_id="d1", now=clock.now())

    assert [task.task_id for task in ready] == [mine.task_id]
    assert repository.next_run_after(dispatcher_id="d1") == clock.now()
    assert repository.count_owned_active(dispatcher_id="d1") == 2


def test_concurrent_start_admits_single_writer(repository) -> None:
    task = repository.create_task(_translation())
    repository.transition(task.task_id, TaskStatus.QUEUED)
    barrier = threading.Barrier(4)
    applied: list[bool] = []
    lock = threading.Lock()

    def _claim() -> None:
        barrier.wait(timeout=5)
        result = repository.transition(
            task.task_id,
            TaskStatus.RUNNING,
            TransitionFields(progress=20),
            expected_status=TaskStatus.QUEUED,
        )
        with lock:
            applied.append(result.applied)

    threads = [threading.Thread(target=_claim) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(applied) == [False, False, False, True]


def test_queue_stats_counts_active_tasks(repository) -> None:
    repository.create_task(_translation(tenant="shop-a"))
    queued = repository.create_task(_translation(tenant="shop-b"))
    repository.transition(queued.task_id, TaskStatus.QUEUED)
    done = repository.create_task(
        TaskCreate(
            tenant="shop-a",
            provider="openai",
            prompt="Write a tagline",
            target=GenerationTarget(resource_type="shop", resource_id="1", field_type="tagline"),
        ),
    )
    repository.transition(done.task_id, TaskStatus.FAILED, TransitionFields(error="x"))

    stats = repository.queue_stats()

    assert stats.active == 2
    assert stats.by_status == {"pending": 1, "queued": 1}
    assert stats.by_provider == {"demo": 2}
    assert stats.by_tenant == {"shop-a": 1, "shop-b": 1}


def test_record_locale_result_upserts(repository) -> None:
    task = repository.create_task(_translation())

    repository.record_locale_result(
        task_id=task.task_id,
        locale="fr",
        succeeded=False,
        error="HTTP 503",
        failure_class=FailureClass.PROVIDER_TRANSIENT,
    )
    repository.record_locale_result(task_id=task.task_id, locale="fr", succeeded=True, output="ok")

    rows = repository.list_locale_results(task_id=task.task_id)
    assert len(rows) == 1
    assert rows[0].succeeded
    assert rows[0].output == "ok"
    assert rows[0].error is None
    assert rows[0].failure_class is None

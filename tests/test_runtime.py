from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from ai_task_queue.config import Settings
from ai_task_queue.providers.echo import EchoProvider
from ai_task_queue.queue.dispatcher import DispatcherNotReadyError
from ai_task_queue.queue.models import GenerationTarget, TaskCreate, TaskStatus
from ai_task_queue.queue.runtime import build_runtime

pytestmark = [
    allure.epic("AI Task Queue"),
    allure.feature("Runtime Lifecycle"),
]


def _payload(prompt: str) -> TaskCreate:
    return TaskCreate(
        tenant="shop-a",
        provider="demo",
        prompt=prompt,
        target=GenerationTarget(resource_type="product", resource_id="5", field_type="seo_title"),
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    settings = Settings(db_path=tmp_path / "runtime.db")
    settings.dispatcher.poll_interval_seconds = 0.02
    return settings


@pytest.fixture()
def credentials(tenant_settings):
    tenant_settings.credentials.add(("shop-a", "demo"))
    return tenant_settings


def test_submit_before_init_is_rejected(settings, credentials) -> None:
    runtime = build_runtime(settings, invoker=EchoProvider(), tenant_settings=credentials)
    try:
        with pytest.raises(DispatcherNotReadyError):
            runtime.submit(_payload("too early"))
    finally:
        runtime.shutdown()


def test_init_twice_raises(settings, credentials) -> None:
    runtime = build_runtime(settings, invoker=EchoProvider(), tenant_settings=credentials)
    try:
        runtime.init(background=False)
        with pytest.raises(RuntimeError, match="already initialized"):
            runtime.init(background=False)
    finally:
        runtime.shutdown()


def test_context_manager_runs_tasks_and_shuts_down(settings, credentials) -> None:
    with build_runtime(settings, invoker=EchoProvider(), tenant_settings=credentials) as runtime:
        task_id = runtime.submit(_payload("  hello  "))
        assert runtime.wait_until_idle(timeout=10)
        task = runtime.get_status(task_id)

    assert task.status == TaskStatus.COMPLETED
    assert task.result == "[demo] hello"
    assert runtime.recovery_report is not None
    with pytest.raises(DispatcherNotReadyError):
        runtime.submit(_payload("after shutdown"))


def test_restart_recovers_tasks_left_by_previous_process(settings, credentials) -> None:
    first = build_runtime(
        settings,
        invoker=EchoProvider(),
        tenant_settings=credentials,
        dispatcher_id="first-process",
    )
    first.init(background=False)
    task_ids = [first.submit(_payload(f"item {index}")) for index in range(2)]
    first.shutdown()

    second = build_runtime(
        settings,
        invoker=EchoProvider(),
        tenant_settings=credentials,
        dispatcher_id="second-process",
    )
    try:
        report = second.init()
        assert report.recovered == 2
        assert second.wait_until_idle(timeout=10)
        results = [second.get_status(task_id) for task_id in task_ids]
    finally:
        second.shutdown()

    assert [task.status for task in results] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
    assert sorted(task.result for task in results) == ["[demo] item 0", "[demo] item 1"]
    assert {task.dispatcher_id for task in results} == {"second-process"}


def test_failed_provider_call_is_reported_on_task(settings, credentials) -> None:
    with build_runtime(settings, invoker=EchoProvider(), tenant_settings=credentials) as runtime:
        task_id = runtime.submit(_payload("Describe [[error:401]]"))
        assert runtime.wait_until_idle(timeout=10)
        task = runtime.get_status(task_id)

    assert task.status == TaskStatus.FAILED
    assert task.error == "demo returned HTTP 401"


def test_serve_until_idle_returns_without_signal(settings, credentials) -> None:
    with build_runtime(settings, invoker=EchoProvider(), tenant_settings=credentials) as runtime:
        task_id = runtime.submit(_payload("serve me"))
        stopped_by = runtime.serve_forever(until_idle=True)
        assert runtime.get_status(task_id).status == TaskStatus.COMPLETED

    assert stopped_by is None


def test_request_stop_ends_serve_forever(settings, credentials) -> None:
    outcome: list[str | None] = []
    with build_runtime(settings, invoker=EchoProvider(), tenant_settings=credentials) as runtime:
        worker = threading.Thread(target=lambda: outcome.append(runtime.serve_forever()))
        worker.start()
        runtime.request_stop(signal_name="SIGTERM")
        worker.join(timeout=5)

    assert outcome == ["SIGTERM"]

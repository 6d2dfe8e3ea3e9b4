from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ai_task_queue.config import RetrySettings, Settings
from ai_task_queue.queue.models import ProviderLimits

pytestmark = [
    allure.epic("AI Task Queue"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in (
        "AI_TASK_QUEUE_DB_PATH",
        "AI_TASK_QUEUE_LOG_LEVEL",
        "AI_TASK_QUEUE_MAX_RETRIES",
        "AI_TASK_QUEUE_RETRY_DELAYS_MS",
        "AI_TASK_QUEUE_RATE_LIMITS",
        "AI_TASK_QUEUE_STUCK_THRESHOLD_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_documented_values() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".ai_task_queue.db")
    assert settings.tasks.retention_days == 3
    assert settings.retry.max_retries == 3
    assert settings.retry.delays_ms == (1_000, 2_000, 5_000)
    assert settings.recovery.stuck_threshold_seconds == 600
    assert settings.rate_limits.overrides == {}
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AI_TASK_QUEUE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_retry_delays_and_rate_limits_are_parsed(monkeypatch) -> None:
    monkeypatch.setenv("AI_TASK_QUEUE_RETRY_DELAYS_MS", "500, 1500,")
    monkeypatch.setenv("AI_TASK_QUEUE_RATE_LIMITS", "claude|10|80000, openai|100|50000")
    monkeypatch.setenv("AI_TASK_QUEUE_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.retry.delays_ms == (500, 1_500)
    assert settings.rate_limits.overrides == {
        "claude": ProviderLimits(10, 80_000),
        "openai": ProviderLimits(100, 50_000),
    }
    assert settings.log_level == "DEBUG"


def test_malformed_rate_limit_entry_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AI_TASK_QUEUE_RATE_LIMITS", "claude|10")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_non_positive_rate_limit_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AI_TASK_QUEUE_RATE_LIMITS", "claude|0|100")

    with pytest.raises(ValueError, match="Invalid AI_TASK_QUEUE_RATE_LIMITS value"):
        Settings.from_env()


def test_validate_rejects_negative_retry_budget() -> None:
    settings = Settings(retry=RetrySettings(max_retries=-1))

    with pytest.raises(ValueError, match="AI_TASK_QUEUE_MAX_RETRIES"):
        settings.validate()


def test_validate_rejects_empty_delay_table() -> None:
    settings = Settings(retry=RetrySettings(delays_ms=()))

    with pytest.raises(ValueError, match="AI_TASK_QUEUE_RETRY_DELAYS_MS"):
        settings.validate()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="AI_TASK_QUEUE_LOG_LEVEL"):
        Settings(log_level="LOUD").validate()

from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_factory.config import ExecutorSettings, SchedulerSettings, Settings

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "TASK_FACTORY_DB_PATH",
    "TASK_FACTORY_ACTOR_ROLE",
    "TASK_FACTORY_MAX_PARALLEL",
    "TASK_FACTORY_REQUIRE_PR_URL",
    "TASK_FACTORY_BUDGET_LIMITS",
    "TASK_FACTORY_AI_ENABLED",
    "TASK_FACTORY_AI_PROVIDER",
    "TASK_FACTORY_AGENT_COMMAND",
    "ANTHROPIC_MONTHLY_LIMIT_USD",
    "OPENAI_MONTHLY_LIMIT_USD",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".task_factory.db")
    assert settings.actor_role == "owner"
    assert settings.scheduler.default_max_parallel == 2
    assert settings.scheduler.require_pr_url is False
    assert settings.budget.monthly_limits_usd == {}
    assert settings.ai.enabled is True
    assert settings.ai.provider == "mock"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_FACTORY_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASK_FACTORY_ACTOR_ROLE", " Viewer ")
    monkeypatch.setenv("TASK_FACTORY_MAX_PARALLEL", "5")
    monkeypatch.setenv("TASK_FACTORY_REQUIRE_PR_URL", "yes")
    monkeypatch.setenv("TASK_FACTORY_AI_PROVIDER", "Anthropic")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.actor_role == "viewer"
    assert settings.scheduler.default_max_parallel == 5
    assert settings.scheduler.require_pr_url is True
    assert settings.ai.provider == "anthropic"
    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_budget_limits_merge_list_and_provider_variables(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASK_FACTORY_BUDGET_LIMITS", "Anthropic:10, gemini:2.5,")
    monkeypatch.setenv("ANTHROPIC_MONTHLY_LIMIT_USD", "25")

    settings = Settings.from_env()

    assert settings.budget.monthly_limits_usd == {"anthropic": 25.0, "gemini": 2.5}
    assert settings.budget.limit_for(" GEMINI ") == 2.5
    assert settings.budget.limit_for("openai") is None


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("TASK_FACTORY_BUDGET_LIMITS", "anthropic", "Expected format"),
        ("TASK_FACTORY_BUDGET_LIMITS", "anthropic:lots", "Invalid USD amount"),
        ("OPENAI_MONTHLY_LIMIT_USD", "ten", "Invalid USD amount for OPENAI_MONTHLY_LIMIT_USD"),
        ("TASK_FACTORY_AI_ENABLED", "maybe", "Invalid boolean value for TASK_FACTORY_AI_ENABLED"),
    ],
)
def test_from_env_rejects_malformed_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(actor_role="admin"), "TASK_FACTORY_ACTOR_ROLE"),
        (
            Settings(scheduler=SchedulerSettings(default_max_parallel=21)),
            "TASK_FACTORY_MAX_PARALLEL",
        ),
        (
            Settings(scheduler=SchedulerSettings(stale_attempt_seconds=0)),
            "TASK_FACTORY_STALE_ATTEMPT_SECONDS",
        ),
        (Settings(sqlite_busy_timeout_ms=0), "TASK_FACTORY_SQLITE_BUSY_TIMEOUT_MS"),
        (
            Settings(scheduler=SchedulerSettings(stale_attempt_seconds=60)),
            "TASK_FACTORY_STALE_ATTEMPT_SECONDS must be >= TASK_FACTORY_AGENT_TIMEOUT_SECONDS",
        ),
    ],
)
def test_validate_rejects_unusable_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_for_executor_requires_prompt_placeholder() -> None:
    with pytest.raises(ValueError, match="TASK_FACTORY_AGENT_COMMAND is required"):
        Settings().validate_for_executor()

    settings = Settings(executor=ExecutorSettings(command_template="agent --run"))
    with pytest.raises(ValueError, match="placeholder"):
        settings.validate_for_executor()

    Settings(executor=ExecutorSettings(command_template="agent {prompt}")).validate_for_executor()

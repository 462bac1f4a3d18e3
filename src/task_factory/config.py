"""Runtime configuration for the task-factory scheduler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

MAX_PARALLEL_CEILING = 20

_PROVIDER_LIMIT_ENV = {
    "anthropic": "ANTHROPIC_MONTHLY_LIMIT_USD",
    "openai": "OPENAI_MONTHLY_LIMIT_USD",
}


@dataclass(slots=True)
class SchedulerSettings:
    """Admission and reconciliation settings."""

    default_max_parallel: int = 2
    reconcile_interval_seconds: float = 5.0
    stale_attempt_seconds: int = 1_800
    require_pr_url: bool = False


@dataclass(slots=True)
class BudgetSettings:
    """Monthly spend limits per provider, in USD."""

    monthly_limits_usd: dict[str, float] = field(default_factory=dict)

    def limit_for(self, provider: str) -> float | None:
        return self.monthly_limits_usd.get(provider.strip().lower())


@dataclass(slots=True)
class AiSettings:
    """Which agent provider attempts are charged to."""

    enabled: bool = True
    provider: str = "mock"


@dataclass(slots=True)
class ExecutorSettings:
    """Agent subprocess settings."""

    command_template: str = ""
    timeout_seconds: int = 1_800
    workdir_root: Path = Path(".task_factory_workdirs")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_factory.db")
    sqlite_busy_timeout_ms: int = 5_000
    actor_role: str = "owner"
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    ai: AiSettings = field(default_factory=AiSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_FACTORY_DB_PATH", ".task_factory.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASK_FACTORY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            actor_role=os.getenv("TASK_FACTORY_ACTOR_ROLE", "owner").strip().lower(),
            log_level=os.getenv("TASK_FACTORY_LOG_LEVEL", "INFO").strip().upper(),
            scheduler=SchedulerSettings(
                default_max_parallel=int(os.getenv("TASK_FACTORY_MAX_PARALLEL", "2")),
                reconcile_interval_seconds=float(
                    os.getenv("TASK_FACTORY_RECONCILE_INTERVAL_SECONDS", "5.0"),
                ),
                stale_attempt_seconds=int(
                    os.getenv("TASK_FACTORY_STALE_ATTEMPT_SECONDS", "1800"),
                ),
                require_pr_url=_env_bool("TASK_FACTORY_REQUIRE_PR_URL", default=False),
            ),
            budget=BudgetSettings(monthly_limits_usd=_collect_budget_limits()),
            ai=AiSettings(
                enabled=_env_bool("TASK_FACTORY_AI_ENABLED", default=True),
                provider=os.getenv("TASK_FACTORY_AI_PROVIDER", "mock").strip().lower(),
            ),
            executor=ExecutorSettings(
                command_template=os.getenv("TASK_FACTORY_AGENT_COMMAND", "").strip(),
                timeout_seconds=int(os.getenv("TASK_FACTORY_AGENT_TIMEOUT_SECONDS", "1800")),
                workdir_root=Path(
                    os.getenv("TASK_FACTORY_WORKDIR_ROOT", ".task_factory_workdirs"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASK_FACTORY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.actor_role not in {"owner", "editor", "viewer"}:
            raise ValueError(
                "TASK_FACTORY_ACTOR_ROLE must be one of owner, editor, viewer; "
                f"got {self.actor_role!r}.",
            )
        if not 1 <= self.scheduler.default_max_parallel <= MAX_PARALLEL_CEILING:
            raise ValueError(
                f"TASK_FACTORY_MAX_PARALLEL must be between 1 and {MAX_PARALLEL_CEILING}.",
            )
        if self.scheduler.reconcile_interval_seconds <= 0:
            raise ValueError("TASK_FACTORY_RECONCILE_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.stale_attempt_seconds <= 0:
            raise ValueError("TASK_FACTORY_STALE_ATTEMPT_SECONDS must be > 0.")
        if self.executor.timeout_seconds <= 0:
            raise ValueError("TASK_FACTORY_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.stale_attempt_seconds < self.executor.timeout_seconds:
            # Silent agents only refresh the heartbeat when they print a line.
            raise ValueError(
                "TASK_FACTORY_STALE_ATTEMPT_SECONDS must be >= "
                "TASK_FACTORY_AGENT_TIMEOUT_SECONDS "
                f"({self.scheduler.stale_attempt_seconds} < {self.executor.timeout_seconds}).",
            )
        if not self.ai.provider:
            raise ValueError("TASK_FACTORY_AI_PROVIDER must not be empty.")
        for provider, limit in self.budget.monthly_limits_usd.items():
            if limit < 0:
                raise ValueError(f"Monthly budget limit for {provider!r} must be >= 0.")

    def validate_for_executor(self) -> None:
        """Raise configuration error if the agent command cannot be launched."""

        self.validate()
        if not self.executor.command_template:
            raise ValueError(
                "TASK_FACTORY_AGENT_COMMAND is required to dispatch attempts "
                "(pass --agent-command or set the variable).",
            )
        if "{prompt}" not in self.executor.command_template:
            raise ValueError("TASK_FACTORY_AGENT_COMMAND must contain the {prompt} placeholder.")


def _collect_budget_limits() -> dict[str, float]:
    limits: dict[str, float] = {}
    raw = os.getenv("TASK_FACTORY_BUDGET_LIMITS", "").strip()
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid TASK_FACTORY_BUDGET_LIMITS entry: "
                f"{token!r}. Expected format '<provider>:<usd>'.",
            )
        provider, amount_raw = token.split(":", 1)
        limits[provider.strip().lower()] = _parse_limit("TASK_FACTORY_BUDGET_LIMITS", amount_raw)

    # Provider-specific variables win over the combined list.
    for provider, env_name in _PROVIDER_LIMIT_ENV.items():
        value = os.getenv(env_name)
        if value is None or not value.strip():
            continue
        limits[provider] = _parse_limit(env_name, value)
    return limits


def _parse_limit(name: str, value: str) -> float:
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid USD amount for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

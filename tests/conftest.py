"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from task_factory.config import AiSettings, SchedulerSettings
from task_factory.executor import (
    CompletionCallback,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorError,
    LogCallback,
)
from task_factory.scheduler.budget import BudgetGuard
from task_factory.scheduler.events import EventsHub
from task_factory.scheduler.models import ProjectView, TaskView
from task_factory.scheduler.readiness import ReadinessChecker, StoreReadinessProbe
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.scheduler.service import FactoryScheduler


class RecordingExecutor:
    """Executor fake that records dispatches and lets tests complete them."""

    def __init__(self) -> None:
        self.requests: list[ExecutionRequest] = []
        self.stopped: list[str] = []
        self.fail_next: ExecutorError | None = None
        self.fail_always: ExecutorError | None = None
        self.on_start: Callable[[ExecutionRequest], None] | None = None
        self._callbacks: dict[str, CompletionCallback] = {}
        self._log_callbacks: dict[str, LogCallback] = {}

    def start(
        self,
        request: ExecutionRequest,
        *,
        on_complete: CompletionCallback,
        on_log: LogCallback,
    ) -> None:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        if self.fail_always is not None:
            raise self.fail_always
        self.requests.append(request)
        self._callbacks[request.attempt_id] = on_complete
        self._log_callbacks[request.attempt_id] = on_log
        if self.on_start is not None:
            self.on_start(request)

    def stop(self, attempt_id: str) -> bool:
        self.stopped.append(attempt_id)
        return attempt_id in self._callbacks

    @property
    def started_ids(self) -> list[str]:
        return [request.attempt_id for request in self.requests]

    def log(self, attempt_id: str, line: str) -> None:
        self._log_callbacks[attempt_id](attempt_id, line)

    def complete(
        self,
        attempt_id: str,
        *,
        exit_code: int = 0,
        pr_url: str | None = "https://github.com/acme/app/pull/1",
        cost_usd: float | None = None,
        timed_out: bool = False,
    ) -> None:
        callback = self._callbacks.pop(attempt_id)
        callback(
            ExecutionOutcome(
                attempt_id=attempt_id,
                exit_code=exit_code,
                pr_url=pr_url,
                error_message=None if exit_code == 0 else f"exit {exit_code}",
                cost_usd=cost_usd,
                timed_out=timed_out,
            ),
        )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[SchedulerRepository]:
    repo = SchedulerRepository(tmp_path / "scheduler.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture()
def budget_limits() -> dict[str, float]:
    return {}


@pytest.fixture()
def budget_guard(
    repository: SchedulerRepository,
    budget_limits: dict[str, float],
) -> BudgetGuard:
    return BudgetGuard(repository=repository, limits_usd=budget_limits)


@pytest.fixture()
def events() -> EventsHub:
    return EventsHub()


@pytest.fixture()
def scheduler(
    repository: SchedulerRepository,
    executor: RecordingExecutor,
    budget_guard: BudgetGuard,
    events: EventsHub,
) -> FactoryScheduler:
    return FactoryScheduler(
        repository=repository,
        executor=executor,
        budget_guard=budget_guard,
        readiness=ReadinessChecker(
            StoreReadinessProbe(repository=repository, ai=AiSettings(provider="anthropic")),
        ),
        events=events,
        settings=SchedulerSettings(stale_attempt_seconds=600),
        provider="anthropic",
    )


@pytest.fixture()
def project(repository: SchedulerRepository) -> ProjectView:
    return repository.create_project(name="demo", max_parallel=2, repo_path="/srv/demo")


@pytest.fixture()
def make_tasks(repository: SchedulerRepository) -> Callable[[str, int], list[TaskView]]:
    def _make(project_id: str, count: int) -> list[TaskView]:
        return [
            repository.create_task(project_id=project_id, title=f"Task {index + 1}")
            for index in range(count)
        ]

    return _make

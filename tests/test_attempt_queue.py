from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from task_factory.scheduler.budget import BudgetGuard
from task_factory.scheduler.models import (
    AttemptStatus,
    FactoryRunMode,
    ProjectView,
    SchedulingScope,
    TaskStatus,
    TaskView,
)
from task_factory.scheduler.queue import AttemptQueue
from task_factory.scheduler.repository import SchedulerRepository

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Attempt Queue"),
]


def _start_run(
    repository: SchedulerRepository,
    project: ProjectView,
    tasks: list[TaskView],
    *,
    max_parallel: int,
) -> tuple[str, list[str]]:
    creation = repository.create_factory_run(
        project_id=project.project_id,
        mode=FactoryRunMode.SELECTION,
        max_parallel=max_parallel,
        provider="anthropic",
        task_ids=[task.task_id for task in tasks],
    )
    assert creation is not None
    return creation.run.run_id, creation.attempt_ids


def test_admission_is_fifo_and_bounded(
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    tasks = make_tasks(project.project_id, 5)
    run_id, attempt_ids = _start_run(repository, project, tasks, max_parallel=2)
    queue = AttemptQueue(
        repository=repository,
        budget_guard=BudgetGuard(repository=repository, limits_usd={}),
    )
    scope = SchedulingScope.for_run(run_id)

    result = queue.admit(scope)

    assert [attempt.attempt_id for attempt in result.admitted] == attempt_ids[:2]
    assert result.queued_attempt_ids == attempt_ids[2:]
    assert queue.has_available_slot(scope) is False
    assert [queue.queue_position(attempt_id) for attempt_id in attempt_ids] == [
        None,
        None,
        1,
        2,
        3,
    ]
    assert repository.get_task(tasks[0].task_id).status is TaskStatus.IN_PROGRESS
    assert repository.get_task(tasks[2].task_id).status is TaskStatus.TODO

    # Admitting again with no free slot changes nothing.
    assert queue.admit(scope).admitted == []

    repository.finish_attempt(attempt_id=attempt_ids[1], status=AttemptStatus.COMPLETED)
    follow_up = queue.admit(scope)

    assert [attempt.attempt_id for attempt in follow_up.admitted] == [attempt_ids[2]]
    assert queue.queue_position(attempt_ids[3]) == 1
    running = repository.list_attempts(
        factory_run_id=run_id,
        statuses=[AttemptStatus.RUNNING],
    )
    assert len(running) == 2


def test_budget_gate_keeps_attempts_waiting(
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    tasks = make_tasks(project.project_id, 2)
    run_id, attempt_ids = _start_run(repository, project, tasks, max_parallel=2)
    repository.append_ledger_entry(provider="anthropic", cost_usd=5.0)
    queue = AttemptQueue(
        repository=repository,
        budget_guard=BudgetGuard(repository=repository, limits_usd={"anthropic": 5.0}),
    )

    result = queue.admit(SchedulingScope.for_run(run_id))

    assert result.admitted == []
    assert result.budget_blocked is not None
    assert result.budget_blocked.limit_usd == 5.0
    assert sorted(result.queued_attempt_ids) == sorted(attempt_ids)


def test_cancelled_run_admits_nothing(
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    tasks = make_tasks(project.project_id, 3)
    run_id, _ = _start_run(repository, project, tasks, max_parallel=3)
    repository.stop_factory_run(run_id)
    queue = AttemptQueue(
        repository=repository,
        budget_guard=BudgetGuard(repository=repository, limits_usd={}),
    )

    assert queue.admit(SchedulingScope.for_run(run_id)).admitted == []
    assert queue.has_available_slot(SchedulingScope.for_run("missing")) is False


@pytest.mark.parametrize("workers", [4, 8])
def test_concurrent_admission_never_exceeds_max_parallel(
    tmp_path: Path,
    workers: int,
) -> None:
    db_path = tmp_path / "concurrent.db"
    setup = SchedulerRepository(db_path)
    setup.init_schema()
    project = setup.create_project(name="race", max_parallel=3, repo_path="/srv/race")
    tasks = [setup.create_task(project_id=project.project_id, title=f"T{i}") for i in range(10)]
    run_id, _ = _start_run(setup, project, tasks, max_parallel=3)
    scope = SchedulingScope.for_run(run_id)

    barrier = threading.Barrier(workers)
    admitted: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _admit() -> None:
        repository = SchedulerRepository(db_path, sqlite_busy_timeout_ms=10_000)
        queue = AttemptQueue(
            repository=repository,
            budget_guard=BudgetGuard(repository=repository, limits_usd={}),
        )
        try:
            barrier.wait()
            result = queue.admit(scope)
            with lock:
                admitted.extend(attempt.attempt_id for attempt in result.admitted)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=_admit) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(admitted) == 3
    assert len(set(admitted)) == 3
    assert setup.count_running_attempts(scope) == 3
    setup.close()

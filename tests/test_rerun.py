from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import allure
import pytest

from task_factory.scheduler.models import (
    AttemptStatus,
    CommandOutcome,
    FactoryRunMode,
    FactoryRunStatus,
    ProjectView,
    TaskStatus,
    TaskView,
)
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.scheduler.rerun import RerunService, clamp_max_parallel
from task_factory.scheduler.service import FactoryScheduler

if TYPE_CHECKING:
    from conftest import RecordingExecutor

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Reruns"),
]

FAILED_POSITIONS = {1, 3, 6}


@pytest.fixture()
def finished_run(
    scheduler: FactoryScheduler,
    executor: RecordingExecutor,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> tuple[str, list[TaskView]]:
    tasks = make_tasks(project.project_id, 7)
    result = scheduler.start_batch(project_id=project.project_id, max_parallel=7)
    for index, attempt_id in enumerate(result.attempt_ids):
        executor.complete(attempt_id, exit_code=1 if index in FAILED_POSITIONS else 0)
    return result.run_id, tasks


def test_rerun_failed_queues_only_failed_tasks(
    scheduler: FactoryScheduler,
    executor: RecordingExecutor,
    repository: SchedulerRepository,
    finished_run: tuple[str, list[TaskView]],
) -> None:
    source_run_id, tasks = finished_run
    source = repository.get_factory_run(source_run_id)
    assert source.status is FactoryRunStatus.COMPLETED
    assert source.counts.failed == 3

    result = RerunService(scheduler).rerun_failed(source_run_id, max_parallel=2)

    assert result.ok
    assert result.run is not None
    assert result.run.mode is FactoryRunMode.SELECTION
    assert result.run.source_run_id == source_run_id
    assert result.run.counts.total == 3
    assert result.run.counts.queued == 3
    assert result.task_ids == [tasks[index].task_id for index in sorted(FAILED_POSITIONS)]

    rerun = repository.get_factory_run(result.run_id)
    assert rerun.max_parallel == 2
    assert rerun.counts.running == 2
    assert rerun.counts.queued == 1
    assert len(executor.started_ids) == 7 + 2
    events = repository.list_attempt_events(result.attempt_ids[0])
    assert events[0].status_to is AttemptStatus.QUEUED


def test_each_rerun_gets_its_own_run(
    scheduler: FactoryScheduler,
    repository: SchedulerRepository,
    finished_run: tuple[str, list[TaskView]],
) -> None:
    source_run_id, _ = finished_run
    service = RerunService(scheduler)

    first = service.rerun_failed(source_run_id)
    second = service.rerun_failed(source_run_id)

    assert first.ok
    assert second.ok
    assert first.run_id != second.run_id
    # The failed tasks are already held by the first rerun.
    assert second.attempt_ids == []
    assert second.task_ids == []
    assert repository.get_factory_run(second.run_id).status is FactoryRunStatus.COMPLETED


def test_rerun_selected_ignores_source_outcome(
    scheduler: FactoryScheduler,
    repository: SchedulerRepository,
    finished_run: tuple[str, list[TaskView]],
) -> None:
    source_run_id, tasks = finished_run

    result = RerunService(scheduler).rerun_selected(
        source_run_id,
        [tasks[0].task_id, tasks[0].task_id, tasks[2].task_id],
    )

    assert result.ok
    assert result.task_ids == [tasks[0].task_id, tasks[2].task_id]
    assert len(result.attempt_ids) == 2
    run = repository.get_factory_run(result.run_id)
    assert run.target_task_ids == [tasks[0].task_id, tasks[2].task_id]


def test_rerun_selected_keeps_runnable_tasks_of_the_source_run(
    scheduler: FactoryScheduler,
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
    finished_run: tuple[str, list[TaskView]],
) -> None:
    source_run_id, tasks = finished_run
    outsider = make_tasks(project.project_id, 1)[0]
    assert repository.set_task_status(task_id=tasks[2].task_id, status=TaskStatus.DONE)
    service = RerunService(scheduler)

    result = service.rerun_selected(
        source_run_id,
        [tasks[0].task_id, tasks[2].task_id, outsider.task_id],
    )

    assert result.ok
    assert result.task_ids == [tasks[0].task_id]
    assert len(result.attempt_ids) == 1
    assert repository.get_task(tasks[2].task_id).status is TaskStatus.DONE
    assert repository.get_task(outsider.task_id).status is TaskStatus.TODO

    denied = service.rerun_selected(source_run_id, [tasks[2].task_id, outsider.task_id])
    assert denied.outcome is CommandOutcome.DENIED
    assert denied.reason == "NO_TASKS_TO_RERUN"


def test_rerun_without_failures_is_denied(
    scheduler: FactoryScheduler,
    executor: RecordingExecutor,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    make_tasks(project.project_id, 1)
    result = scheduler.start_batch(project_id=project.project_id)
    executor.complete(result.attempt_ids[0])
    service = RerunService(scheduler)

    denied = service.rerun_failed(result.run_id)

    assert denied.outcome is CommandOutcome.DENIED
    assert denied.reason == "NO_TASKS_TO_RERUN"
    assert service.rerun_selected(result.run_id, []).reason == "NO_TASKS_TO_RERUN"
    assert service.rerun_failed("missing").outcome is CommandOutcome.NOT_FOUND


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, 4),
        (0, 1),
        (-3, 1),
        (7, 7),
        (50, 20),
    ],
)
def test_clamp_max_parallel(value: int | None, expected: int) -> None:
    assert clamp_max_parallel(value, default=4) == expected

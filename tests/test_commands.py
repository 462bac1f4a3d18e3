from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import allure
import pytest

from task_factory.scheduler.autopilot import AutopilotService
from task_factory.scheduler.commands import CallerRole, FactoryCommands
from task_factory.scheduler.models import (
    BudgetReason,
    CommandOutcome,
    FactoryRunMode,
    ProjectView,
    TaskStatus,
    TaskView,
)
from task_factory.scheduler.planning import PlanningService
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.scheduler.rerun import RerunService
from task_factory.scheduler.service import FactoryScheduler

if TYPE_CHECKING:
    from conftest import RecordingExecutor

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Command Surface"),
]


@pytest.fixture()
def commands_for(
    scheduler: FactoryScheduler,
    repository: SchedulerRepository,
) -> Callable[[str], FactoryCommands]:
    rerun = RerunService(scheduler)
    autopilot = AutopilotService(scheduler)
    planning = PlanningService(repository)

    def _build(role: str) -> FactoryCommands:
        return FactoryCommands(
            role=role,
            scheduler=scheduler,
            rerun=rerun,
            autopilot=autopilot,
            planning=planning,
        )

    return _build


def test_viewer_cannot_mutate(
    commands_for: Callable[[str], FactoryCommands],
    executor: RecordingExecutor,
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    tasks = make_tasks(project.project_id, 1)
    viewer = commands_for("viewer")

    results = [
        viewer.start_batch(project_id=project.project_id),
        viewer.retry_task(tasks[0].task_id),
        viewer.start_project(project.project_id),
        viewer.create_autopilot(project.project_id),
        viewer.create_planning(project.project_id, "idea"),
        viewer.rerun_failed("run"),
        viewer.move_task(tasks[0].task_id, TaskStatus.DONE),
    ]

    assert {result.outcome for result in results} == {CommandOutcome.FORBIDDEN}
    assert "viewer" in results[0].message
    assert executor.requests == []
    assert repository.list_factory_runs(project_id=project.project_id) == []


def test_viewer_can_query(
    commands_for: Callable[[str], FactoryCommands],
    project: ProjectView,
) -> None:
    viewer = commands_for("viewer")

    assert viewer.readiness(project.project_id).all_ready is False
    assert viewer.budget().reason is BudgetReason.NO_LIMIT
    assert viewer.budget("openai").provider == "openai"


@pytest.mark.parametrize("role", [CallerRole.OWNER, CallerRole.EDITOR])
def test_writers_delegate_to_services(
    role: CallerRole,
    commands_for: Callable[[str], FactoryCommands],
    executor: RecordingExecutor,
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    tasks = make_tasks(project.project_id, 3)
    commands = commands_for(role.value)

    started = commands.start_batch(project_id=project.project_id, task_ids=[tasks[1].task_id])

    assert started.ok
    assert repository.get_factory_run(started.run_id).mode is FactoryRunMode.SELECTION
    assert executor.started_ids == started.attempt_ids

    stopped = commands.stop_run(started.run_id)
    assert stopped.ok

    planning = commands.create_planning(project.project_id, "Polish onboarding")
    applied = commands.apply_planning(planning.session_id, titles=["Write welcome email"])
    assert applied.ok
    assert len(repository.list_tasks(project_id=project.project_id)) == 4


def test_unknown_role_is_rejected(
    scheduler: FactoryScheduler,
    repository: SchedulerRepository,
) -> None:
    with pytest.raises(ValueError):
        FactoryCommands(
            role="admin",
            scheduler=scheduler,
            rerun=RerunService(scheduler),
            autopilot=AutopilotService(scheduler),
            planning=PlanningService(repository),
        )

from __future__ import annotations

from collections.abc import Callable

import allure
import pytest

from task_factory.scheduler.models import (
    CommandOutcome,
    PlanningSessionStatus,
    ProjectView,
    TaskStatus,
    TaskView,
)
from task_factory.scheduler.planning import PlanningService
from task_factory.scheduler.repository import SchedulerRepository

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Planning"),
]


@pytest.fixture()
def planning(repository: SchedulerRepository) -> PlanningService:
    return PlanningService(repository)


def test_apply_is_recorded_once(
    planning: PlanningService,
    project: ProjectView,
    make_tasks: Callable[[str, int], list[TaskView]],
) -> None:
    tasks = make_tasks(project.project_id, 3)
    created = planning.create_session(project.project_id, "  Split the importer  ")
    session_id = created.session_id

    first = planning.apply(session_id, [tasks[0].task_id, tasks[1].task_id])

    assert first.ok
    assert first.task_ids == [tasks[0].task_id, tasks[1].task_id]
    session = planning.get_session(session_id)
    assert session.status is PlanningSessionStatus.APPLIED
    assert session.idea_text == "Split the importer"
    assert session.applied_at is not None

    second = planning.apply(session_id, [tasks[2].task_id])

    assert second.outcome is CommandOutcome.CONFLICT
    assert second.reason == "ALREADY_APPLIED"
    assert second.task_ids == first.task_ids
    assert planning.get_session(session_id).applied_task_ids == first.task_ids


def test_apply_plan_creates_todo_tasks(
    planning: PlanningService,
    repository: SchedulerRepository,
    project: ProjectView,
) -> None:
    session_id = planning.create_session(project.project_id, "Dark mode").session_id

    result = planning.apply_plan(session_id, ["Add theme toggle", "  ", "Persist preference"])

    assert result.ok
    assert len(result.task_ids) == 2
    tasks = repository.list_tasks(project_id=project.project_id)
    assert [task.title for task in tasks] == ["Add theme toggle", "Persist preference"]
    assert {task.status for task in tasks} == {TaskStatus.TODO}

    repeated = planning.apply_plan(session_id, ["Another task"])
    assert repeated.reason == "ALREADY_APPLIED"
    assert len(repository.list_tasks(project_id=project.project_id)) == 2


def test_planning_rejections(
    planning: PlanningService,
    project: ProjectView,
) -> None:
    assert planning.create_session("missing", "idea").outcome is CommandOutcome.NOT_FOUND
    with pytest.raises(ValueError, match="idea_text"):
        planning.create_session(project.project_id, "   ")

    session_id = planning.create_session(project.project_id, "idea").session_id
    assert planning.apply(session_id, ["nope"]).outcome is CommandOutcome.NOT_FOUND
    assert planning.get_session(session_id).status is PlanningSessionStatus.DISCUSSION
    assert planning.apply("missing", []).outcome is CommandOutcome.NOT_FOUND

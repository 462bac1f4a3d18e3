from __future__ import annotations

from dataclasses import dataclass

import allure

from task_factory.config import AiSettings
from task_factory.scheduler.models import ProjectView, TaskStatus
from task_factory.scheduler.readiness import (
    ReadinessChecker,
    StoreReadinessProbe,
    evaluate_readiness,
)
from task_factory.scheduler.repository import SchedulerRepository

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Readiness"),
]


@dataclass
class StaticProbe:
    ai: bool = True
    tasks: bool = True
    repo: bool = True

    def ai_enabled(self) -> bool:
        return self.ai

    def has_tasks(self, project_id: str) -> bool:
        return self.tasks

    def repo_configured(self, project_id: str) -> bool:
        return self.repo


def test_all_checks_pass() -> None:
    report = ReadinessChecker(StaticProbe()).check("project")

    assert report.all_ready is True
    assert [check.id for check in report.checks] == ["ai-enabled", "has-tasks", "repo-configured"]
    assert report.blockers == []


def test_blockers_list_only_failed_checks() -> None:
    report = evaluate_readiness(ai_enabled=True, has_tasks=False, repo_configured=False)

    assert report.all_ready is False
    assert [blocker.id for blocker in report.blockers] == ["has-tasks", "repo-configured"]
    assert all(blocker.description for blocker in report.blockers)


def test_store_probe_reads_project_and_tasks(
    repository: SchedulerRepository,
    project: ProjectView,
) -> None:
    checker = ReadinessChecker(
        StoreReadinessProbe(repository=repository, ai=AiSettings(provider="anthropic")),
    )

    before = checker.check(project.project_id)
    assert [blocker.id for blocker in before.blockers] == ["has-tasks"]

    repository.create_task(project_id=project.project_id, title="Ship it")
    assert checker.check(project.project_id).all_ready is True


def test_store_probe_ignores_finished_tasks(
    repository: SchedulerRepository,
    project: ProjectView,
) -> None:
    repository.create_task(project_id=project.project_id, title="Old", status=TaskStatus.DONE)
    probe = StoreReadinessProbe(repository=repository, ai=AiSettings(provider="anthropic"))

    assert probe.has_tasks(project.project_id) is False


def test_store_probe_flags_disabled_ai_and_missing_repo(repository: SchedulerRepository) -> None:
    bare = repository.create_project(name="bare")
    repository.create_task(project_id=bare.project_id, title="Task")
    checker = ReadinessChecker(
        StoreReadinessProbe(repository=repository, ai=AiSettings(enabled=False)),
    )

    report = checker.check(bare.project_id)

    assert [blocker.id for blocker in report.blockers] == ["ai-enabled", "repo-configured"]

"""Start preconditions for runs and autopilot sessions."""

from __future__ import annotations

from typing import Protocol

from task_factory.config import AiSettings
from task_factory.scheduler.models import (
    RUNNABLE_TASK_STATUSES,
    ReadinessCheck,
    ReadinessReport,
)
from task_factory.scheduler.repository import SchedulerRepository


class ReadinessProbe(Protocol):
    """Answers the individual readiness questions for a project."""

    def ai_enabled(self) -> bool: ...

    def has_tasks(self, project_id: str) -> bool: ...

    def repo_configured(self, project_id: str) -> bool: ...


class StoreReadinessProbe:
    """Probe backed by AI settings and the scheduler store."""

    def __init__(self, *, repository: SchedulerRepository, ai: AiSettings) -> None:
        self.repository = repository
        self.ai = ai

    def ai_enabled(self) -> bool:
        return self.ai.enabled and bool(self.ai.provider)

    def has_tasks(self, project_id: str) -> bool:
        return any(
            task.status in RUNNABLE_TASK_STATUSES
            for task in self.repository.list_tasks(project_id=project_id)
        )

    def repo_configured(self, project_id: str) -> bool:
        project = self.repository.get_project(project_id)
        return project is not None and project.repo_configured


def evaluate_readiness(
    *,
    ai_enabled: bool,
    has_tasks: bool,
    repo_configured: bool,
) -> ReadinessReport:
    return ReadinessReport(
        checks=(
            ReadinessCheck(
                id="ai-enabled",
                passed=ai_enabled,
                description="An AI provider is configured and enabled"
                if ai_enabled
                else "Enable an AI provider before starting execution",
            ),
            ReadinessCheck(
                id="has-tasks",
                passed=has_tasks,
                description="Project has runnable tasks"
                if has_tasks
                else "Add at least one todo, in-progress or in-review task",
            ),
            ReadinessCheck(
                id="repo-configured",
                passed=repo_configured,
                description="Project repository is configured"
                if repo_configured
                else "Configure a repository path or URL for the project",
            ),
        ),
    )


class ReadinessChecker:
    def __init__(self, probe: ReadinessProbe) -> None:
        self.probe = probe

    def check(self, project_id: str) -> ReadinessReport:
        return evaluate_readiness(
            ai_enabled=self.probe.ai_enabled(),
            has_tasks=self.probe.has_tasks(project_id),
            repo_configured=self.probe.repo_configured(project_id),
        )

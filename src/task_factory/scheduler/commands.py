"""Role-checked command surface over the scheduler services."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from enum import Enum

from task_factory.scheduler.autopilot import AutopilotService
from task_factory.scheduler.models import (
    AutopilotMode,
    BudgetDecision,
    CommandResult,
    FactoryRunMode,
    ReadinessReport,
    TaskStatus,
)
from task_factory.scheduler.planning import PlanningService
from task_factory.scheduler.rerun import RerunService
from task_factory.scheduler.service import FactoryScheduler

logger = logging.getLogger(__name__)


class CallerRole(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"

    @property
    def can_mutate(self) -> bool:
        return self in {CallerRole.OWNER, CallerRole.EDITOR}


class FactoryCommands:
    """Thin adapter: authorize the caller, then delegate to one service call.

    Read-only queries are open to every role; anything that changes run,
    attempt or session state needs ``owner`` or ``editor``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        role: CallerRole | str,
        scheduler: FactoryScheduler,
        rerun: RerunService,
        autopilot: AutopilotService,
        planning: PlanningService,
    ) -> None:
        self.role = CallerRole(role)
        self.scheduler = scheduler
        self.rerun = rerun
        self.autopilot = autopilot
        self.planning = planning

    # Factory runs

    def start_batch(
        self,
        *,
        project_id: str,
        column_status: TaskStatus | None = None,
        task_ids: Sequence[str] = (),
        max_parallel: int | None = None,
    ) -> CommandResult:
        mode = FactoryRunMode.SELECTION if task_ids else FactoryRunMode.COLUMN
        return self._mutate(
            "start_batch",
            lambda: self.scheduler.start_batch(
                project_id=project_id,
                mode=mode,
                column_status=column_status,
                task_ids=task_ids,
                max_parallel=max_parallel,
            ),
        )

    def stop_run(self, run_id: str) -> CommandResult:
        return self._mutate("stop_run", lambda: self.scheduler.stop_run(run_id))

    def stop_attempt(self, attempt_id: str) -> CommandResult:
        return self._mutate("stop_attempt", lambda: self.scheduler.stop_attempt(attempt_id))

    def retry_task(self, task_id: str) -> CommandResult:
        return self._mutate("retry_task", lambda: self.scheduler.retry_task(task_id))

    def rerun_failed(self, run_id: str, *, max_parallel: int | None = None) -> CommandResult:
        return self._mutate(
            "rerun_failed",
            lambda: self.rerun.rerun_failed(run_id, max_parallel=max_parallel),
        )

    def rerun_selected(
        self,
        run_id: str,
        task_ids: Sequence[str],
        *,
        max_parallel: int | None = None,
    ) -> CommandResult:
        return self._mutate(
            "rerun_selected",
            lambda: self.rerun.rerun_selected(run_id, task_ids, max_parallel=max_parallel),
        )

    def move_task(self, task_id: str, status: TaskStatus) -> CommandResult:
        return self._mutate("move_task", lambda: self.scheduler.move_task(task_id, status))

    # Project execution

    def start_project(self, project_id: str) -> CommandResult:
        return self._mutate("start_project", lambda: self.scheduler.start_project(project_id))

    def pause_project(self, project_id: str) -> CommandResult:
        return self._mutate("pause_project", lambda: self.scheduler.pause_project(project_id))

    def resume_project(self, project_id: str) -> CommandResult:
        return self._mutate("resume_project", lambda: self.scheduler.resume_project(project_id))

    # Autopilot

    def create_autopilot(
        self,
        project_id: str,
        *,
        task_ids: Sequence[str] | None = None,
        mode: AutopilotMode = AutopilotMode.STEP,
    ) -> CommandResult:
        return self._mutate(
            "create_autopilot",
            lambda: self.autopilot.create_session(project_id, task_ids=task_ids, mode=mode),
        )

    def start_autopilot(self, session_id: str) -> CommandResult:
        return self._mutate("start_autopilot", lambda: self.autopilot.start(session_id))

    def approve_autopilot(self, session_id: str) -> CommandResult:
        return self._mutate("approve_autopilot", lambda: self.autopilot.approve(session_id))

    def stop_autopilot(self, session_id: str) -> CommandResult:
        return self._mutate("stop_autopilot", lambda: self.autopilot.stop(session_id))

    def retry_autopilot(self, session_id: str) -> CommandResult:
        return self._mutate("retry_autopilot", lambda: self.autopilot.retry(session_id))

    # Planning

    def create_planning(self, project_id: str, idea_text: str) -> CommandResult:
        return self._mutate(
            "create_planning",
            lambda: self.planning.create_session(project_id, idea_text),
        )

    def apply_planning(
        self,
        session_id: str,
        *,
        task_ids: Sequence[str] = (),
        titles: Sequence[str] = (),
    ) -> CommandResult:
        if titles:
            return self._mutate(
                "apply_planning",
                lambda: self.planning.apply_plan(session_id, titles),
            )
        return self._mutate("apply_planning", lambda: self.planning.apply(session_id, task_ids))

    # Queries

    def readiness(self, project_id: str) -> ReadinessReport:
        return self.scheduler.readiness.check(project_id)

    def budget(self, provider: str | None = None) -> BudgetDecision:
        return self.scheduler.budget_guard.check_budget(provider or self.scheduler.provider)

    def _mutate(self, action: str, call: Callable[[], CommandResult]) -> CommandResult:
        if not self.role.can_mutate:
            logger.info("Denied %s for role %s", action, self.role.value)
            return CommandResult.forbidden(
                f"Role {self.role.value!r} may not run {action.replace('_', ' ')}.",
            )
        return call()

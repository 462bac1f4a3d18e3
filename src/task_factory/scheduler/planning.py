"""Planning sessions: turn a discussed idea into board tasks exactly once."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from task_factory.scheduler.models import CommandResult, PlanningSessionView
from task_factory.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)


class PlanningService:
    def __init__(self, repository: SchedulerRepository) -> None:
        self.repository = repository

    def create_session(self, project_id: str, idea_text: str) -> CommandResult:
        if self.repository.get_project(project_id) is None:
            return CommandResult.not_found(f"Project not found: {project_id}")
        if not idea_text.strip():
            raise ValueError("idea_text must not be empty")
        session = self.repository.create_planning_session(
            project_id=project_id,
            idea_text=idea_text.strip(),
        )
        return CommandResult.success(
            f"Planning session {session.session_id} opened.",
            session_id=session.session_id,
        )

    def get_session(self, session_id: str) -> PlanningSessionView | None:
        return self.repository.get_planning_session(session_id)

    def apply(self, session_id: str, task_ids: Sequence[str]) -> CommandResult:
        """Attach existing tasks to the session. Only the first call has effect."""

        session = self.repository.get_planning_session(session_id)
        if session is None:
            return CommandResult.not_found(f"Planning session not found: {session_id}")
        known = {
            task.task_id for task in self.repository.list_tasks(project_id=session.project_id)
        }
        unknown = [task_id for task_id in task_ids if task_id not in known]
        if unknown and session.applied_task_ids is None:
            return CommandResult.not_found(f"Tasks not found: {', '.join(unknown)}")
        return self._apply(session_id, task_ids=task_ids)

    def apply_plan(self, session_id: str, titles: Sequence[str]) -> CommandResult:
        """Create one todo task per title and record them on the session."""

        cleaned = [title.strip() for title in titles if title.strip()]
        return self._apply(session_id, new_task_titles=cleaned)

    def _apply(
        self,
        session_id: str,
        *,
        task_ids: Sequence[str] = (),
        new_task_titles: Sequence[str] = (),
    ) -> CommandResult:
        applied = self.repository.apply_planning_session(
            session_id=session_id,
            task_ids=task_ids,
            new_task_titles=new_task_titles,
        )
        if applied is None:
            return CommandResult.not_found(f"Planning session not found: {session_id}")
        view, applied_now = applied
        recorded = list(view.applied_task_ids or [])
        if not applied_now:
            return CommandResult.conflict(
                "ALREADY_APPLIED",
                f"Planning session {session_id} was already applied.",
                session_id=session_id,
                task_ids=recorded,
            )
        logger.info("Planning session %s applied with %d task(s)", session_id, len(recorded))
        return CommandResult.success(
            f"Planning session {session_id} applied.",
            session_id=session_id,
            task_ids=recorded,
        )

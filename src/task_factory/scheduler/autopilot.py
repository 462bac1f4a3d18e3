"""Sequential autopilot sessions driving one task at a time."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from task_factory.scheduler.models import (
    AttemptStatus,
    AttemptView,
    AutopilotMode,
    AutopilotSessionStatus,
    AutopilotSessionView,
    CommandOutcome,
    CommandResult,
    DenialReason,
    TaskStatus,
)
from task_factory.scheduler.service import FactoryScheduler

logger = logging.getLogger(__name__)

ATTEMPT_FAILED = "ATTEMPT_FAILED"
ATTEMPT_STOPPED = "ATTEMPT_STOPPED"
TASK_NOT_FOUND = "TASK_NOT_FOUND"


class AutopilotService:
    """Durable autopilot sessions on top of the scheduler.

    In STEP mode the session stays ``running`` with ``awaiting_approval`` set
    after each successful task until ``approve`` is called. AUTO mode moves on
    at once. Either mode stops at the first failure or when the list is done.
    """

    def __init__(self, scheduler: FactoryScheduler) -> None:
        self.scheduler = scheduler
        self.repository = scheduler.repository
        scheduler.add_completion_listener(self.on_attempt_finished)

    def create_session(
        self,
        project_id: str,
        *,
        task_ids: Sequence[str] | None = None,
        mode: AutopilotMode = AutopilotMode.STEP,
    ) -> CommandResult:
        """Create an idle session over ``task_ids`` (default: the todo column)."""

        if self.repository.get_project(project_id) is None:
            return CommandResult.not_found(f"Project not found: {project_id}")

        project_tasks = {
            task.task_id for task in self.repository.list_tasks(project_id=project_id)
        }
        if task_ids is None:
            targets = [
                task.task_id
                for task in self.repository.list_tasks(
                    project_id=project_id,
                    status=TaskStatus.TODO,
                )
            ]
        else:
            targets = list(dict.fromkeys(task_ids))
            unknown = [task_id for task_id in targets if task_id not in project_tasks]
            if unknown:
                return CommandResult.not_found(f"Tasks not found: {', '.join(unknown)}")
        if not targets:
            return CommandResult.denied(DenialReason.NO_TASKS, "No tasks for autopilot session.")

        session = self.repository.create_autopilot_session(
            project_id=project_id,
            task_ids=targets,
            mode=mode,
        )
        return CommandResult.success(
            f"Autopilot session {session.session_id} created.",
            session_id=session.session_id,
            task_ids=targets,
        )

    def get_session(self, session_id: str) -> AutopilotSessionView | None:
        return self.repository.get_autopilot_session(session_id)

    def start(self, session_id: str) -> CommandResult:
        session = self.repository.get_autopilot_session(session_id)
        if session is None:
            return CommandResult.not_found(f"Autopilot session not found: {session_id}")
        if session.status is AutopilotSessionStatus.RUNNING:
            return CommandResult.conflict(
                DenialReason.ALREADY_RUNNING.value,
                f"Session {session_id} is already running.",
                session_id=session_id,
            )
        if session.status is not AutopilotSessionStatus.IDLE:
            return CommandResult.conflict(
                "INVALID_SESSION_STATE",
                f"Session {session_id} is {session.status.value}; use retry or a new session.",
                session_id=session_id,
            )
        gate = self.scheduler.check_admission(session.project_id)
        if gate is not None:
            return gate

        moved = self.repository.update_autopilot_session(
            session_id=session_id,
            expected={AutopilotSessionStatus.IDLE},
            status=AutopilotSessionStatus.RUNNING,
            current_index=0,
        )
        if not moved:
            return CommandResult.conflict(
                "INVALID_SESSION_STATE",
                f"Session {session_id} changed state concurrently.",
                session_id=session_id,
            )
        logger.info("Autopilot session %s started (%s mode)", session_id, session.mode.value)
        return self._drive(session_id)

    def approve(self, session_id: str) -> CommandResult:
        """Release a STEP-mode checkpoint and drive the next task."""

        session = self.repository.get_autopilot_session(session_id)
        if session is None:
            return CommandResult.not_found(f"Autopilot session not found: {session_id}")
        if session.status is not AutopilotSessionStatus.RUNNING or not session.awaiting_approval:
            return CommandResult.conflict(
                "NOT_AWAITING_APPROVAL",
                f"Session {session_id} is not waiting for approval.",
                session_id=session_id,
            )
        moved = self.repository.update_autopilot_session(
            session_id=session_id,
            expected={AutopilotSessionStatus.RUNNING},
            awaiting_approval=False,
        )
        if not moved:
            return CommandResult.conflict(
                "INVALID_SESSION_STATE",
                f"Session {session_id} changed state concurrently.",
                session_id=session_id,
            )
        return self._drive(session_id)

    def stop(self, session_id: str) -> CommandResult:
        session = self.repository.get_autopilot_session(session_id)
        if session is None:
            return CommandResult.not_found(f"Autopilot session not found: {session_id}")
        moved = self.repository.update_autopilot_session(
            session_id=session_id,
            expected={AutopilotSessionStatus.IDLE, AutopilotSessionStatus.RUNNING},
            status=AutopilotSessionStatus.STOPPED,
            awaiting_approval=False,
        )
        if not moved:
            return CommandResult.conflict(
                "INVALID_SESSION_STATE",
                f"Session {session_id} is already {session.status.value}.",
                session_id=session_id,
            )
        if session.current_attempt_id is not None:
            attempt = self.repository.get_attempt(session.current_attempt_id)
            if attempt is not None and not attempt.status.is_terminal:
                self.scheduler.stop_attempt(attempt.attempt_id)
        logger.info("Autopilot session %s stopped", session_id)
        return CommandResult.success(f"Session {session_id} stopped.", session_id=session_id)

    def retry(self, session_id: str) -> CommandResult:
        """Resume a failed or stopped session at the task where it ended."""

        session = self.repository.get_autopilot_session(session_id)
        if session is None:
            return CommandResult.not_found(f"Autopilot session not found: {session_id}")
        moved = self.repository.update_autopilot_session(
            session_id=session_id,
            expected={AutopilotSessionStatus.FAILED, AutopilotSessionStatus.STOPPED},
            status=AutopilotSessionStatus.RUNNING,
            awaiting_approval=False,
            error_code=None,
            error=None,
        )
        if not moved:
            return CommandResult.conflict(
                "INVALID_SESSION_STATE",
                f"Session {session_id} is {session.status.value}; only failed or stopped "
                "sessions can be retried.",
                session_id=session_id,
            )
        return self._drive(session_id)

    def on_attempt_finished(self, attempt: AttemptView) -> None:
        """Completion listener: advance, pause or fail the owning session."""

        if attempt.autopilot_session_id is None:
            return
        session = self.repository.get_autopilot_session(attempt.autopilot_session_id)
        if session is None or session.status is not AutopilotSessionStatus.RUNNING:
            return
        index = session.current_index
        if index >= len(session.task_ids) or session.task_ids[index] != attempt.task_id:
            return

        if attempt.status is AttemptStatus.FAILED:
            self._end(session, AutopilotSessionStatus.FAILED, ATTEMPT_FAILED, attempt.error)
            return
        if attempt.status is AttemptStatus.STOPPED:
            self._end(session, AutopilotSessionStatus.STOPPED, ATTEMPT_STOPPED, attempt.error)
            return
        if attempt.status is not AttemptStatus.COMPLETED:
            raise ValueError(f"Unexpected terminal attempt status: {attempt.status}")

        completed = [*session.completed_task_ids, attempt.task_id]
        next_index = index + 1
        if next_index >= len(session.task_ids):
            self.repository.update_autopilot_session(
                session_id=session.session_id,
                expected={AutopilotSessionStatus.RUNNING},
                status=AutopilotSessionStatus.DONE,
                current_index=next_index,
                completed_task_ids=completed,
                current_attempt_id=attempt.attempt_id,
                awaiting_approval=False,
            )
            logger.info("Autopilot session %s done", session.session_id)
            return

        step_mode = session.mode is AutopilotMode.STEP
        advanced = self.repository.update_autopilot_session(
            session_id=session.session_id,
            expected={AutopilotSessionStatus.RUNNING},
            current_index=next_index,
            completed_task_ids=completed,
            current_attempt_id=attempt.attempt_id,
            awaiting_approval=step_mode,
        )
        if advanced and not step_mode:
            self._drive(session.session_id)

    def _drive(self, session_id: str) -> CommandResult:
        session = self.repository.get_autopilot_session(session_id)
        if session is None:
            return CommandResult.not_found(f"Autopilot session not found: {session_id}")
        if session.current_index >= len(session.task_ids):
            self.repository.update_autopilot_session(
                session_id=session_id,
                expected={AutopilotSessionStatus.RUNNING},
                status=AutopilotSessionStatus.DONE,
            )
            return CommandResult.success(f"Session {session_id} is done.", session_id=session_id)

        task_id = session.task_ids[session.current_index]
        self.repository.update_autopilot_session(
            session_id=session_id,
            expected={AutopilotSessionStatus.RUNNING},
            current_task_id=task_id,
            current_attempt_id=None,
        )
        result = self.scheduler.submit_attempt(task_id, autopilot_session_id=session_id)
        if not result.ok:
            error_code = result.reason or (
                TASK_NOT_FOUND if result.outcome is CommandOutcome.NOT_FOUND else "SUBMIT_FAILED"
            )
            self._end(session, AutopilotSessionStatus.FAILED, error_code, result.message)
            result.session_id = session_id
            return result

        attempt_id = result.attempt_ids[0]
        current = self.repository.get_autopilot_session(session_id)
        if (
            current is not None
            and current.current_index == session.current_index
            and current.current_attempt_id is None
        ):
            self.repository.update_autopilot_session(
                session_id=session_id,
                expected={AutopilotSessionStatus.RUNNING},
                current_attempt_id=attempt_id,
            )
        return CommandResult.success(
            f"Session {session_id} dispatched task {task_id}.",
            session_id=session_id,
            attempt_ids=[attempt_id],
            task_ids=[task_id],
        )

    def _end(
        self,
        session: AutopilotSessionView,
        status: AutopilotSessionStatus,
        error_code: str,
        error: str | None,
    ) -> None:
        self.repository.update_autopilot_session(
            session_id=session.session_id,
            expected={AutopilotSessionStatus.RUNNING},
            status=status,
            error_code=error_code,
            error=error,
            awaiting_approval=False,
        )
        logger.warning(
            "Autopilot session %s ended %s: %s",
            session.session_id,
            status.value,
            error_code,
        )

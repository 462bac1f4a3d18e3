"""Run/attempt state machine: start, stop, completion handling and dispatch."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy.exc import OperationalError

from task_factory.config import MAX_PARALLEL_CEILING, SchedulerSettings
from task_factory.executor.base import (
    AgentExecutor,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorError,
)
from task_factory.scheduler.budget import BudgetGuard
from task_factory.scheduler.events import (
    AttemptStatusChanged,
    EventsHub,
    LogLineAppended,
    RunStatusChanged,
    RunSummaryUpdated,
)
from task_factory.scheduler.models import (
    RUNNABLE_TASK_STATUSES,
    AdmissionResult,
    AttemptFinish,
    AttemptStatus,
    AttemptView,
    CommandResult,
    DenialReason,
    FactoryRunMode,
    FactoryRunView,
    ProjectExecutionStatus,
    ProjectView,
    ReconcileSummary,
    SchedulingScope,
    ScopeKind,
    TaskStatus,
    TaskView,
)
from task_factory.scheduler.queue import AttemptQueue
from task_factory.scheduler.readiness import ReadinessChecker
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.storage.common import utc_now

logger = logging.getLogger(__name__)

CompletionListener = Callable[[AttemptView], None]


class FactoryScheduler:
    """Drive attempts from admission to a terminal state.

    Entry points return ``CommandResult`` values instead of raising. Executor
    failures end up in ``attempt.status=failed``; they never reach the caller.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: SchedulerRepository,
        executor: AgentExecutor,
        budget_guard: BudgetGuard,
        readiness: ReadinessChecker,
        events: EventsHub | None = None,
        settings: SchedulerSettings | None = None,
        provider: str = "mock",
        timeout_seconds: int = 1_800,
        workdir_root: Path | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.budget_guard = budget_guard
        self.readiness = readiness
        self.events = events or EventsHub()
        self.settings = settings or SchedulerSettings()
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.workdir_root = workdir_root
        self.queue = AttemptQueue(repository=repository, budget_guard=budget_guard)
        self._completion_listeners: list[CompletionListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call ``listener`` with every attempt that reaches a terminal state."""

        self._completion_listeners.append(listener)

    # Factory runs

    def start_batch(
        self,
        *,
        project_id: str,
        mode: FactoryRunMode = FactoryRunMode.COLUMN,
        column_status: TaskStatus | None = None,
        task_ids: Sequence[str] = (),
        max_parallel: int | None = None,
    ) -> CommandResult:
        """Start a factory run over a board column or an explicit task selection."""

        if max_parallel is not None and not 1 <= max_parallel <= MAX_PARALLEL_CEILING:
            return CommandResult.denied(
                DenialReason.INVALID_MAX_PARALLEL,
                f"max_parallel must be between 1 and {MAX_PARALLEL_CEILING}, got {max_parallel}.",
            )
        project = self.repository.get_project(project_id)
        if project is None:
            return CommandResult.not_found(f"Project not found: {project_id}")

        gate = self.check_admission(project_id)
        if gate is not None:
            return gate

        targets = self._resolve_targets(
            project_id=project_id,
            mode=mode,
            column_status=column_status,
            task_ids=task_ids,
        )
        if not targets:
            return CommandResult.denied(DenialReason.NO_TASKS, "No runnable tasks to start.")
        free = [
            task.task_id
            for task in targets
            if self.repository.active_attempt_for_task(task.task_id) is None
        ]
        if not free:
            return CommandResult.denied(
                DenialReason.ALREADY_RUNNING,
                "Every selected task already has an active attempt.",
                task_ids=[task.task_id for task in targets],
            )

        creation = self.repository.create_factory_run(
            project_id=project_id,
            mode=mode,
            max_parallel=max_parallel or project.max_parallel,
            provider=self.provider,
            task_ids=free,
            column_status=(column_status or TaskStatus.TODO)
            if mode is FactoryRunMode.COLUMN
            else None,
        )
        if creation is None:
            return CommandResult.not_found(f"Project not found: {project_id}")
        logger.info(
            "Started run %s for project %s with %d attempt(s), max_parallel=%d",
            creation.run.run_id,
            project_id,
            len(creation.attempt_ids),
            creation.run.max_parallel,
        )
        self._publish_run(creation.run)
        self.schedule_next(SchedulingScope.for_run(creation.run.run_id))
        return CommandResult.success(
            f"Run {creation.run.run_id} started.",
            run_id=creation.run.run_id,
            attempt_ids=creation.attempt_ids,
            task_ids=free,
            run=self.repository.get_factory_run(creation.run.run_id),
        )

    def stop_run(self, run_id: str) -> CommandResult:
        """Cancel a run: waiting attempts never start, running ones get a stop signal."""

        stopped = self.repository.stop_factory_run(run_id)
        if stopped is None:
            return CommandResult.not_found(f"Run not found: {run_id}")
        if not stopped.changed:
            return CommandResult.conflict(
                "RUN_NOT_RUNNING",
                f"Run {run_id} is already {stopped.run.status.value}.",
                run_id=run_id,
                run=stopped.run,
            )

        for attempt_id in stopped.running_attempt_ids:
            self._signal_stop(attempt_id)
        for attempt in stopped.stopped_attempts:
            self._publish_attempt(attempt)
            self._notify_listeners(attempt)
        self._publish_run(stopped.run)
        logger.info(
            "Stopped run %s (%d attempt(s) stopped)",
            run_id,
            len(stopped.stopped_attempts),
        )
        self.schedule_next(SchedulingScope.for_project(stopped.run.project_id))
        return CommandResult.success(
            f"Run {run_id} cancelled.",
            run_id=run_id,
            attempt_ids=[attempt.attempt_id for attempt in stopped.stopped_attempts],
            run=stopped.run,
        )

    def stop_attempt(self, attempt_id: str) -> CommandResult:
        finish = self.repository.stop_attempt(attempt_id)
        if finish is None:
            attempt = self.repository.get_attempt(attempt_id)
            if attempt is None:
                return CommandResult.not_found(f"Attempt not found: {attempt_id}")
            return CommandResult.conflict(
                "ATTEMPT_NOT_ACTIVE",
                f"Attempt {attempt_id} is already {attempt.status.value}.",
                attempt_ids=[attempt_id],
            )
        if finish.previous_status is AttemptStatus.RUNNING:
            self._signal_stop(attempt_id)
        self._after_finish(finish)
        return CommandResult.success(
            f"Attempt {attempt_id} stopped.",
            attempt_ids=[attempt_id],
            run_id=finish.attempt.factory_run_id,
        )

    def retry_task(self, task_id: str) -> CommandResult:
        """Create a fresh run-less attempt for a task with no active attempt."""

        return self.submit_attempt(task_id)

    def move_task(self, task_id: str, status: TaskStatus) -> CommandResult:
        """Move a task between board columns while no attempt is working on it."""

        task = self.repository.get_task(task_id)
        if task is None:
            return CommandResult.not_found(f"Task not found: {task_id}")
        if not self.repository.set_task_status(task_id=task_id, status=status):
            return CommandResult.conflict(
                "TASK_BUSY",
                f"Task {task_id} has an active attempt; stop it before moving the task.",
                task_ids=[task_id],
            )
        logger.info("Task %s moved %s -> %s", task_id, task.status.value, status.value)
        return CommandResult.success(
            f"Task {task_id} moved to {status.value}.",
            task_ids=[task_id],
        )

    def submit_attempt(
        self,
        task_id: str,
        *,
        autopilot_session_id: str | None = None,
    ) -> CommandResult:
        task = self.repository.get_task(task_id)
        if task is None:
            return CommandResult.not_found(f"Task not found: {task_id}")
        decision = self.budget_guard.check_budget(self.provider)
        if not decision.allowed:
            return CommandResult.budget_denied(decision)
        attempt = self.repository.create_attempt(
            task_id=task_id,
            provider=self.provider,
            autopilot_session_id=autopilot_session_id,
        )
        if attempt is None:
            return CommandResult.conflict(
                "TASK_BUSY",
                f"Task {task_id} already has an active attempt.",
                task_ids=[task_id],
            )
        self.schedule_next(attempt.scope)
        return CommandResult.success(
            f"Attempt {attempt.attempt_id} submitted.",
            attempt_ids=[attempt.attempt_id],
            task_ids=[task_id],
        )

    # Project execution

    def start_project(self, project_id: str) -> CommandResult:
        """Start task-driven execution of the project's todo column."""

        project = self.repository.get_project(project_id)
        if project is None:
            return CommandResult.not_found(f"Project not found: {project_id}")
        if project.execution_status is ProjectExecutionStatus.RUNNING:
            return CommandResult.conflict(
                DenialReason.ALREADY_RUNNING.value,
                f"Project {project_id} is already running.",
            )
        if project.execution_status is ProjectExecutionStatus.PAUSED:
            return CommandResult.conflict(
                "PROJECT_PAUSED",
                f"Project {project_id} is paused; resume it instead.",
            )
        gate = self.check_admission(project_id)
        if gate is not None:
            return gate

        moved = self.repository.set_project_execution_status(
            project_id=project_id,
            status=ProjectExecutionStatus.RUNNING,
            expected={
                ProjectExecutionStatus.IDLE,
                ProjectExecutionStatus.COMPLETED,
                ProjectExecutionStatus.FAILED,
            },
        )
        if not moved:
            return CommandResult.conflict(
                "PROJECT_STATE_CHANGED",
                f"Project {project_id} changed state concurrently; retry the command.",
            )
        logger.info("Project %s execution started", project_id)
        return self.tick_project(project_id)

    def pause_project(self, project_id: str) -> CommandResult:
        """Stop dispatching new project work; running attempts finish normally."""

        if self.repository.get_project(project_id) is None:
            return CommandResult.not_found(f"Project not found: {project_id}")
        moved = self.repository.set_project_execution_status(
            project_id=project_id,
            status=ProjectExecutionStatus.PAUSED,
            expected={ProjectExecutionStatus.RUNNING},
        )
        if not moved:
            return CommandResult.conflict("PROJECT_NOT_RUNNING", "Project is not running.")
        return CommandResult.success(f"Project {project_id} paused.")

    def resume_project(self, project_id: str) -> CommandResult:
        if self.repository.get_project(project_id) is None:
            return CommandResult.not_found(f"Project not found: {project_id}")
        moved = self.repository.set_project_execution_status(
            project_id=project_id,
            status=ProjectExecutionStatus.RUNNING,
            expected={ProjectExecutionStatus.PAUSED},
        )
        if not moved:
            return CommandResult.conflict("PROJECT_NOT_PAUSED", "Project is not paused.")
        return self.tick_project(project_id)

    def tick_project(self, project_id: str) -> CommandResult:
        """Seed attempts for the next todo tasks, admit them, detect completion."""

        project = self.repository.get_project(project_id)
        if project is None:
            return CommandResult.not_found(f"Project not found: {project_id}")
        if project.execution_status is not ProjectExecutionStatus.RUNNING:
            return CommandResult.success(
                f"Project {project_id} is {project.execution_status.value}; nothing to dispatch.",
            )

        seeded = self.repository.seed_project_attempts(
            project_id=project_id,
            provider=self.provider,
            since=_execution_since(project),
        )
        admission = self.schedule_next(SchedulingScope.for_project(project_id))
        self._complete_project_if_drained(project_id)
        return CommandResult.success(
            f"Project {project_id} ticked.",
            attempt_ids=[attempt.attempt_id for attempt in admission.admitted],
            task_ids=seeded,
        )

    # Scheduling passes

    def schedule_next(self, scope: SchedulingScope) -> AdmissionResult:
        """Admit waiting attempts of ``scope`` and dispatch the admitted ones.

        An attempt that fails to start frees its slot at once. The freed scopes
        go back on the work list, so one call keeps admitting until a pass
        admits nothing, without recursing per failed attempt.
        """

        total = AdmissionResult(scope=scope)
        pending: deque[tuple[SchedulingScope, bool]] = deque([(scope, False)])
        ticked: set[str] = set()
        while pending:
            current, seed = pending.popleft()
            if seed and self._seed_running_project(current.scope_id):
                ticked.add(current.scope_id)
            result = self.queue.admit(current)
            total.admitted.extend(result.admitted)
            total.queued_attempt_ids.extend(result.queued_attempt_ids)
            total.budget_blocked = total.budget_blocked or result.budget_blocked
            for attempt in result.admitted:
                self._publish_attempt(attempt)
            for attempt in result.admitted:
                finish = self._dispatch(attempt)
                if finish is None:
                    continue
                self._record_finish(finish)
                for freed in _freed_scopes(finish.attempt):
                    item = (freed, freed.kind is ScopeKind.PROJECT)
                    if item not in pending:
                        pending.append(item)
            if current.kind is ScopeKind.RUN and (result.admitted or result.queued_attempt_ids):
                self._publish_summary(current.scope_id)
        for project_id in ticked:
            self._complete_project_if_drained(project_id)
        return total

    def handle_completion(self, outcome: ExecutionOutcome) -> None:
        """Executor callback: record the outcome and schedule follow-up work."""

        attempt = self.repository.get_attempt(outcome.attempt_id)
        if attempt is None:
            logger.warning("Completion for unknown attempt %s ignored", outcome.attempt_id)
            return
        if outcome.cost_usd:
            self.budget_guard.record_cost(
                provider=attempt.provider,
                cost_usd=outcome.cost_usd,
                attempt_id=attempt.attempt_id,
            )

        status, error = self._classify(outcome)
        finish = self.repository.finish_attempt(
            attempt_id=outcome.attempt_id,
            status=status,
            exit_code=outcome.exit_code,
            pr_url=outcome.pr_url,
            error=error,
        )
        if finish is None:
            logger.info(
                "Late completion for attempt %s ignored (status=%s)",
                outcome.attempt_id,
                attempt.status.value,
            )
            return
        logger.info(
            "Attempt %s finished: %s (exit_code=%s)",
            outcome.attempt_id,
            status.value,
            outcome.exit_code,
        )
        self._after_finish(finish)

    def handle_log_line(self, attempt_id: str, line: str) -> None:
        attempt = self.repository.get_attempt(attempt_id)
        if attempt is None:
            return
        self.repository.append_log_line(attempt_id=attempt_id, line=line)
        self.events.publish(
            LogLineAppended(attempt_id=attempt_id, run_id=attempt.factory_run_id, line=line),
        )

    def reconcile(self) -> ReconcileSummary:
        """One idempotent sweep: recover stale attempts, finalize runs, admit work."""

        summary = ReconcileSummary()
        try:
            stale_before = utc_now() - timedelta(seconds=self.settings.stale_attempt_seconds)
            for finish in self.repository.recover_stale_running_attempts(
                stale_before=stale_before,
            ):
                logger.warning(
                    "Attempt %s heartbeat expired; marked failed",
                    finish.attempt.attempt_id,
                )
                summary.recovered_attempt_ids.append(finish.attempt.attempt_id)
                self._signal_stop(finish.attempt.attempt_id)
                self._after_finish(finish)

            for run in self.repository.finalize_idle_runs():
                summary.finalized_run_ids.append(run.run_id)
                self._publish_run(run)

            for run_id in self.repository.list_running_run_ids():
                admission = self.schedule_next(SchedulingScope.for_run(run_id))
                summary.admitted_attempt_ids.extend(a.attempt_id for a in admission.admitted)
            for project_id in self.repository.list_project_ids_with_waiting_attempts():
                admission = self.schedule_next(SchedulingScope.for_project(project_id))
                summary.admitted_attempt_ids.extend(a.attempt_id for a in admission.admitted)
            for project_id in self.repository.list_running_project_ids():
                result = self.tick_project(project_id)
                summary.admitted_attempt_ids.extend(result.attempt_ids)
        except OperationalError as error:
            logger.warning("Reconcile could not observe store state: %s", error)
            summary.observed = False
            summary.error = str(error)
        return summary

    # Internals

    def check_admission(self, project_id: str) -> CommandResult | None:
        report = self.readiness.check(project_id)
        if not report.all_ready:
            return CommandResult.denied(
                DenialReason.READINESS_BLOCKED,
                "Project is not ready: "
                + "; ".join(blocker.description for blocker in report.blockers),
                blockers=report.blockers,
            )
        decision = self.budget_guard.check_budget(self.provider)
        if not decision.allowed:
            return CommandResult.budget_denied(decision)
        return None

    def _resolve_targets(
        self,
        *,
        project_id: str,
        mode: FactoryRunMode,
        column_status: TaskStatus | None,
        task_ids: Sequence[str],
    ) -> list[TaskView]:
        if mode is FactoryRunMode.COLUMN:
            status = column_status or TaskStatus.TODO
            if status not in RUNNABLE_TASK_STATUSES:
                return []
            return self.repository.list_tasks(project_id=project_id, status=status)

        by_id = {task.task_id: task for task in self.repository.list_tasks(project_id=project_id)}
        selected: list[TaskView] = []
        for task_id in dict.fromkeys(task_ids):
            task = by_id.get(task_id)
            if task is not None and task.status in RUNNABLE_TASK_STATUSES:
                selected.append(task)
        return selected

    def _classify(self, outcome: ExecutionOutcome) -> tuple[AttemptStatus, str | None]:
        if outcome.timed_out:
            return AttemptStatus.FAILED, outcome.error_message or "Agent timed out"
        if not outcome.succeeded:
            return (
                AttemptStatus.FAILED,
                outcome.error_message or f"Agent exited with code {outcome.exit_code}",
            )
        if self.settings.require_pr_url and not outcome.pr_url:
            return AttemptStatus.FAILED, "Agent exited cleanly but produced no pull request"
        return AttemptStatus.COMPLETED, None

    def _dispatch(self, attempt: AttemptView) -> AttemptFinish | None:
        """Hand an admitted attempt to the executor.

        Returns the failed-attempt transition when the executor refuses to
        start, so the caller can re-admit the freed slot.
        """

        current = self.repository.get_attempt(attempt.attempt_id)
        if current is None or current.status is not AttemptStatus.RUNNING:
            logger.info(
                "Attempt %s no longer running at dispatch (status=%s); not started",
                attempt.attempt_id,
                current.status.value if current is not None else "missing",
            )
            return None

        task = self.repository.get_task(attempt.task_id)
        prompt = _build_prompt(task) if task is not None else attempt.task_id
        request = ExecutionRequest(
            attempt_id=attempt.attempt_id,
            task_id=attempt.task_id,
            project_id=attempt.project_id,
            prompt=prompt,
            provider=attempt.provider,
            workdir=(
                self.workdir_root / attempt.project_id / attempt.attempt_id
                if self.workdir_root is not None
                else None
            ),
            timeout_seconds=self.timeout_seconds,
        )
        try:
            self.executor.start(
                request,
                on_complete=self.handle_completion,
                on_log=self.handle_log_line,
            )
        except ExecutorError as error:
            logger.warning("Attempt %s failed to start: %s", attempt.attempt_id, error)
            if not error.transient and attempt.scope.kind is ScopeKind.PROJECT:
                self._fail_project_execution(attempt.project_id, str(error))
            return self.repository.finish_attempt(
                attempt_id=attempt.attempt_id,
                status=AttemptStatus.FAILED,
                error=f"Executor failed to start: {error}",
            )

        # A stop that landed while the process was being spawned had nothing to signal.
        started = self.repository.get_attempt(attempt.attempt_id)
        if started is not None and started.status is AttemptStatus.STOPPED:
            logger.info("Attempt %s was stopped during start; stopping agent", attempt.attempt_id)
            self._signal_stop(attempt.attempt_id)
        return None

    def _fail_project_execution(self, project_id: str, reason: str) -> None:
        failed = self.repository.set_project_execution_status(
            project_id=project_id,
            status=ProjectExecutionStatus.FAILED,
            expected={ProjectExecutionStatus.RUNNING},
        )
        if failed:
            logger.error("Project %s execution failed: %s", project_id, reason)

    def _record_finish(self, finish: AttemptFinish) -> None:
        attempt = finish.attempt
        self._publish_attempt(attempt)
        if finish.run is not None:
            self.events.publish(
                RunSummaryUpdated(run_id=finish.run.run_id, counts=finish.run.counts),
            )
            if finish.run_finalized:
                self._publish_run(finish.run)
        self._notify_listeners(attempt)

    def _after_finish(self, finish: AttemptFinish) -> None:
        self._record_finish(finish)
        attempt = finish.attempt
        for scope in _freed_scopes(attempt):
            self.schedule_next(scope)
        project = self.repository.get_project(attempt.project_id)
        if project is not None and project.execution_status is ProjectExecutionStatus.RUNNING:
            self.tick_project(attempt.project_id)

    def _seed_running_project(self, project_id: str) -> bool:
        project = self.repository.get_project(project_id)
        if project is None or project.execution_status is not ProjectExecutionStatus.RUNNING:
            return False
        self.repository.seed_project_attempts(
            project_id=project_id,
            provider=self.provider,
            since=_execution_since(project),
        )
        return True

    def _complete_project_if_drained(self, project_id: str) -> None:
        project = self.repository.get_project(project_id)
        if project is None or project.execution_status is not ProjectExecutionStatus.RUNNING:
            return
        if not self.repository.project_execution_drained(
            project_id=project_id,
            since=_execution_since(project),
        ):
            return
        completed = self.repository.set_project_execution_status(
            project_id=project_id,
            status=ProjectExecutionStatus.COMPLETED,
            expected={ProjectExecutionStatus.RUNNING},
        )
        if completed:
            logger.info("Project %s execution completed", project_id)

    def _notify_listeners(self, attempt: AttemptView) -> None:
        for listener in list(self._completion_listeners):
            try:
                listener(attempt)
            except Exception:  # noqa: BLE001
                logger.exception("Completion listener failed for attempt %s", attempt.attempt_id)

    def _signal_stop(self, attempt_id: str) -> None:
        try:
            self.executor.stop(attempt_id)
        except ExecutorError as error:
            logger.warning("Stop signal for attempt %s failed: %s", attempt_id, error)

    def _publish_attempt(self, attempt: AttemptView) -> None:
        self.events.publish(
            AttemptStatusChanged(
                attempt_id=attempt.attempt_id,
                task_id=attempt.task_id,
                run_id=attempt.factory_run_id,
                status=attempt.status,
                error=attempt.error,
            ),
        )

    def _publish_run(self, run: FactoryRunView) -> None:
        self.events.publish(
            RunStatusChanged(run_id=run.run_id, project_id=run.project_id, status=run.status),
        )
        self.events.publish(RunSummaryUpdated(run_id=run.run_id, counts=run.counts))

    def _publish_summary(self, run_id: str) -> None:
        run = self.repository.get_factory_run(run_id)
        if run is not None:
            self.events.publish(RunSummaryUpdated(run_id=run_id, counts=run.counts))


def _build_prompt(task: TaskView) -> str:
    if not task.description.strip():
        return task.title
    return f"{task.title}\n\n{task.description.strip()}"


def _freed_scopes(attempt: AttemptView) -> list[SchedulingScope]:
    if attempt.scope.kind is ScopeKind.RUN:
        # A freed run slot also counts against the project-wide cap.
        return [attempt.scope, SchedulingScope.for_project(attempt.project_id)]
    return [attempt.scope]


def _execution_since(project: ProjectView) -> datetime:
    return project.execution_started_at or project.created_at

"""Controllers for task-factory CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from task_factory.config import Settings
from task_factory.executor import CliAgentExecutor
from task_factory.scheduler.autopilot import AutopilotService
from task_factory.scheduler.budget import BudgetGuard
from task_factory.scheduler.commands import FactoryCommands
from task_factory.scheduler.loop import SchedulerLoop
from task_factory.scheduler.models import (
    AttemptView,
    AutopilotMode,
    AutopilotSessionView,
    CommandResult,
    FactoryRunView,
    ReadinessReport,
    TaskStatus,
)
from task_factory.scheduler.planning import PlanningService
from task_factory.scheduler.readiness import ReadinessChecker, StoreReadinessProbe
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.scheduler.rerun import RerunService
from task_factory.scheduler.service import FactoryScheduler

logger = logging.getLogger(__name__)


class CommandRejected(RuntimeError):
    """A scheduling command returned a non-success outcome."""

    def __init__(self, result: CommandResult) -> None:
        super().__init__("\n".join(_result_lines(result)))
        self.result = result


@dataclass(slots=True)
class DispatchOptions:
    """How a dispatching command launches and waits for agent attempts."""

    agent_command: str | None = None
    wait_timeout_seconds: float = 600.0


@dataclass(slots=True)
class ProjectCreateCommand:
    db_path: Path | None
    name: str
    max_parallel: int
    repo_path: str | None
    repo_url: str | None


@dataclass(slots=True)
class ProjectSettingsCommand:
    db_path: Path | None
    project_id: str
    max_parallel: int | None
    repo_path: str | None
    repo_url: str | None


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for project execution start/pause/resume/status."""

    db_path: Path | None
    project_id: str
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class TaskAddCommand:
    db_path: Path | None
    project_id: str
    title: str
    description: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    project_id: str
    status: str | None


@dataclass(slots=True)
class TaskMoveCommand:
    db_path: Path | None
    task_id: str
    status: str


@dataclass(slots=True)
class TaskRetryCommand:
    db_path: Path | None
    task_id: str
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class FactoryStartCommand:
    """CLI input for a factory run over a column or a task selection."""

    db_path: Path | None
    project_id: str
    column: str | None
    task_ids: tuple[str, ...]
    max_parallel: int | None
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class RunCommand:
    db_path: Path | None
    run_id: str
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class RunListCommand:
    db_path: Path | None
    project_id: str
    limit: int


@dataclass(slots=True)
class RerunCommand:
    """CLI input for rerunning failed or selected tasks of a finished run."""

    db_path: Path | None
    run_id: str
    task_ids: tuple[str, ...]
    max_parallel: int | None
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class AttemptCommand:
    db_path: Path | None
    attempt_id: str
    log_limit: int = 50
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class AutopilotCreateCommand:
    db_path: Path | None
    project_id: str
    task_ids: tuple[str, ...]
    mode: str


@dataclass(slots=True)
class AutopilotCommand:
    db_path: Path | None
    session_id: str
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class BudgetStatusCommand:
    db_path: Path | None
    provider: str | None


@dataclass(slots=True)
class BudgetRecordCommand:
    """CLI input for recording spend reported outside the executor."""

    db_path: Path | None
    provider: str
    cost_usd: float


@dataclass(slots=True)
class PlanningCreateCommand:
    db_path: Path | None
    project_id: str
    idea_text: str


@dataclass(slots=True)
class PlanningApplyCommand:
    db_path: Path | None
    session_id: str
    task_ids: tuple[str, ...]
    titles: tuple[str, ...]


@dataclass(slots=True)
class ServeCommand:
    db_path: Path | None
    once: bool
    dispatch: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(slots=True)
class FactoryContext:
    """Fully wired scheduler stack for one CLI invocation."""

    settings: Settings
    repository: SchedulerRepository
    executor: CliAgentExecutor
    scheduler: FactoryScheduler
    commands: FactoryCommands
    loop: SchedulerLoop


class FactoryCliController:
    """Coordinates project, run, autopilot and planning CLI operations.

    Dispatching commands keep the process alive until every attempt this
    process launched has finished (or the wait timeout stops them), since the
    agent subprocesses are watched from this process.
    """

    # Projects and tasks

    def create_project(self, command: ProjectCreateCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            project = repository.create_project(
                name=command.name,
                max_parallel=command.max_parallel,
                repo_path=command.repo_path,
                repo_url=command.repo_url,
            )
        return [
            f"Project created: project_id={project.project_id} name={project.name} "
            f"max_parallel={project.max_parallel}",
        ]

    def update_project(self, command: ProjectSettingsCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            project = repository.update_project_settings(
                project_id=command.project_id,
                max_parallel=command.max_parallel,
                repo_path=command.repo_path,
                repo_url=command.repo_url,
            )
        if project is None:
            raise CommandRejected(
                CommandResult.not_found(f"Project not found: {command.project_id}"),
            )
        return [
            f"Project updated: project_id={project.project_id} "
            f"max_parallel={project.max_parallel} "
            f"repo={project.repo_path or project.repo_url or '-'}",
        ]

    def list_projects(self, db_path: Path | None) -> list[str]:
        settings = _load_settings(db_path)
        with _repository(settings) as repository:
            projects = repository.list_projects()
        if not projects:
            return ["No projects."]
        return [
            f"{project.project_id} name={project.name} "
            f"execution={project.execution_status.value} max_parallel={project.max_parallel}"
            for project in projects
        ]

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_project(command.project_id) is None:
                raise CommandRejected(
                    CommandResult.not_found(f"Project not found: {command.project_id}"),
                )
            task = repository.create_task(
                project_id=command.project_id,
                title=command.title,
                description=command.description,
            )
        return [
            f"Task created: task_id={task.task_id} position={task.position} title={task.title}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(project_id=command.project_id, status=status)
        if not tasks:
            return ["No tasks."]
        return [
            f"{task.position:>3} {task.task_id} [{task.status.value}] {task.title}"
            for task in tasks
        ]

    def retry_task(self, command: TaskRetryCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            lines = _result_lines(_require(factory.commands.retry_task(command.task_id)))
            lines.extend(_drain(factory, command.dispatch))
            attempt = factory.repository.active_attempt_for_task(command.task_id)
            if attempt is None:
                latest = factory.repository.list_attempts(task_id=command.task_id)
                if latest:
                    lines.append(_attempt_line(latest[-1]))
        return lines

    def move_task(self, command: TaskMoveCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _factory(settings, DispatchOptions(), launches_agents=False) as factory:
            result = factory.commands.move_task(command.task_id, TaskStatus(command.status))
            return _result_lines(_require(result))

    # Project execution

    def start_project(self, command: ProjectCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            lines = _result_lines(_require(factory.commands.start_project(command.project_id)))
            lines.extend(_drain(factory, command.dispatch))
            lines.extend(_project_lines(factory.repository, command.project_id))
        return lines

    def pause_project(self, command: ProjectCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            return _result_lines(_require(factory.commands.pause_project(command.project_id)))

    def resume_project(self, command: ProjectCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            lines = _result_lines(_require(factory.commands.resume_project(command.project_id)))
            lines.extend(_drain(factory, command.dispatch))
            lines.extend(_project_lines(factory.repository, command.project_id))
        return lines

    def project_status(self, command: ProjectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_project(command.project_id) is None:
                raise CommandRejected(
                    CommandResult.not_found(f"Project not found: {command.project_id}"),
                )
            return _project_lines(repository, command.project_id)

    def readiness(self, command: ProjectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_project(command.project_id) is None:
                raise CommandRejected(
                    CommandResult.not_found(f"Project not found: {command.project_id}"),
                )
            checker = ReadinessChecker(StoreReadinessProbe(repository=repository, ai=settings.ai))
            report = checker.check(command.project_id)
        return _readiness_lines(report)

    # Factory runs

    def start_run(self, command: FactoryStartCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            result = _require(
                factory.commands.start_batch(
                    project_id=command.project_id,
                    column_status=TaskStatus(command.column) if command.column else None,
                    task_ids=command.task_ids,
                    max_parallel=command.max_parallel,
                ),
            )
            lines = _result_lines(result)
            lines.extend(_drain(factory, command.dispatch))
            if result.run_id is not None:
                lines.extend(_run_lines(factory.repository, result.run_id))
        return lines

    def stop_run(self, command: RunCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            result = _require(factory.commands.stop_run(command.run_id))
            lines = _result_lines(result)
            lines.extend(_drain(factory, command.dispatch))
            lines.extend(_run_lines(factory.repository, command.run_id))
        return lines

    def run_status(self, command: RunCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_factory_run(command.run_id) is None:
                raise CommandRejected(CommandResult.not_found(f"Run not found: {command.run_id}"))
            lines = _run_lines(repository, command.run_id)
            for attempt in repository.list_attempts(factory_run_id=command.run_id):
                lines.append(f"  {_attempt_line(attempt)}")
        return lines

    def list_runs(self, command: RunListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            runs = repository.list_factory_runs(project_id=command.project_id, limit=command.limit)
        if not runs:
            return ["No runs."]
        return [_run_summary(run) for run in runs]

    def rerun(self, command: RerunCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            if command.task_ids:
                result = factory.commands.rerun_selected(
                    command.run_id,
                    command.task_ids,
                    max_parallel=command.max_parallel,
                )
            else:
                result = factory.commands.rerun_failed(
                    command.run_id,
                    max_parallel=command.max_parallel,
                )
            _require(result)
            lines = _result_lines(result)
            if result.run is not None:
                lines.append(f"Initial counts: {_counts_text(result.run)}")
            lines.extend(_drain(factory, command.dispatch))
            if result.run_id is not None:
                lines.extend(_run_lines(factory.repository, result.run_id))
        return lines

    # Attempts

    def inspect_attempt(self, command: AttemptCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            attempt = repository.get_attempt(command.attempt_id)
            if attempt is None:
                raise CommandRejected(
                    CommandResult.not_found(f"Attempt not found: {command.attempt_id}"),
                )
            events = repository.list_attempt_events(command.attempt_id)
            log_lines = repository.list_log_lines(command.attempt_id, limit=command.log_limit)
            position = repository.queue_position(command.attempt_id)

        lines = [_attempt_line(attempt)]
        if position is not None:
            lines.append(f"Queue position: {position}")
        lines.append("Events:")
        for event in events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f"->{event.status_to.value if event.status_to else '-'}"
            )
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {transition}",
            )
        if log_lines:
            lines.append("Log:")
            lines.extend(f"  {line}" for line in log_lines)
        return lines

    def stop_attempt(self, command: AttemptCommand) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            lines = _result_lines(_require(factory.commands.stop_attempt(command.attempt_id)))
            lines.extend(_drain(factory, command.dispatch))
        return lines

    # Autopilot

    def create_autopilot(self, command: AutopilotCreateCommand) -> list[str]:
        with _factory(
            _load_settings(command.db_path),
            DispatchOptions(),
            launches_agents=False,
        ) as factory:
            result = factory.commands.create_autopilot(
                command.project_id,
                task_ids=command.task_ids or None,
                mode=AutopilotMode(command.mode),
            )
            return _result_lines(_require(result))

    def start_autopilot(self, command: AutopilotCommand) -> list[str]:
        return self._autopilot_action(command, "start")

    def approve_autopilot(self, command: AutopilotCommand) -> list[str]:
        return self._autopilot_action(command, "approve")

    def stop_autopilot(self, command: AutopilotCommand) -> list[str]:
        return self._autopilot_action(command, "stop")

    def retry_autopilot(self, command: AutopilotCommand) -> list[str]:
        return self._autopilot_action(command, "retry")

    def autopilot_status(self, command: AutopilotCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            session = repository.get_autopilot_session(command.session_id)
        if session is None:
            raise CommandRejected(
                CommandResult.not_found(f"Autopilot session not found: {command.session_id}"),
            )
        return _session_lines(session)

    def list_autopilot_sessions(self, command: ProjectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            sessions = repository.list_autopilot_sessions(project_id=command.project_id)
        if not sessions:
            return ["No autopilot sessions."]
        lines: list[str] = []
        for session in sessions:
            lines.extend(_session_lines(session))
        return lines

    def _autopilot_action(self, command: AutopilotCommand, action: str) -> list[str]:
        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            handlers = {
                "start": factory.commands.start_autopilot,
                "approve": factory.commands.approve_autopilot,
                "stop": factory.commands.stop_autopilot,
                "retry": factory.commands.retry_autopilot,
            }
            lines = _result_lines(_require(handlers[action](command.session_id)))
            lines.extend(_drain(factory, command.dispatch))
            session = factory.repository.get_autopilot_session(command.session_id)
            if session is not None:
                lines.extend(_session_lines(session))
        return lines

    # Budget and planning

    def budget_status(self, command: BudgetStatusCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        provider = (command.provider or settings.ai.provider).strip().lower()
        with _repository(settings) as repository:
            guard = BudgetGuard(
                repository=repository,
                limits_usd=settings.budget.monthly_limits_usd,
            )
            decision = guard.check_budget(provider)
            spend = guard.monthly_spend(provider)
        limit = f"${decision.limit_usd:.2f}" if decision.limit_usd is not None else "none"
        return [
            f"Budget {provider}: spend=${spend:.2f} limit={limit} "
            f"allowed={'yes' if decision.allowed else 'no'} reason={decision.reason.value}",
        ]

    def record_spend(self, command: BudgetRecordCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        provider = command.provider.strip().lower()
        with _repository(settings) as repository:
            guard = BudgetGuard(
                repository=repository,
                limits_usd=settings.budget.monthly_limits_usd,
            )
            guard.record_cost(provider=provider, cost_usd=command.cost_usd)
            spend = guard.monthly_spend(provider)
        return [f"Recorded ${command.cost_usd:.2f} for {provider}; month to date ${spend:.2f}"]

    def create_planning(self, command: PlanningCreateCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            result = PlanningService(repository).create_session(
                command.project_id,
                command.idea_text,
            )
        return _result_lines(_require(result))

    def apply_planning(self, command: PlanningApplyCommand) -> list[str]:
        with _factory(
            _load_settings(command.db_path),
            DispatchOptions(),
            launches_agents=False,
        ) as factory:
            result = factory.commands.apply_planning(
                command.session_id,
                task_ids=command.task_ids,
                titles=command.titles,
            )
            return _result_lines(_require(result))

    # Background processing

    def serve(self, command: ServeCommand) -> list[str]:
        """Reconcile once, or loop until interrupted."""

        with _factory(_load_settings(command.db_path), command.dispatch) as factory:
            if command.once:
                summary = factory.loop.tick()
                lines = [
                    f"Reconcile: observed={'yes' if summary.observed else 'no'} "
                    f"recovered={len(summary.recovered_attempt_ids)} "
                    f"finalized={len(summary.finalized_run_ids)} "
                    f"admitted={len(summary.admitted_attempt_ids)}",
                ]
                if summary.error:
                    lines.append(f"Error: {summary.error}")
                lines.extend(_drain(factory, command.dispatch))
                return lines
            factory.loop.run_forever()
            return [f"Scheduler loop stopped after {factory.loop.ticks} tick(s)."]


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[SchedulerRepository]:
    repository = SchedulerRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _factory(
    settings: Settings,
    dispatch: DispatchOptions,
    *,
    launches_agents: bool = True,
) -> Iterator[FactoryContext]:
    if dispatch.agent_command:
        settings.executor.command_template = dispatch.agent_command
    if launches_agents:
        settings.validate_for_executor()
    with _repository(settings) as repository:
        executor = CliAgentExecutor(command_template=settings.executor.command_template)
        budget_guard = BudgetGuard(
            repository=repository,
            limits_usd=settings.budget.monthly_limits_usd,
        )
        scheduler = FactoryScheduler(
            repository=repository,
            executor=executor,
            budget_guard=budget_guard,
            readiness=ReadinessChecker(
                StoreReadinessProbe(repository=repository, ai=settings.ai),
            ),
            settings=settings.scheduler,
            provider=settings.ai.provider,
            timeout_seconds=settings.executor.timeout_seconds,
            workdir_root=settings.executor.workdir_root,
        )
        commands = FactoryCommands(
            role=settings.actor_role,
            scheduler=scheduler,
            rerun=RerunService(scheduler),
            autopilot=AutopilotService(scheduler),
            planning=PlanningService(repository),
        )
        loop = SchedulerLoop(
            scheduler,
            interval_seconds=settings.scheduler.reconcile_interval_seconds,
        )
        yield FactoryContext(
            settings=settings,
            repository=repository,
            executor=executor,
            scheduler=scheduler,
            commands=commands,
            loop=loop,
        )


def _drain(factory: FactoryContext, dispatch: DispatchOptions) -> list[str]:
    """Wait for attempts launched by this process, stopping them on timeout."""

    if not factory.executor.active_attempt_ids():
        return []
    factory.loop.start()
    try:
        finished = factory.loop.wait_until(
            lambda: not factory.executor.active_attempt_ids(),
            timeout=dispatch.wait_timeout_seconds,
        )
    finally:
        factory.loop.stop()
    if finished:
        return []

    leftover = factory.executor.active_attempt_ids()
    logger.warning("Stopping %d attempt(s) still running after wait timeout", len(leftover))
    for attempt_id in leftover:
        factory.scheduler.stop_attempt(attempt_id)
    return [
        f"Timed out after {dispatch.wait_timeout_seconds:.0f}s; "
        f"stopped {len(leftover)} attempt(s).",
    ]


def _require(result: CommandResult) -> CommandResult:
    if not result.ok:
        raise CommandRejected(result)
    return result


def _result_lines(result: CommandResult) -> list[str]:
    if result.ok:
        lines = [result.message] if result.message else []
    else:
        label = f"[{result.outcome.value}]"
        if result.reason:
            label = f"{label} {result.reason}"
        lines = [f"{label}: {result.message}"]
        if result.limit_usd is not None or result.spend_usd is not None:
            lines.append(
                f"limit_usd={(result.limit_usd or 0.0):.2f} "
                f"spend_usd={(result.spend_usd or 0.0):.2f}",
            )
        lines.extend(f"  blocker {check.id}: {check.description}" for check in result.blockers)
    if result.run_id:
        lines.append(f"run_id={result.run_id}")
    if result.session_id:
        lines.append(f"session_id={result.session_id}")
    if result.attempt_ids:
        lines.append(f"attempt_ids={','.join(result.attempt_ids)}")
    if result.task_ids:
        lines.append(f"task_ids={','.join(result.task_ids)}")
    return lines


def _counts_text(run: FactoryRunView) -> str:
    return " ".join(f"{key}={value}" for key, value in run.counts.as_dict().items())


def _run_summary(run: FactoryRunView) -> str:
    return (
        f"{run.run_id} status={run.status.value} mode={run.mode.value} "
        f"max_parallel={run.max_parallel} {_counts_text(run)}"
    )


def _run_lines(repository: SchedulerRepository, run_id: str) -> list[str]:
    run = repository.get_factory_run(run_id)
    if run is None:
        return []
    lines = [f"Run {_run_summary(run)}"]
    if run.source_run_id:
        lines.append(f"Rerun of {run.source_run_id}")
    return lines


def _project_lines(repository: SchedulerRepository, project_id: str) -> list[str]:
    project = repository.get_project(project_id)
    if project is None:
        return []
    tasks = repository.list_tasks(project_id=project_id)
    by_status: dict[str, int] = {}
    for task in tasks:
        by_status[task.status.value] = by_status.get(task.status.value, 0) + 1
    tally = " ".join(f"{status}={count}" for status, count in sorted(by_status.items()))
    return [
        f"Project {project.project_id} execution={project.execution_status.value} "
        f"max_parallel={project.max_parallel}",
        f"Tasks: {tally or 'none'}",
    ]


def _attempt_line(attempt: AttemptView) -> str:
    parts = [
        f"Attempt {attempt.attempt_id}",
        f"task={attempt.task_id}",
        f"status={attempt.status.value}",
    ]
    if attempt.exit_code is not None:
        parts.append(f"exit_code={attempt.exit_code}")
    if attempt.pr_url:
        parts.append(f"pr={attempt.pr_url}")
    if attempt.error:
        parts.append(f"error={attempt.error}")
    return " ".join(parts)


def _session_lines(session: AutopilotSessionView) -> list[str]:
    lines = [
        f"Session {session.session_id} status={session.status.value} mode={session.mode.value} "
        f"progress={len(session.completed_task_ids)}/{len(session.task_ids)}",
    ]
    if session.awaiting_approval:
        lines.append("Awaiting approval for the next task.")
    if session.error_code:
        lines.append(f"error_code={session.error_code} error={session.error or '-'}")
    return lines


def _readiness_lines(report: ReadinessReport) -> list[str]:
    lines = [f"Ready: {'yes' if report.all_ready else 'no'}"]
    lines.extend(
        f"  [{'x' if check.passed else ' '}] {check.id}: {check.description}"
        for check in report.checks
    )
    return lines


def split_ids(values: Sequence[str]) -> tuple[str, ...]:
    """Flatten repeated and comma separated id options."""

    ids: list[str] = []
    for value in values:
        ids.extend(part.strip() for part in value.split(",") if part.strip())
    return tuple(dict.fromkeys(ids))

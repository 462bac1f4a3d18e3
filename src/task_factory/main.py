"""CLI entrypoint for task-factory."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from task_factory import __version__
from task_factory.config import MAX_PARALLEL_CEILING
from task_factory.scheduler.controllers import (
    AttemptCommand,
    AutopilotCommand,
    AutopilotCreateCommand,
    BudgetRecordCommand,
    BudgetStatusCommand,
    CommandRejected,
    DispatchOptions,
    FactoryCliController,
    FactoryStartCommand,
    PlanningApplyCommand,
    PlanningCreateCommand,
    ProjectCommand,
    ProjectCreateCommand,
    ProjectSettingsCommand,
    RerunCommand,
    RunCommand,
    RunListCommand,
    ServeCommand,
    TaskAddCommand,
    TaskListCommand,
    TaskMoveCommand,
    TaskRetryCommand,
    split_ids,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FactoryCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def _dispatch_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option(
        "--wait-timeout",
        type=click.FloatRange(min=1),
        default=600.0,
        show_default=True,
        help="Seconds to wait for launched attempts before stopping them.",
    )(func)
    return click.option(
        "--agent-command",
        default=None,
        help="Agent command template with a {prompt} placeholder "
        "(overrides TASK_FACTORY_AGENT_COMMAND).",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="task-factory")
def task_factory() -> None:
    """Task factory: schedule coding-agent attempts against project tasks."""

    logging.basicConfig(
        level=os.getenv("TASK_FACTORY_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_factory.group()
def project() -> None:
    """Project commands."""


@project.command("create")
@_db_path_option
@click.option("--name", required=True, help="Project name.")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1, max=MAX_PARALLEL_CEILING),
    default=1,
    show_default=True,
    help="Concurrent attempts allowed for project execution.",
)
@click.option("--repo-path", default=None, help="Local repository path.")
@click.option("--repo-url", default=None, help="Remote repository URL.")
def project_create(
    db_path: Path | None,
    name: str,
    max_parallel: int,
    repo_path: str | None,
    repo_url: str | None,
) -> None:
    """Create a project."""

    _invoke(
        lambda: CONTROLLER.create_project(
            ProjectCreateCommand(
                db_path=db_path,
                name=name,
                max_parallel=max_parallel,
                repo_path=repo_path,
                repo_url=repo_url,
            ),
        ),
    )


@project.command("settings")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1, max=MAX_PARALLEL_CEILING),
    default=None,
    help="New concurrency cap.",
)
@click.option("--repo-path", default=None, help="Repository path; empty string clears it.")
@click.option("--repo-url", default=None, help="Repository URL; empty string clears it.")
def project_settings(
    db_path: Path | None,
    project_id: str,
    max_parallel: int | None,
    repo_path: str | None,
    repo_url: str | None,
) -> None:
    """Update project settings."""

    _invoke(
        lambda: CONTROLLER.update_project(
            ProjectSettingsCommand(
                db_path=db_path,
                project_id=project_id,
                max_parallel=max_parallel,
                repo_path=repo_path,
                repo_url=repo_url,
            ),
        ),
    )


@project.command("list")
@_db_path_option
def project_list(db_path: Path | None) -> None:
    """List projects."""

    _invoke(lambda: CONTROLLER.list_projects(db_path))


@project.command("start")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@_dispatch_options
def project_start(
    db_path: Path | None,
    project_id: str,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Start task-driven execution of the project's todo column."""

    _invoke(
        lambda: CONTROLLER.start_project(
            ProjectCommand(
                db_path=db_path,
                project_id=project_id,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@project.command("pause")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@_dispatch_options
def project_pause(
    db_path: Path | None,
    project_id: str,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Pause project execution; running attempts finish normally."""

    _invoke(
        lambda: CONTROLLER.pause_project(
            ProjectCommand(
                db_path=db_path,
                project_id=project_id,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@project.command("resume")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@_dispatch_options
def project_resume(
    db_path: Path | None,
    project_id: str,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Resume paused project execution."""

    _invoke(
        lambda: CONTROLLER.resume_project(
            ProjectCommand(
                db_path=db_path,
                project_id=project_id,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@project.command("status")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
def project_status(db_path: Path | None, project_id: str) -> None:
    """Show project execution status and task tally."""

    _invoke(
        lambda: CONTROLLER.project_status(ProjectCommand(db_path=db_path, project_id=project_id)),
    )


@task_factory.command("readiness")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
def readiness(db_path: Path | None, project_id: str) -> None:
    """Show the start checklist for a project."""

    _invoke(lambda: CONTROLLER.readiness(ProjectCommand(db_path=db_path, project_id=project_id)))


@task_factory.group()
def task() -> None:
    """Task commands."""


@task.command("add")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description passed to the agent.")
def task_add(db_path: Path | None, project_id: str, title: str, description: str) -> None:
    """Add a todo task at the end of the board."""

    _invoke(
        lambda: CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                project_id=project_id,
                title=title,
                description=description,
            ),
        ),
    )


@task.command("list")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--status",
    type=click.Choice(["todo", "in_progress", "in_review", "done", "cancelled"]),
    default=None,
    help="Optional status filter.",
)
def task_list(db_path: Path | None, project_id: str, status: str | None) -> None:
    """List tasks in board order."""

    _invoke(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, project_id=project_id, status=status),
        ),
    )


@task.command("retry")
@_db_path_option
@click.option("--task-id", required=True, help="Task id.")
@_dispatch_options
def task_retry(
    db_path: Path | None,
    task_id: str,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Run a fresh attempt for a task with no active attempt."""

    _invoke(
        lambda: CONTROLLER.retry_task(
            TaskRetryCommand(
                db_path=db_path,
                task_id=task_id,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@task.command("move")
@_db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--status",
    type=click.Choice(["todo", "in_progress", "in_review", "done", "cancelled"]),
    required=True,
    help="Target board column.",
)
def task_move(db_path: Path | None, task_id: str, status: str) -> None:
    """Move a task to another board column; refused while an attempt is active."""

    _invoke(
        lambda: CONTROLLER.move_task(
            TaskMoveCommand(db_path=db_path, task_id=task_id, status=status),
        ),
    )


@task_factory.group()
def factory() -> None:
    """Factory run commands."""


@factory.command("start")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--column",
    type=click.Choice(["todo", "in_progress", "in_review"]),
    default=None,
    help="Board column to run (default: todo).",
)
@click.option(
    "--task-id",
    "task_ids",
    multiple=True,
    help="Run only these tasks. Can be repeated or comma separated.",
)
@click.option(
    "--max-parallel",
    type=int,
    default=None,
    help=f"Run concurrency cap (1..{MAX_PARALLEL_CEILING}); defaults to the project's.",
)
@_dispatch_options
def factory_start(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    column: str | None,
    task_ids: tuple[str, ...],
    max_parallel: int | None,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Start a factory run and wait for its attempts."""

    _invoke(
        lambda: CONTROLLER.start_run(
            FactoryStartCommand(
                db_path=db_path,
                project_id=project_id,
                column=column,
                task_ids=split_ids(task_ids),
                max_parallel=max_parallel,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@factory.command("stop")
@_db_path_option
@click.option("--run-id", required=True, help="Run id.")
@_dispatch_options
def factory_stop(
    db_path: Path | None,
    run_id: str,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Cancel a run."""

    _invoke(
        lambda: CONTROLLER.stop_run(
            RunCommand(
                db_path=db_path,
                run_id=run_id,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@factory.command("status")
@_db_path_option
@click.option("--run-id", required=True, help="Run id.")
def factory_status(db_path: Path | None, run_id: str) -> None:
    """Show run counts and its attempts."""

    _invoke(lambda: CONTROLLER.run_status(RunCommand(db_path=db_path, run_id=run_id)))


@factory.command("runs")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max runs to print.",
)
def factory_runs(db_path: Path | None, project_id: str, limit: int) -> None:
    """List recent runs of a project."""

    _invoke(
        lambda: CONTROLLER.list_runs(
            RunListCommand(db_path=db_path, project_id=project_id, limit=limit),
        ),
    )


@factory.command("rerun")
@_db_path_option
@click.option("--run-id", required=True, help="Source run id.")
@click.option(
    "--task-id",
    "task_ids",
    multiple=True,
    help="Rerun these tasks instead of the failed ones. Can be repeated.",
)
@click.option("--max-parallel", type=int, default=None, help="Concurrency cap (clamped).")
@_dispatch_options
def factory_rerun(  # noqa: PLR0913
    db_path: Path | None,
    run_id: str,
    task_ids: tuple[str, ...],
    max_parallel: int | None,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Rerun the failed (or selected) tasks of a run as a new run."""

    _invoke(
        lambda: CONTROLLER.rerun(
            RerunCommand(
                db_path=db_path,
                run_id=run_id,
                task_ids=split_ids(task_ids),
                max_parallel=max_parallel,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@factory.command("inspect")
@_db_path_option
@click.option("--attempt-id", required=True, help="Attempt id.")
@click.option(
    "--log-limit",
    type=click.IntRange(min=1, max=5000),
    default=50,
    show_default=True,
    help="Max log lines to print.",
)
def factory_inspect(db_path: Path | None, attempt_id: str, log_limit: int) -> None:
    """Inspect one attempt with its events and log."""

    _invoke(
        lambda: CONTROLLER.inspect_attempt(
            AttemptCommand(db_path=db_path, attempt_id=attempt_id, log_limit=log_limit),
        ),
    )


@factory.command("stop-attempt")
@_db_path_option
@click.option("--attempt-id", required=True, help="Attempt id.")
@_dispatch_options
def factory_stop_attempt(
    db_path: Path | None,
    attempt_id: str,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Stop one waiting or running attempt."""

    _invoke(
        lambda: CONTROLLER.stop_attempt(
            AttemptCommand(
                db_path=db_path,
                attempt_id=attempt_id,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


@task_factory.group()
def autopilot() -> None:
    """Autopilot session commands."""


@autopilot.command("create")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--task-id",
    "task_ids",
    multiple=True,
    help="Ordered task ids (default: the todo column). Can be repeated.",
)
@click.option(
    "--mode",
    type=click.Choice(["step", "auto"]),
    default="step",
    show_default=True,
    help="step pauses for approval after each task; auto continues.",
)
def autopilot_create(
    db_path: Path | None,
    project_id: str,
    task_ids: tuple[str, ...],
    mode: str,
) -> None:
    """Create an idle autopilot session."""

    _invoke(
        lambda: CONTROLLER.create_autopilot(
            AutopilotCreateCommand(
                db_path=db_path,
                project_id=project_id,
                task_ids=split_ids(task_ids),
                mode=mode,
            ),
        ),
    )


def _autopilot_action(name: str, help_text: str, handler_name: str) -> None:
    @autopilot.command(name, help=help_text)
    @_db_path_option
    @click.option("--session-id", required=True, help="Autopilot session id.")
    @_dispatch_options
    def _command(
        db_path: Path | None,
        session_id: str,
        agent_command: str | None,
        wait_timeout: float,
    ) -> None:
        handler = getattr(CONTROLLER, handler_name)
        _invoke(
            lambda: handler(
                AutopilotCommand(
                    db_path=db_path,
                    session_id=session_id,
                    dispatch=DispatchOptions(agent_command, wait_timeout),
                ),
            ),
        )


_autopilot_action("start", "Start an idle session.", "start_autopilot")
_autopilot_action("approve", "Approve the next task of a step-mode session.", "approve_autopilot")
_autopilot_action("stop", "Stop a session and its current attempt.", "stop_autopilot")
_autopilot_action("retry", "Resume a failed or stopped session.", "retry_autopilot")


@autopilot.command("status")
@_db_path_option
@click.option("--session-id", required=True, help="Autopilot session id.")
def autopilot_status(db_path: Path | None, session_id: str) -> None:
    """Show session progress."""

    _invoke(
        lambda: CONTROLLER.autopilot_status(
            AutopilotCommand(db_path=db_path, session_id=session_id),
        ),
    )


@autopilot.command("list")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
def autopilot_list(db_path: Path | None, project_id: str) -> None:
    """List autopilot sessions of a project, newest first."""

    _invoke(
        lambda: CONTROLLER.list_autopilot_sessions(
            ProjectCommand(db_path=db_path, project_id=project_id),
        ),
    )


@task_factory.group()
def budget() -> None:
    """Monthly spend commands."""


@budget.command("status")
@_db_path_option
@click.option("--provider", default=None, help="Provider (default: TASK_FACTORY_AI_PROVIDER).")
def budget_status(db_path: Path | None, provider: str | None) -> None:
    """Show month-to-date spend against the configured limit."""

    _invoke(
        lambda: CONTROLLER.budget_status(BudgetStatusCommand(db_path=db_path, provider=provider)),
    )


@budget.command("record")
@_db_path_option
@click.option("--provider", required=True, help="Provider the cost is charged to.")
@click.option("--cost-usd", type=click.FloatRange(min=0), required=True, help="Cost in USD.")
def budget_record(db_path: Path | None, provider: str, cost_usd: float) -> None:
    """Record spend reported outside the executor."""

    _invoke(
        lambda: CONTROLLER.record_spend(
            BudgetRecordCommand(db_path=db_path, provider=provider, cost_usd=cost_usd),
        ),
    )


@task_factory.group()
def planning() -> None:
    """Planning session commands."""


@planning.command("create")
@_db_path_option
@click.option("--project-id", required=True, help="Project id.")
@click.option("--idea", "idea_text", required=True, help="Idea to plan.")
def planning_create(db_path: Path | None, project_id: str, idea_text: str) -> None:
    """Open a planning session for an idea."""

    _invoke(
        lambda: CONTROLLER.create_planning(
            PlanningCreateCommand(db_path=db_path, project_id=project_id, idea_text=idea_text),
        ),
    )


@planning.command("apply")
@_db_path_option
@click.option("--session-id", required=True, help="Planning session id.")
@click.option("--task-id", "task_ids", multiple=True, help="Existing task to attach.")
@click.option("--title", "titles", multiple=True, help="New todo task title. Can be repeated.")
def planning_apply(
    db_path: Path | None,
    session_id: str,
    task_ids: tuple[str, ...],
    titles: tuple[str, ...],
) -> None:
    """Apply a planning session once; repeats report the first result."""

    _invoke(
        lambda: CONTROLLER.apply_planning(
            PlanningApplyCommand(
                db_path=db_path,
                session_id=session_id,
                task_ids=split_ids(task_ids),
                titles=titles,
            ),
        ),
    )


@task_factory.command("serve")
@_db_path_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one reconciliation sweep or loop until interrupted.",
)
@_dispatch_options
def serve(
    db_path: Path | None,
    once: bool,
    agent_command: str | None,
    wait_timeout: float,
) -> None:
    """Run the reconciliation loop that admits and recovers attempts."""

    _invoke(
        lambda: CONTROLLER.serve(
            ServeCommand(
                db_path=db_path,
                once=once,
                dispatch=DispatchOptions(agent_command, wait_timeout),
            ),
        ),
    )


def _invoke(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except CommandRejected as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_factory()

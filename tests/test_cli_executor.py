from __future__ import annotations

import shlex
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from task_factory.executor import (
    CliAgentExecutor,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorError,
)
from task_factory.executor.cli_executor import TIMEOUT_EXIT_CODE, _build_run_args

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Agent Executor"),
]

_ECHO_AGENT = f"{shlex.quote(sys.executable)} -m task_factory.executor.echo_agent"


def _request(attempt_id: str = "attempt-1", **overrides: object) -> ExecutionRequest:
    fields: dict[str, object] = {
        "attempt_id": attempt_id,
        "task_id": "task-1",
        "project_id": "project-1",
        "prompt": "Fix the 'login' bug; then open a PR",
        "provider": "anthropic",
    }
    fields.update(overrides)
    return ExecutionRequest(**fields)  # type: ignore[arg-type]


class _Collector:
    def __init__(self) -> None:
        self.lines: list[str] = []
        self.outcome: ExecutionOutcome | None = None
        self.done = threading.Event()

    def on_log(self, attempt_id: str, line: str) -> None:
        self.lines.append(line)

    def on_complete(self, outcome: ExecutionOutcome) -> None:
        self.outcome = outcome
        self.done.set()


def _wait_idle(executor: CliAgentExecutor, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while executor.active_attempt_ids():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    argv = _build_run_args(
        command_template="agent run --task {task_id} --cwd {workdir} -- {prompt}",
        request=_request(),
        workdir=tmp_path,
    )

    assert argv == [
        "agent",
        "run",
        "--task",
        "task-1",
        "--cwd",
        str(tmp_path),
        "--",
        "Fix the 'login' bug; then open a PR",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --task {task_id}", "must include"),
        ("agent {prompt} {model}", "placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ExecutorError, match=message) as error:
        _build_run_args(command_template=template, request=_request(), workdir=None)

    assert error.value.transient is False


def test_echo_agent_reports_pr_url_and_cost(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        command_template=(
            f"{_ECHO_AGENT} --prompt {{prompt}} "
            "--pr-url https://github.com/acme/app/pull/42 --cost-usd 0.25"
        ),
        workdir_root=tmp_path,
    )
    collector = _Collector()

    executor.start(_request(), on_complete=collector.on_complete, on_log=collector.on_log)

    assert collector.done.wait(timeout=30)
    outcome = collector.outcome
    assert outcome is not None
    assert outcome.succeeded
    assert outcome.pr_url == "https://github.com/acme/app/pull/42"
    assert outcome.cost_usd == pytest.approx(0.25)
    assert collector.lines[0] == "working on: Fix the 'login' bug; then open a PR"
    assert (tmp_path / "project-1" / "attempt-1").is_dir()


def test_nonzero_exit_is_reported_with_last_line(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        command_template=f"{_ECHO_AGENT} --prompt {{prompt}} --exit-code 3",
        workdir_root=tmp_path,
    )
    collector = _Collector()

    executor.start(_request(), on_complete=collector.on_complete, on_log=collector.on_log)

    assert collector.done.wait(timeout=30)
    assert collector.outcome.exit_code == 3
    assert collector.outcome.pr_url is None
    assert "giving up with exit code 3" in (collector.outcome.error_message or "")


def test_timeout_terminates_agent(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        command_template=f"{_ECHO_AGENT} --prompt {{prompt}} --sleep 30",
        workdir_root=tmp_path,
    )
    collector = _Collector()

    executor.start(
        _request(timeout_seconds=1),
        on_complete=collector.on_complete,
        on_log=collector.on_log,
    )

    assert collector.done.wait(timeout=30)
    assert collector.outcome.timed_out is True
    assert collector.outcome.exit_code == TIMEOUT_EXIT_CODE
    assert _wait_idle(executor)


def test_stop_terminates_running_agent(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        command_template=f"{_ECHO_AGENT} --prompt {{prompt}} --sleep 30",
        workdir_root=tmp_path,
    )
    collector = _Collector()
    executor.start(_request(), on_complete=collector.on_complete, on_log=collector.on_log)

    assert executor.active_attempt_ids() == ["attempt-1"]
    assert executor.stop("attempt-1") is True

    assert collector.done.wait(timeout=30)
    assert collector.outcome.error_message == "Agent stopped"
    assert _wait_idle(executor)
    assert executor.stop("attempt-1") is False


def test_missing_binary_is_not_transient(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        command_template="definitely-not-an-agent-binary {prompt}",
        workdir_root=tmp_path,
    )
    collector = _Collector()

    with pytest.raises(ExecutorError) as error:
        executor.start(_request(), on_complete=collector.on_complete, on_log=collector.on_log)

    assert error.value.transient is False
    assert executor.active_attempt_ids() == []

"""Subprocess-based executor for CLI coding agents."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import threading
from collections import deque
from pathlib import Path

from task_factory.executor.base import (
    CompletionCallback,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorError,
    LogCallback,
)

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124

_PR_URL_RE = re.compile(r"https?://\S+/pull/\d+")
_COST_RE = re.compile(r"^\s*COST_USD=(\d+(?:\.\d+)?)\s*$")


class CliAgentExecutor:
    """Run each attempt as one subprocess built from a command template.

    The template is shell-split after substitution of ``{prompt}``,
    ``{task_id}``, ``{attempt_id}`` and ``{workdir}``. Output is merged into a
    single stream that is forwarded line by line. A line containing a pull
    request URL sets the attempt artifact; ``COST_USD=<amount>`` reports spend.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir_root: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.workdir_root = workdir_root
        self.env = env
        self._lock = threading.Lock()
        self._processes: dict[str, subprocess.Popen[str]] = {}
        self._expired: set[str] = set()
        self._stopped: set[str] = set()

    def start(
        self,
        request: ExecutionRequest,
        *,
        on_complete: CompletionCallback,
        on_log: LogCallback,
    ) -> None:
        workdir = self._prepare_workdir(request)
        run_args = _build_run_args(
            command_template=self.command_template,
            request=request,
            workdir=workdir,
        )

        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env["TASK_FACTORY_ATTEMPT_ID"] = request.attempt_id
        env["TASK_FACTORY_TASK_ID"] = request.task_id
        env["TASK_FACTORY_PROVIDER"] = request.provider

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=workdir,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ExecutorError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ExecutorError(f"Agent failed to start: {error}", transient=True) from error

        with self._lock:
            self._processes[request.attempt_id] = process
        logger.info("Attempt %s started as pid %s", request.attempt_id, process.pid)

        thread = threading.Thread(
            target=self._watch,
            kwargs={
                "request": request,
                "process": process,
                "on_complete": on_complete,
                "on_log": on_log,
            },
            name=f"attempt-{request.attempt_id[:8]}",
            daemon=True,
        )
        thread.start()

    def stop(self, attempt_id: str) -> bool:
        with self._lock:
            process = self._processes.get(attempt_id)
            if process is None:
                return False
            self._stopped.add(attempt_id)
        _terminate_process(process)
        return True

    def active_attempt_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._processes)

    def _prepare_workdir(self, request: ExecutionRequest) -> Path | None:
        if request.workdir is not None:
            request.workdir.mkdir(parents=True, exist_ok=True)
            return request.workdir
        if self.workdir_root is None:
            return None
        workdir = self.workdir_root / request.project_id / request.attempt_id
        workdir.mkdir(parents=True, exist_ok=True)
        return workdir

    def _expire(self, attempt_id: str) -> None:
        with self._lock:
            process = self._processes.get(attempt_id)
            if process is None:
                return
            self._expired.add(attempt_id)
        logger.warning("Attempt %s exceeded its timeout; terminating", attempt_id)
        _terminate_process(process)

    def _watch(
        self,
        *,
        request: ExecutionRequest,
        process: subprocess.Popen[str],
        on_complete: CompletionCallback,
        on_log: LogCallback,
    ) -> None:
        attempt_id = request.attempt_id
        timer = threading.Timer(request.timeout_seconds, self._expire, args=(attempt_id,))
        timer.daemon = True
        timer.start()

        pr_url: str | None = None
        cost_usd: float | None = None
        tail: deque[str] = deque(maxlen=5)
        try:
            assert process.stdout is not None
            for raw_line in process.stdout:
                line = raw_line.rstrip("\n")
                if not line:
                    continue
                tail.append(line)
                pr_match = _PR_URL_RE.search(line)
                if pr_match is not None:
                    pr_url = pr_match.group(0)
                cost_match = _COST_RE.match(line)
                if cost_match is not None:
                    cost_usd = float(cost_match.group(1))
                try:
                    on_log(attempt_id, line)
                except Exception:  # noqa: BLE001
                    logger.exception("Log callback failed for attempt %s", attempt_id)
            exit_code = process.wait()
        finally:
            timer.cancel()
            with self._lock:
                timed_out = attempt_id in self._expired
                stopped = attempt_id in self._stopped
                self._expired.discard(attempt_id)
                self._stopped.discard(attempt_id)

        error_message: str | None = None
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            error_message = f"Agent timed out after {request.timeout_seconds}s"
        elif stopped:
            error_message = "Agent stopped"
        elif exit_code != 0:
            last_line = tail[-1] if tail else "no output"
            error_message = f"Agent exited with code {exit_code}: {last_line}"

        outcome = ExecutionOutcome(
            attempt_id=attempt_id,
            exit_code=exit_code,
            pr_url=pr_url,
            error_message=error_message,
            cost_usd=cost_usd,
            timed_out=timed_out,
        )
        # The attempt stays listed as active until its completion is recorded.
        try:
            on_complete(outcome)
        except Exception:  # noqa: BLE001
            logger.exception("Completion callback failed for attempt %s", attempt_id)
        finally:
            with self._lock:
                self._processes.pop(attempt_id, None)


def _build_run_args(
    *,
    command_template: str,
    request: ExecutionRequest,
    workdir: Path | None,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise ExecutorError("Agent command template must include {prompt}.", transient=False)

    try:
        rendered = stripped.format(
            prompt=shlex.quote(request.prompt),
            task_id=shlex.quote(request.task_id),
            attempt_id=shlex.quote(request.attempt_id),
            workdir=shlex.quote(str(workdir or Path.cwd())),
        )
    except (KeyError, IndexError) as error:
        raise ExecutorError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Agent command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

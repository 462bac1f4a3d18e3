"""Executor interface the scheduler dispatches attempts to."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class ExecutorError(RuntimeError):
    """Executor start/stop error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one attempt."""

    attempt_id: str
    task_id: str
    project_id: str
    prompt: str
    provider: str
    workdir: Path | None = None
    timeout_seconds: int = 1_800


@dataclass(slots=True)
class ExecutionOutcome:
    """What the executor reports once an attempt's process is done."""

    attempt_id: str
    exit_code: int
    pr_url: str | None = None
    error_message: str | None = None
    cost_usd: float | None = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


CompletionCallback = Callable[[ExecutionOutcome], None]
LogCallback = Callable[[str, str], None]


class AgentExecutor(Protocol):
    """Protocol implemented by attempt executors.

    ``start`` must return promptly; the outcome is delivered later through
    ``on_complete`` (possibly from another thread). ``on_log`` receives
    ``(attempt_id, line)`` pairs.
    """

    def start(
        self,
        request: ExecutionRequest,
        *,
        on_complete: CompletionCallback,
        on_log: LogCallback,
    ) -> None:
        """Launch the attempt or raise ``ExecutorError``."""

    def stop(self, attempt_id: str) -> bool:
        """Send a best-effort stop signal; True if the attempt was live."""

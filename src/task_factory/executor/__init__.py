"""Agent executors that run one attempt each."""

from task_factory.executor.base import (
    AgentExecutor,
    CompletionCallback,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorError,
    LogCallback,
)
from task_factory.executor.cli_executor import CliAgentExecutor

__all__ = [
    "AgentExecutor",
    "CliAgentExecutor",
    "CompletionCallback",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExecutorError",
    "LogCallback",
]

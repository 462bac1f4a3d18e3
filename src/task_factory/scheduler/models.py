"""Domain models for scheduling attempts, runs and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ProjectExecutionStatus(str, Enum):
    """Task-driven project execution lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Board column of a task."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELLED = "cancelled"


RUNNABLE_TASK_STATUSES = frozenset(
    {TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW},
)


class AttemptStatus(str, Enum):
    """Durable attempt lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ATTEMPT_STATUSES


ACTIVE_ATTEMPT_STATUSES = frozenset(
    {AttemptStatus.PENDING, AttemptStatus.QUEUED, AttemptStatus.RUNNING},
)
WAITING_ATTEMPT_STATUSES = frozenset({AttemptStatus.PENDING, AttemptStatus.QUEUED})
TERMINAL_ATTEMPT_STATUSES = frozenset(
    {AttemptStatus.COMPLETED, AttemptStatus.FAILED, AttemptStatus.STOPPED},
)


class FactoryRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FactoryRunMode(str, Enum):
    """How the run's target task set was chosen."""

    COLUMN = "column"
    SELECTION = "selection"


class AutopilotSessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    DONE = "done"


class AutopilotMode(str, Enum):
    """STEP pauses for approval after each task, AUTO does not."""

    STEP = "step"
    AUTO = "auto"


class PlanningSessionStatus(str, Enum):
    DISCUSSION = "discussion"
    APPLIED = "applied"


class ScopeKind(str, Enum):
    RUN = "run"
    PROJECT = "project"


class CommandOutcome(str, Enum):
    """Standard outcomes of every scheduling entry point."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Machine-readable reasons attached to denied commands."""

    BUDGET_LIMIT_EXCEEDED = "BUDGET_LIMIT_EXCEEDED"
    READINESS_BLOCKED = "READINESS_BLOCKED"
    NO_TASKS = "NO_TASKS"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NO_TASKS_TO_RERUN = "NO_TASKS_TO_RERUN"
    INVALID_MAX_PARALLEL = "INVALID_MAX_PARALLEL"


class BudgetReason(str, Enum):
    NO_LIMIT = "no_limit"
    WITHIN_LIMIT = "within_limit"
    LIMIT_EXCEEDED = "limit_exceeded"


@dataclass(frozen=True, slots=True)
class SchedulingScope:
    """Admission scope: a factory run, or a project's run-less attempts."""

    kind: ScopeKind
    scope_id: str

    @classmethod
    def for_run(cls, run_id: str) -> SchedulingScope:
        return cls(kind=ScopeKind.RUN, scope_id=run_id)

    @classmethod
    def for_project(cls, project_id: str) -> SchedulingScope:
        return cls(kind=ScopeKind.PROJECT, scope_id=project_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.scope_id}"


@dataclass(slots=True)
class ProjectView:
    project_id: str
    name: str
    execution_status: ProjectExecutionStatus
    max_parallel: int
    repo_path: str | None
    repo_url: str | None
    execution_started_at: datetime | None
    execution_finished_at: datetime | None
    created_at: datetime

    @property
    def repo_configured(self) -> bool:
        return bool(self.repo_path or self.repo_url)


@dataclass(slots=True)
class TaskView:
    task_id: str
    project_id: str
    title: str
    description: str
    status: TaskStatus
    position: int
    created_at: datetime


@dataclass(slots=True)
class AttemptView:
    """Readable attempt view for scheduler and CLI."""

    attempt_id: str
    task_id: str
    project_id: str
    factory_run_id: str | None
    autopilot_session_id: str | None
    status: AttemptStatus
    provider: str
    created_at: datetime
    queued_at: datetime | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    exit_code: int | None
    pr_url: str | None
    error: str | None

    @property
    def scope(self) -> SchedulingScope:
        if self.factory_run_id is not None:
            return SchedulingScope.for_run(self.factory_run_id)
        return SchedulingScope.for_project(self.project_id)


@dataclass(slots=True)
class AttemptEventView:
    """Attempt event entry for audit trail."""

    event_id: int
    attempt_id: str
    event_type: str
    status_from: AttemptStatus | None
    status_to: AttemptStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunCounts:
    """Attempt tally of one run, derived from attempt rows on read."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    running: int = 0
    queued: int = 0

    @property
    def outstanding(self) -> int:
        return self.running + self.queued

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "running": self.running,
            "queued": self.queued,
        }


@dataclass(slots=True)
class FactoryRunView:
    run_id: str
    project_id: str
    status: FactoryRunStatus
    mode: FactoryRunMode
    max_parallel: int
    provider: str
    target_task_ids: list[str]
    column_status: TaskStatus | None
    source_run_id: str | None
    error: str | None
    started_at: datetime
    finished_at: datetime | None
    counts: RunCounts


@dataclass(slots=True)
class RunCreation:
    """Newly created run with the attempts it seeded."""

    run: FactoryRunView
    attempt_ids: list[str]
    skipped_task_ids: list[str]


@dataclass(slots=True)
class RunStopResult:
    run: FactoryRunView
    stopped_attempts: list[AttemptView]
    changed: bool

    @property
    def running_attempt_ids(self) -> list[str]:
        """Attempts that were in flight and need a stop signal."""

        return [attempt.attempt_id for attempt in self.stopped_attempts if attempt.started_at]


@dataclass(slots=True)
class AttemptFinish:
    """Terminal transition applied to one attempt and its side effects."""

    attempt: AttemptView
    previous_status: AttemptStatus
    run: FactoryRunView | None
    run_finalized: bool


@dataclass(slots=True)
class AutopilotSessionView:
    session_id: str
    project_id: str
    status: AutopilotSessionStatus
    mode: AutopilotMode
    task_ids: list[str]
    completed_task_ids: list[str]
    current_index: int
    current_task_id: str | None
    current_attempt_id: str | None
    awaiting_approval: bool
    error_code: str | None
    error: str | None
    created_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class PlanningSessionView:
    session_id: str
    project_id: str
    idea_text: str
    status: PlanningSessionStatus
    applied_task_ids: list[str] | None
    applied_at: datetime | None


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    """Outcome of one budget check for a provider."""

    allowed: bool
    provider: str
    reason: BudgetReason
    limit_usd: float | None = None
    spend_usd: float = 0.0


@dataclass(frozen=True, slots=True)
class ReadinessCheck:
    id: str
    passed: bool
    description: str


@dataclass(frozen=True, slots=True)
class ReadinessReport:
    checks: tuple[ReadinessCheck, ...]

    @property
    def blockers(self) -> list[ReadinessCheck]:
        return [check for check in self.checks if not check.passed]

    @property
    def all_ready(self) -> bool:
        return not self.blockers


@dataclass(slots=True)
class AdmissionResult:
    """Attempts moved to running by one admission pass."""

    scope: SchedulingScope
    admitted: list[AttemptView] = field(default_factory=list)
    queued_attempt_ids: list[str] = field(default_factory=list)
    budget_blocked: BudgetDecision | None = None


@dataclass(slots=True)
class CommandResult:
    """Structured response returned by every scheduling entry point."""

    outcome: CommandOutcome
    reason: str | None = None
    message: str = ""
    limit_usd: float | None = None
    spend_usd: float | None = None
    blockers: list[ReadinessCheck] = field(default_factory=list)
    run_id: str | None = None
    session_id: str | None = None
    attempt_ids: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    run: FactoryRunView | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is CommandOutcome.SUCCESS

    @classmethod
    def success(cls, message: str = "", **payload: Any) -> CommandResult:
        return cls(outcome=CommandOutcome.SUCCESS, message=message, **payload)

    @classmethod
    def not_found(cls, message: str) -> CommandResult:
        return cls(outcome=CommandOutcome.NOT_FOUND, message=message)

    @classmethod
    def conflict(cls, reason: str, message: str, **payload: Any) -> CommandResult:
        return cls(outcome=CommandOutcome.CONFLICT, reason=reason, message=message, **payload)

    @classmethod
    def forbidden(cls, message: str) -> CommandResult:
        return cls(outcome=CommandOutcome.FORBIDDEN, message=message)

    @classmethod
    def denied(cls, reason: DenialReason, message: str, **payload: Any) -> CommandResult:
        return cls(
            outcome=CommandOutcome.DENIED,
            reason=reason.value,
            message=message,
            **payload,
        )

    @classmethod
    def budget_denied(cls, decision: BudgetDecision) -> CommandResult:
        return cls.denied(
            DenialReason.BUDGET_LIMIT_EXCEEDED,
            f"Monthly budget for {decision.provider} is exhausted "
            f"(spend ${decision.spend_usd:.2f} of ${(decision.limit_usd or 0.0):.2f}).",
            limit_usd=decision.limit_usd,
            spend_usd=decision.spend_usd,
        )


@dataclass(slots=True)
class ReconcileSummary:
    """What one reconciliation tick observed and changed."""

    observed: bool = True
    recovered_attempt_ids: list[str] = field(default_factory=list)
    finalized_run_ids: list[str] = field(default_factory=list)
    admitted_attempt_ids: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def changed(self) -> bool:
        return bool(
            self.recovered_attempt_ids or self.finalized_run_ids or self.admitted_attempt_ids,
        )

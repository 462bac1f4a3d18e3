"""SQLModel ORM tables for the scheduler store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str
    execution_status: str = Field(default="idle", index=True)
    max_parallel: int = 1
    repo_path: str | None = None
    repo_url: str | None = None
    execution_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    execution_finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_project_status_position", "project_id", "status", "position"),
    )

    task_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str
    position: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class FactoryRun(SQLModel, table=True):
    __tablename__ = "factory_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_factory_runs_project_started", "project_id", "started_at"),)

    run_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
    )
    status: str = Field(index=True)
    mode: str
    max_parallel: int
    provider: str
    target_task_ids_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    column_status: str | None = None
    source_run_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class AutopilotSession(SQLModel, table=True):
    __tablename__ = "autopilot_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
    )
    status: str
    mode: str
    task_ids_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    completed_task_ids_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    current_index: int = 0
    current_task_id: str | None = None
    current_attempt_id: str | None = None
    awaiting_approval: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    error_code: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class Attempt(SQLModel, table=True):
    __tablename__ = "attempts"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_attempts_run_status", "factory_run_id", "status"),
        Index("idx_attempts_project_status_created", "project_id", "status", "created_at"),
        Index(
            "uq_attempts_task_active",
            "task_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'queued', 'running')"),
        ),
    )

    attempt_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    project_id: str = Field(
        sa_column=Column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
    )
    factory_run_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("factory_runs.run_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    autopilot_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("autopilot_sessions.session_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str
    provider: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    exit_code: int | None = None
    pr_url: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class AttemptEvent(SQLModel, table=True):
    __tablename__ = "attempt_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    attempt_id: str = Field(
        sa_column=Column(
            ForeignKey("attempts.attempt_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AttemptLogLine(SQLModel, table=True):
    __tablename__ = "attempt_log_lines"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    attempt_id: str = Field(
        sa_column=Column(
            ForeignKey("attempts.attempt_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    line: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BudgetLedgerEntry(SQLModel, table=True):
    __tablename__ = "budget_ledger"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_budget_ledger_provider_time", "provider", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    provider: str
    cost_usd: float
    attempt_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlanningSession(SQLModel, table=True):
    __tablename__ = "planning_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False),
    )
    idea_text: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str
    applied_task_ids_json: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    applied_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

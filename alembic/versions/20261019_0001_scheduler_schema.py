"""Initial scheduler schema: projects, tasks, runs, attempts, sessions, ledger."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("execution_status", sa.String(), nullable=False, server_default="idle"),
        sa.Column("max_parallel", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("repo_path", sa.String(), nullable=True),
        sa.Column("repo_url", sa.String(), nullable=True),
        sa.Column("execution_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_id"),
    )
    op.create_index(
        "ix_projects_execution_status",
        "projects",
        ["execution_status"],
        unique=False,
    )

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_tasks_project_status_position",
        "tasks",
        ["project_id", "status", "position"],
        unique=False,
    )

    op.create_table(
        "factory_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("max_parallel", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("target_task_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("column_status", sa.String(), nullable=True),
        sa.Column("source_run_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "idx_factory_runs_project_started",
        "factory_runs",
        ["project_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_factory_runs_status", "factory_runs", ["status"], unique=False)

    op.create_table(
        "autopilot_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("task_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("completed_task_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("current_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_task_id", sa.String(), nullable=True),
        sa.Column("current_attempt_id", sa.String(), nullable=True),
        sa.Column(
            "awaiting_approval",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("session_id"),
    )

    op.create_table(
        "attempts",
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("factory_run_id", sa.String(), nullable=True),
        sa.Column("autopilot_session_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("pr_url", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["factory_run_id"],
            ["factory_runs.run_id"],
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["autopilot_session_id"],
            ["autopilot_sessions.session_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("attempt_id"),
    )
    op.create_index(
        "idx_attempts_run_status",
        "attempts",
        ["factory_run_id", "status"],
        unique=False,
    )
    op.create_index(
        "idx_attempts_project_status_created",
        "attempts",
        ["project_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_attempts_autopilot_session_id",
        "attempts",
        ["autopilot_session_id"],
        unique=False,
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_attempts_task_active
            ON attempts (task_id)
            WHERE status IN ('pending', 'queued', 'running')
            """,
        ),
    )

    op.create_table(
        "attempt_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["attempt_id"], ["attempts.attempt_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_attempt_events_attempt_id",
        "attempt_events",
        ["attempt_id"],
        unique=False,
    )

    op.create_table(
        "attempt_log_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("line", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["attempt_id"], ["attempts.attempt_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_attempt_log_lines_attempt_id",
        "attempt_log_lines",
        ["attempt_id"],
        unique=False,
    )

    op.create_table(
        "budget_ledger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_budget_ledger_provider_time",
        "budget_ledger",
        ["provider", "created_at"],
        unique=False,
    )

    op.create_table(
        "planning_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("idea_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("applied_task_ids_json", sa.Text(), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("session_id"),
    )


def downgrade() -> None:
    op.drop_table("planning_sessions")
    op.drop_index("idx_budget_ledger_provider_time", table_name="budget_ledger")
    op.drop_table("budget_ledger")
    op.drop_index("ix_attempt_log_lines_attempt_id", table_name="attempt_log_lines")
    op.drop_table("attempt_log_lines")
    op.drop_index("ix_attempt_events_attempt_id", table_name="attempt_events")
    op.drop_table("attempt_events")
    op.execute(sa.text("DROP INDEX IF EXISTS uq_attempts_task_active"))
    op.drop_index("ix_attempts_autopilot_session_id", table_name="attempts")
    op.drop_index("idx_attempts_project_status_created", table_name="attempts")
    op.drop_index("idx_attempts_run_status", table_name="attempts")
    op.drop_table("attempts")
    op.drop_table("autopilot_sessions")
    op.drop_index("ix_factory_runs_status", table_name="factory_runs")
    op.drop_index("idx_factory_runs_project_started", table_name="factory_runs")
    op.drop_table("factory_runs")
    op.drop_index("idx_tasks_project_status_position", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_projects_execution_status", table_name="projects")
    op.drop_table("projects")

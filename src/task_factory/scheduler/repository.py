"""Durable store for projects, tasks, runs, attempts and sessions."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, exists, func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from task_factory.scheduler.models import (
    ACTIVE_ATTEMPT_STATUSES,
    WAITING_ATTEMPT_STATUSES,
    AdmissionResult,
    AttemptEventView,
    AttemptFinish,
    AttemptStatus,
    AttemptView,
    AutopilotMode,
    AutopilotSessionStatus,
    AutopilotSessionView,
    BudgetDecision,
    FactoryRunMode,
    FactoryRunStatus,
    FactoryRunView,
    PlanningSessionStatus,
    PlanningSessionView,
    ProjectExecutionStatus,
    ProjectView,
    RunCounts,
    RunCreation,
    RunStopResult,
    SchedulingScope,
    ScopeKind,
    TaskStatus,
    TaskView,
)
from task_factory.storage.alembic_runner import upgrade_head
from task_factory.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_factory.storage.sqlmodel_models import (
    Attempt,
    AttemptEvent,
    AttemptLogLine,
    AutopilotSession,
    BudgetLedgerEntry,
    FactoryRun,
    PlanningSession,
    Project,
    Task,
)

logger = logging.getLogger(__name__)

BudgetGate = Callable[[str, float], BudgetDecision]

_ACTIVE = [status.value for status in ACTIVE_ATTEMPT_STATUSES]
_WAITING = [status.value for status in WAITING_ATTEMPT_STATUSES]


class SchedulerRepository:
    """Scheduler persistence facade backed by SQLModel + SQLite.

    Every method opens its own session. The engine starts each transaction with
    ``BEGIN IMMEDIATE``, so a method body is one serialized read-check-write unit.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Projects

    def create_project(
        self,
        *,
        name: str,
        max_parallel: int = 1,
        repo_path: str | None = None,
        repo_url: str | None = None,
        project_id: str | None = None,
    ) -> ProjectView:
        now = utc_now()
        row = Project(
            project_id=project_id or str(uuid4()),
            name=name,
            execution_status=ProjectExecutionStatus.IDLE.value,
            max_parallel=max_parallel,
            repo_path=repo_path,
            repo_url=repo_url,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    def list_projects(self) -> list[ProjectView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Project).order_by(col(Project.created_at).asc())).all()
        return [_to_project_view(row) for row in rows]

    def update_project_settings(
        self,
        *,
        project_id: str,
        max_parallel: int | None = None,
        repo_path: str | None = None,
        repo_url: str | None = None,
    ) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is None:
                return None
            if max_parallel is not None:
                row.max_parallel = max_parallel
            if repo_path is not None:
                row.repo_path = repo_path or None
            if repo_url is not None:
                row.repo_url = repo_url or None
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def set_project_execution_status(
        self,
        *,
        project_id: str,
        status: ProjectExecutionStatus,
        expected: Iterable[ProjectExecutionStatus],
    ) -> bool:
        """Move project execution status if it is currently one of ``expected``."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"execution_status": status.value, "updated_at": now}
        expected_values = [item.value for item in expected]
        resuming = ProjectExecutionStatus.PAUSED.value in expected_values
        if status is ProjectExecutionStatus.RUNNING and not resuming:
            values["execution_started_at"] = now
            values["execution_finished_at"] = None
        if status in {ProjectExecutionStatus.COMPLETED, ProjectExecutionStatus.FAILED}:
            values["execution_finished_at"] = now

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Project)
                .where(
                    col(Project.project_id) == project_id,
                    col(Project.execution_status).in_(expected_values),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Tasks

    def create_task(
        self,
        *,
        project_id: str,
        title: str,
        description: str = "",
        status: TaskStatus = TaskStatus.TODO,
        task_id: str | None = None,
    ) -> TaskView:
        with Session(self.engine) as session:
            row = self._insert_task(
                session=session,
                project_id=project_id,
                title=title,
                description=description,
                status=status,
                task_id=task_id,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        project_id: str,
        status: TaskStatus | None = None,
    ) -> list[TaskView]:
        """List project tasks in board order."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(Task.project_id == project_id)
                .order_by(
                    col(Task.position).asc(),
                    col(Task.created_at).asc(),
                    col(Task.task_id).asc(),
                )
            )
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def set_task_status(self, *, task_id: str, status: TaskStatus) -> bool:
        """Move a task to another column; refused while it holds an active attempt."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    ~exists().where(
                        and_(
                            col(Attempt.task_id) == task_id,
                            col(Attempt.status).in_(_ACTIVE),
                        ),
                    ),
                )
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def active_attempt_for_task(self, task_id: str) -> AttemptView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Attempt).where(
                    Attempt.task_id == task_id,
                    col(Attempt.status).in_(_ACTIVE),
                ),
            ).one_or_none()
            return _to_attempt_view(row) if row is not None else None

    # Factory runs

    def create_factory_run(  # noqa: PLR0913
        self,
        *,
        project_id: str,
        mode: FactoryRunMode,
        max_parallel: int,
        provider: str,
        task_ids: Sequence[str],
        column_status: TaskStatus | None = None,
        source_run_id: str | None = None,
        initial_status: AttemptStatus = AttemptStatus.PENDING,
    ) -> RunCreation | None:
        """Create a run and one waiting attempt per free target task.

        Tasks that already hold an active attempt, or do not belong to the
        project, are skipped. A run left with no attempts is finalized at once.
        """

        if initial_status not in WAITING_ATTEMPT_STATUSES:
            raise ValueError(f"Unsupported initial attempt status: {initial_status}")

        now = utc_now()
        run_id = str(uuid4())
        targets = list(dict.fromkeys(task_ids))
        with Session(self.engine) as session:
            if session.get(Project, project_id) is None:
                return None

            known = set(
                session.exec(
                    select(Task.task_id).where(
                        Task.project_id == project_id,
                        col(Task.task_id).in_(targets),
                    ),
                ).all(),
            )
            busy = set(
                session.exec(
                    select(Attempt.task_id).where(
                        col(Attempt.task_id).in_(targets),
                        col(Attempt.status).in_(_ACTIVE),
                    ),
                ).all(),
            )
            session.add(
                FactoryRun(
                    run_id=run_id,
                    project_id=project_id,
                    status=FactoryRunStatus.RUNNING.value,
                    mode=mode.value,
                    max_parallel=max_parallel,
                    provider=provider,
                    target_task_ids_json=_dump_ids(targets),
                    column_status=column_status.value if column_status is not None else None,
                    source_run_id=source_run_id,
                    started_at=now,
                ),
            )
            session.flush()

            attempt_ids: list[str] = []
            skipped: list[str] = []
            for offset, task_id in enumerate(targets):
                if task_id not in known or task_id in busy:
                    skipped.append(task_id)
                    continue
                attempt = self._insert_attempt(
                    session=session,
                    task_id=task_id,
                    project_id=project_id,
                    provider=provider,
                    status=initial_status,
                    factory_run_id=run_id,
                    # Keeps FIFO admission in target order when timestamps tie.
                    created_at=_nudge(now, offset),
                    details={"run_id": run_id, "source_run_id": source_run_id},
                )
                attempt_ids.append(attempt.attempt_id)

            if not attempt_ids:
                self._finalize_run_if_idle(session=session, run_id=run_id)
            session.commit()
            run = self._load_run_view(session=session, run_id=run_id)
        assert run is not None
        if skipped:
            logger.info("Run %s skipped %d busy or unknown tasks", run_id, len(skipped))
        return RunCreation(run=run, attempt_ids=attempt_ids, skipped_task_ids=skipped)

    def get_factory_run(self, run_id: str) -> FactoryRunView | None:
        """Return run with counts derived from its attempt rows."""

        with Session(self.engine) as session:
            return self._load_run_view(session=session, run_id=run_id)

    def list_factory_runs(
        self,
        *,
        project_id: str | None = None,
        status: FactoryRunStatus | None = None,
        limit: int = 20,
    ) -> list[FactoryRunView]:
        with Session(self.engine) as session:
            statement = (
                select(FactoryRun)
                .order_by(col(FactoryRun.started_at).desc(), col(FactoryRun.run_id).desc())
                .limit(limit)
            )
            if project_id is not None:
                statement = statement.where(FactoryRun.project_id == project_id)
            if status is not None:
                statement = statement.where(FactoryRun.status == status.value)
            rows = session.exec(statement).all()
            return [_to_run_view(row, _run_counts(session, row.run_id)) for row in rows]

    def stop_factory_run(self, run_id: str) -> RunStopResult | None:
        """Cancel a running run and stop every attempt it still has outstanding."""

        now = utc_now()
        with Session(self.engine) as session:
            run = session.get(FactoryRun, run_id)
            if run is None:
                return None
            if run.status != FactoryRunStatus.RUNNING.value:
                view = self._load_run_view(session=session, run_id=run_id)
                assert view is not None
                return RunStopResult(run=view, stopped_attempts=[], changed=False)

            result = session.exec(
                sa_update(FactoryRun)
                .where(
                    col(FactoryRun.run_id) == run_id,
                    col(FactoryRun.status) == FactoryRunStatus.RUNNING.value,
                )
                .values(
                    status=FactoryRunStatus.CANCELLED.value,
                    finished_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            rows = session.exec(
                select(Attempt)
                .where(Attempt.factory_run_id == run_id, col(Attempt.status).in_(_ACTIVE))
                .order_by(col(Attempt.created_at).asc(), col(Attempt.attempt_id).asc()),
            ).all()
            stopped: list[AttemptView] = []
            for row in rows:
                finish = self._transition_to_terminal(
                    session=session,
                    row=row,
                    status=AttemptStatus.STOPPED,
                    expected=ACTIVE_ATTEMPT_STATUSES,
                    error="Stopped with run",
                    event_type="stopped",
                    finalize_run=False,
                )
                if finish is not None:
                    stopped.append(finish.attempt)
            session.commit()
            view = self._load_run_view(session=session, run_id=run_id)
        assert view is not None
        return RunStopResult(run=view, stopped_attempts=stopped, changed=True)

    def finalize_idle_runs(self) -> list[FactoryRunView]:
        """Complete running runs that have no outstanding attempts."""

        with Session(self.engine) as session:
            run_ids = session.exec(
                select(FactoryRun.run_id).where(
                    FactoryRun.status == FactoryRunStatus.RUNNING.value,
                    ~exists().where(
                        and_(
                            col(Attempt.factory_run_id) == col(FactoryRun.run_id),
                            col(Attempt.status).in_(_ACTIVE),
                        ),
                    ),
                ),
            ).all()
            finalized = [
                run_id
                for run_id in run_ids
                if self._finalize_run_if_idle(session=session, run_id=run_id)
            ]
            session.commit()
            views = [self._load_run_view(session=session, run_id=run_id) for run_id in finalized]
        return [view for view in views if view is not None]

    def list_running_run_ids(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(FactoryRun.run_id)
                .where(FactoryRun.status == FactoryRunStatus.RUNNING.value)
                .order_by(col(FactoryRun.started_at).asc()),
            ).all()
        return list(rows)

    # Attempts

    def create_attempt(
        self,
        *,
        task_id: str,
        provider: str,
        factory_run_id: str | None = None,
        autopilot_session_id: str | None = None,
    ) -> AttemptView | None:
        """Create a pending attempt, or return None if the task is missing or busy."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            busy = session.exec(
                select(Attempt.attempt_id).where(
                    Attempt.task_id == task_id,
                    col(Attempt.status).in_(_ACTIVE),
                ),
            ).first()
            if busy is not None:
                return None
            row = self._insert_attempt(
                session=session,
                task_id=task_id,
                project_id=task.project_id,
                provider=provider,
                status=AttemptStatus.PENDING,
                factory_run_id=factory_run_id,
                autopilot_session_id=autopilot_session_id,
                created_at=utc_now(),
                details={"autopilot_session_id": autopilot_session_id},
            )
            session.commit()
            session.refresh(row)
            return _to_attempt_view(row)

    def get_attempt(self, attempt_id: str) -> AttemptView | None:
        with Session(self.engine) as session:
            row = session.get(Attempt, attempt_id)
            return _to_attempt_view(row) if row is not None else None

    def list_attempts(
        self,
        *,
        factory_run_id: str | None = None,
        project_id: str | None = None,
        task_id: str | None = None,
        statuses: Iterable[AttemptStatus] | None = None,
    ) -> list[AttemptView]:
        """List attempts in FIFO order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(Attempt).order_by(
                col(Attempt.created_at).asc(),
                col(Attempt.attempt_id).asc(),
            )
            if factory_run_id is not None:
                statement = statement.where(Attempt.factory_run_id == factory_run_id)
            if project_id is not None:
                statement = statement.where(Attempt.project_id == project_id)
            if task_id is not None:
                statement = statement.where(Attempt.task_id == task_id)
            if statuses is not None:
                statement = statement.where(
                    col(Attempt.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
        return [_to_attempt_view(row) for row in rows]

    def count_running_attempts(self, scope: SchedulingScope) -> int:
        with Session(self.engine) as session:
            return _count_running(session, scope)

    def scope_max_parallel(self, scope: SchedulingScope) -> int | None:
        with Session(self.engine) as session:
            if scope.kind is ScopeKind.RUN:
                run = session.get(FactoryRun, scope.scope_id)
                return run.max_parallel if run is not None else None
            project = session.get(Project, scope.scope_id)
            return project.max_parallel if project is not None else None

    def admit_waiting_attempts(
        self,
        *,
        scope: SchedulingScope,
        budget_gate: BudgetGate,
        spend_since: datetime,
    ) -> AdmissionResult:
        """Admit waiting attempts of one scope up to its free slots, FIFO.

        Slot counting, the budget gate and the running transitions happen in
        one transaction. Waiting attempts that do not fit are parked as queued.
        """

        now = utc_now()
        outcome = AdmissionResult(scope=scope)
        with Session(self.engine) as session:
            if scope.kind is ScopeKind.RUN:
                run = session.get(FactoryRun, scope.scope_id)
                if run is None or run.status != FactoryRunStatus.RUNNING.value:
                    return outcome
                cap = run.max_parallel
                waiting_filter = col(Attempt.factory_run_id) == scope.scope_id
            else:
                project = session.get(Project, scope.scope_id)
                if project is None or (
                    project.execution_status == ProjectExecutionStatus.PAUSED.value
                ):
                    return outcome
                cap = project.max_parallel
                waiting_filter = and_(
                    col(Attempt.project_id) == scope.scope_id,
                    col(Attempt.factory_run_id).is_(None),
                )

            free_slots = max(0, cap - _count_running(session, scope))
            waiting = session.exec(
                select(Attempt)
                .where(waiting_filter, col(Attempt.status).in_(_WAITING))
                .order_by(col(Attempt.created_at).asc(), col(Attempt.attempt_id).asc()),
            ).all()

            spend_by_provider: dict[str, float] = {}
            blocked_providers: set[str] = set()
            for row in waiting:
                if len(outcome.admitted) >= free_slots:
                    break
                if row.provider in blocked_providers:
                    continue
                if row.provider not in spend_by_provider:
                    spend_by_provider[row.provider] = _sum_spend(
                        session,
                        provider=row.provider,
                        since=spend_since,
                    )
                decision = budget_gate(row.provider, spend_by_provider[row.provider])
                if not decision.allowed:
                    blocked_providers.add(row.provider)
                    outcome.budget_blocked = decision
                    continue

                previous = AttemptStatus(row.status)
                result = session.exec(
                    sa_update(Attempt)
                    .where(
                        col(Attempt.attempt_id) == row.attempt_id,
                        col(Attempt.status) == previous.value,
                    )
                    .values(
                        status=AttemptStatus.RUNNING.value,
                        queued_at=row.queued_at or to_db_datetime(now),
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                session.exec(
                    sa_update(Task)
                    .where(col(Task.task_id) == row.task_id)
                    .values(
                        status=TaskStatus.IN_PROGRESS.value,
                        updated_at=to_db_datetime(now),
                    ),
                )
                self._add_event(
                    session=session,
                    attempt_id=row.attempt_id,
                    event_type="admitted",
                    status_from=previous,
                    status_to=AttemptStatus.RUNNING,
                    details={"scope": str(scope), "free_slots": free_slots},
                )
                session.refresh(row)
                outcome.admitted.append(_to_attempt_view(row))

            for row in waiting:
                if row.status != AttemptStatus.PENDING.value:
                    continue
                session.exec(
                    sa_update(Attempt)
                    .where(
                        col(Attempt.attempt_id) == row.attempt_id,
                        col(Attempt.status) == AttemptStatus.PENDING.value,
                    )
                    .values(status=AttemptStatus.QUEUED.value, queued_at=to_db_datetime(now)),
                )
                self._add_event(
                    session=session,
                    attempt_id=row.attempt_id,
                    event_type="queued",
                    status_from=AttemptStatus.PENDING,
                    status_to=AttemptStatus.QUEUED,
                    details={"scope": str(scope)},
                )
                outcome.queued_attempt_ids.append(row.attempt_id)
            session.commit()
        return outcome

    def finish_attempt(
        self,
        *,
        attempt_id: str,
        status: AttemptStatus,
        exit_code: int | None = None,
        pr_url: str | None = None,
        error: str | None = None,
    ) -> AttemptFinish | None:
        """Record a running attempt's completion; None if it is no longer running."""

        if status not in {AttemptStatus.COMPLETED, AttemptStatus.FAILED}:
            raise ValueError(f"Unsupported finish status: {status}")

        with Session(self.engine) as session:
            row = session.get(Attempt, attempt_id)
            if row is None:
                return None
            finish = self._transition_to_terminal(
                session=session,
                row=row,
                status=status,
                expected={AttemptStatus.RUNNING},
                exit_code=exit_code,
                pr_url=pr_url,
                error=error,
                event_type=status.value,
            )
            if finish is None:
                session.rollback()
                return None
            session.commit()
            return finish

    def stop_attempt(self, attempt_id: str) -> AttemptFinish | None:
        """Stop one waiting or running attempt; None if it is missing or terminal."""

        with Session(self.engine) as session:
            row = session.get(Attempt, attempt_id)
            if row is None:
                return None
            finish = self._transition_to_terminal(
                session=session,
                row=row,
                status=AttemptStatus.STOPPED,
                expected=ACTIVE_ATTEMPT_STATUSES,
                error="Stopped by user",
                event_type="stopped",
            )
            if finish is None:
                session.rollback()
                return None
            session.commit()
            return finish

    def touch_attempt(self, attempt_id: str) -> None:
        """Update heartbeat for a running attempt."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(Attempt)
                .where(
                    col(Attempt.attempt_id) == attempt_id,
                    col(Attempt.status) == AttemptStatus.RUNNING.value,
                )
                .values(heartbeat_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def recover_stale_running_attempts(self, *, stale_before: datetime) -> list[AttemptFinish]:
        """Fail running attempts whose heartbeat is older than ``stale_before``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Attempt).where(
                    Attempt.status == AttemptStatus.RUNNING.value,
                    or_(
                        col(Attempt.heartbeat_at) < to_db_datetime(stale_before),
                        and_(
                            col(Attempt.heartbeat_at).is_(None),
                            col(Attempt.started_at) < to_db_datetime(stale_before),
                        ),
                    ),
                ),
            ).all()
            recovered: list[AttemptFinish] = []
            for row in rows:
                finish = self._transition_to_terminal(
                    session=session,
                    row=row,
                    status=AttemptStatus.FAILED,
                    expected={AttemptStatus.RUNNING},
                    error="Attempt heartbeat expired; executor never reported completion",
                    event_type="recovered_stale",
                )
                if finish is not None:
                    recovered.append(finish)
            session.commit()
        return recovered

    def list_project_ids_with_waiting_attempts(self) -> list[str]:
        """Projects holding run-less attempts that still wait for a slot."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Attempt.project_id)
                .where(
                    col(Attempt.factory_run_id).is_(None),
                    col(Attempt.status).in_(_WAITING),
                )
                .distinct(),
            ).all()
        return sorted(rows)

    def queue_position(self, attempt_id: str) -> int | None:
        """1-indexed FIFO position of a waiting attempt within its scope."""

        with Session(self.engine) as session:
            row = session.get(Attempt, attempt_id)
            if row is None or row.status not in _WAITING:
                return None
            if row.factory_run_id is not None:
                scope_filter = col(Attempt.factory_run_id) == row.factory_run_id
            else:
                scope_filter = and_(
                    col(Attempt.project_id) == row.project_id,
                    col(Attempt.factory_run_id).is_(None),
                )
            ahead = session.exec(
                select(func.count())
                .select_from(Attempt)
                .where(
                    scope_filter,
                    col(Attempt.status).in_(_WAITING),
                    or_(
                        col(Attempt.created_at) < row.created_at,
                        and_(
                            col(Attempt.created_at) == row.created_at,
                            col(Attempt.attempt_id) < row.attempt_id,
                        ),
                    ),
                ),
            ).one()
        return int(ahead) + 1

    def list_attempt_events(self, attempt_id: str) -> list[AttemptEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AttemptEvent)
                .where(AttemptEvent.attempt_id == attempt_id)
                .order_by(col(AttemptEvent.created_at).asc(), col(AttemptEvent.id).asc()),
            ).all()

        events: list[AttemptEventView] = []
        for row in rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                AttemptEventView(
                    event_id=row.id or 0,
                    attempt_id=row.attempt_id,
                    event_type=row.event_type,
                    status_from=(
                        AttemptStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=AttemptStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    # Attempt logs

    def append_log_line(self, *, attempt_id: str, line: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.add(AttemptLogLine(attempt_id=attempt_id, line=line, created_at=now))
            session.exec(
                sa_update(Attempt)
                .where(
                    col(Attempt.attempt_id) == attempt_id,
                    col(Attempt.status) == AttemptStatus.RUNNING.value,
                )
                .values(heartbeat_at=to_db_datetime(now)),
            )
            session.commit()

    def list_log_lines(self, attempt_id: str, *, limit: int = 200) -> list[str]:
        """Return the most recent log lines of an attempt, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AttemptLogLine.line)
                .where(AttemptLogLine.attempt_id == attempt_id)
                .order_by(col(AttemptLogLine.id).desc())
                .limit(limit),
            ).all()
        return list(reversed(rows))

    # Budget ledger

    def append_ledger_entry(
        self,
        *,
        provider: str,
        cost_usd: float,
        attempt_id: str | None = None,
        created_at: datetime | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                BudgetLedgerEntry(
                    provider=provider,
                    cost_usd=cost_usd,
                    attempt_id=attempt_id,
                    created_at=created_at or utc_now(),
                ),
            )
            session.commit()

    def sum_spend(self, *, provider: str, since: datetime) -> float:
        with Session(self.engine) as session:
            return _sum_spend(session, provider=provider, since=since)

    # Project-scope dispatch

    def seed_project_attempts(
        self,
        *,
        project_id: str,
        provider: str,
        since: datetime,
    ) -> list[str]:
        """Create attempts for the next todo tasks that fit the project's free slots.

        A task is eligible when it is ``todo``, holds no active attempt and got no
        attempt since ``since`` (the current execution start).
        """

        now = utc_now()
        with Session(self.engine) as session:
            project = session.get(Project, project_id)
            if project is None:
                return []
            scope = SchedulingScope.for_project(project_id)
            waiting = session.exec(
                select(func.count())
                .select_from(Attempt)
                .where(
                    Attempt.project_id == project_id,
                    col(Attempt.factory_run_id).is_(None),
                    col(Attempt.status).in_(_WAITING),
                ),
            ).one()
            free_slots = project.max_parallel - _count_running(session, scope) - int(waiting)
            if free_slots <= 0:
                return []
            rows = session.exec(
                _dispatchable_tasks(project_id=project_id, since=since).limit(free_slots),
            ).all()
            created: list[str] = []
            for offset, task in enumerate(rows):
                attempt = self._insert_attempt(
                    session=session,
                    task_id=task.task_id,
                    project_id=project_id,
                    provider=provider,
                    status=AttemptStatus.PENDING,
                    created_at=_nudge(now, offset),
                    details={"project_execution": True},
                )
                created.append(attempt.attempt_id)
            session.commit()
        return created

    def project_execution_drained(self, *, project_id: str, since: datetime) -> bool:
        """True when no dispatchable task and no run-less active attempt remain."""

        with Session(self.engine) as session:
            remaining = session.exec(
                _dispatchable_tasks(project_id=project_id, since=since).limit(1),
            ).first()
            if remaining is not None:
                return False
            active = session.exec(
                select(Attempt.attempt_id)
                .where(
                    Attempt.project_id == project_id,
                    col(Attempt.factory_run_id).is_(None),
                    col(Attempt.status).in_(_ACTIVE),
                )
                .limit(1),
            ).first()
            return active is None

    def list_running_project_ids(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Project.project_id).where(
                    Project.execution_status == ProjectExecutionStatus.RUNNING.value,
                ),
            ).all()
        return list(rows)

    # Autopilot sessions

    def create_autopilot_session(
        self,
        *,
        project_id: str,
        task_ids: Sequence[str],
        mode: AutopilotMode,
    ) -> AutopilotSessionView:
        now = utc_now()
        row = AutopilotSession(
            session_id=str(uuid4()),
            project_id=project_id,
            status=AutopilotSessionStatus.IDLE.value,
            mode=mode.value,
            task_ids_json=_dump_ids(task_ids),
            completed_task_ids_json="[]",
            current_index=0,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_autopilot_view(row)

    def get_autopilot_session(self, session_id: str) -> AutopilotSessionView | None:
        with Session(self.engine) as session:
            row = session.get(AutopilotSession, session_id)
            return _to_autopilot_view(row) if row is not None else None

    def list_autopilot_sessions(self, *, project_id: str) -> list[AutopilotSessionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AutopilotSession)
                .where(AutopilotSession.project_id == project_id)
                .order_by(col(AutopilotSession.created_at).desc()),
            ).all()
        return [_to_autopilot_view(row) for row in rows]

    def update_autopilot_session(
        self,
        *,
        session_id: str,
        expected: Iterable[AutopilotSessionStatus],
        **changes: Any,
    ) -> bool:
        """Apply ``changes`` if the session is in one of the ``expected`` statuses."""

        values: dict[str, Any] = {"updated_at": to_db_datetime(utc_now())}
        for key, value in changes.items():
            if key == "status":
                status = AutopilotSessionStatus(value)
                values["status"] = status.value
                if status in {
                    AutopilotSessionStatus.DONE,
                    AutopilotSessionStatus.FAILED,
                    AutopilotSessionStatus.STOPPED,
                }:
                    values["finished_at"] = values["updated_at"]
                elif status is AutopilotSessionStatus.RUNNING:
                    values["finished_at"] = None
            elif key == "completed_task_ids":
                values["completed_task_ids_json"] = _dump_ids(value)
            else:
                values[key] = value

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AutopilotSession)
                .where(
                    col(AutopilotSession.session_id) == session_id,
                    col(AutopilotSession.status).in_([item.value for item in expected]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Planning sessions

    def create_planning_session(self, *, project_id: str, idea_text: str) -> PlanningSessionView:
        now = utc_now()
        row = PlanningSession(
            session_id=str(uuid4()),
            project_id=project_id,
            idea_text=idea_text,
            status=PlanningSessionStatus.DISCUSSION.value,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_planning_view(row)

    def get_planning_session(self, session_id: str) -> PlanningSessionView | None:
        with Session(self.engine) as session:
            row = session.get(PlanningSession, session_id)
            return _to_planning_view(row) if row is not None else None

    def apply_planning_session(
        self,
        *,
        session_id: str,
        task_ids: Sequence[str] = (),
        new_task_titles: Sequence[str] = (),
    ) -> tuple[PlanningSessionView, bool] | None:
        """Record the session's task ids once; later calls return the first record.

        Returns ``(view, applied_now)`` or None for an unknown session.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(PlanningSession, session_id)
            if row is None:
                return None
            if row.status == PlanningSessionStatus.APPLIED.value:
                return _to_planning_view(row), False

            applied = list(dict.fromkeys(task_ids))
            for title in new_task_titles:
                task = self._insert_task(
                    session=session,
                    project_id=row.project_id,
                    title=title,
                    description=f"Planned from session {session_id}",
                    status=TaskStatus.TODO,
                )
                applied.append(task.task_id)

            result = session.exec(
                sa_update(PlanningSession)
                .where(
                    col(PlanningSession.session_id) == session_id,
                    col(PlanningSession.status) == PlanningSessionStatus.DISCUSSION.value,
                )
                .values(
                    status=PlanningSessionStatus.APPLIED.value,
                    applied_task_ids_json=_dump_ids(applied),
                    applied_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.get(PlanningSession, session_id)
                assert current is not None
                return _to_planning_view(current), False
            session.commit()
            session.refresh(row)
            return _to_planning_view(row), True

    # Internals

    def _insert_task(  # noqa: PLR0913
        self,
        *,
        session: Session,
        project_id: str,
        title: str,
        description: str,
        status: TaskStatus,
        task_id: str | None = None,
    ) -> Task:
        now = utc_now()
        last_position = session.exec(
            select(func.max(Task.position)).where(Task.project_id == project_id),
        ).one()
        row = Task(
            task_id=task_id or str(uuid4()),
            project_id=project_id,
            title=title,
            description=description,
            status=status.value,
            position=(last_position or 0) + 1,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row

    def _insert_attempt(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        project_id: str,
        provider: str,
        status: AttemptStatus,
        created_at: datetime,
        details: dict[str, object],
        factory_run_id: str | None = None,
        autopilot_session_id: str | None = None,
    ) -> Attempt:
        row = Attempt(
            attempt_id=str(uuid4()),
            task_id=task_id,
            project_id=project_id,
            factory_run_id=factory_run_id,
            autopilot_session_id=autopilot_session_id,
            status=status.value,
            provider=provider,
            created_at=created_at,
            queued_at=created_at if status is AttemptStatus.QUEUED else None,
        )
        session.add(row)
        session.flush()
        self._add_event(
            session=session,
            attempt_id=row.attempt_id,
            event_type="created",
            status_from=None,
            status_to=status,
            details=_compact(details),
        )
        return row

    def _transition_to_terminal(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: Attempt,
        status: AttemptStatus,
        expected: Iterable[AttemptStatus],
        event_type: str,
        exit_code: int | None = None,
        pr_url: str | None = None,
        error: str | None = None,
        finalize_run: bool = True,
    ) -> AttemptFinish | None:
        now = to_db_datetime(utc_now())
        previous = AttemptStatus(row.status)
        if previous not in set(expected):
            return None
        result = session.exec(
            sa_update(Attempt)
            .where(
                col(Attempt.attempt_id) == row.attempt_id,
                col(Attempt.status) == previous.value,
            )
            .values(
                status=status.value,
                finished_at=now,
                exit_code=exit_code,
                pr_url=pr_url,
                error=error,
            ),
        )
        if result.rowcount != 1:
            return None

        # Board side effects: success goes to review, anything else back to todo.
        task_status = TaskStatus.TODO
        if status is AttemptStatus.COMPLETED:
            task_status = TaskStatus.IN_REVIEW
        session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == row.task_id,
                col(Task.status) == TaskStatus.IN_PROGRESS.value,
            )
            .values(status=task_status.value, updated_at=now),
        )
        self._add_event(
            session=session,
            attempt_id=row.attempt_id,
            event_type=event_type,
            status_from=previous,
            status_to=status,
            details=_compact({"exit_code": exit_code, "pr_url": pr_url, "error": error}),
        )
        session.refresh(row)

        run_view: FactoryRunView | None = None
        finalized = False
        if row.factory_run_id is not None:
            if finalize_run:
                finalized = self._finalize_run_if_idle(session=session, run_id=row.factory_run_id)
            run_view = self._load_run_view(session=session, run_id=row.factory_run_id)
        return AttemptFinish(
            attempt=_to_attempt_view(row),
            previous_status=previous,
            run=run_view,
            run_finalized=finalized,
        )

    def _finalize_run_if_idle(self, *, session: Session, run_id: str) -> bool:
        outstanding = session.exec(
            select(Attempt.attempt_id)
            .where(Attempt.factory_run_id == run_id, col(Attempt.status).in_(_ACTIVE))
            .limit(1),
        ).first()
        if outstanding is not None:
            return False
        result = session.exec(
            sa_update(FactoryRun)
            .where(
                col(FactoryRun.run_id) == run_id,
                col(FactoryRun.status) == FactoryRunStatus.RUNNING.value,
            )
            .values(
                status=FactoryRunStatus.COMPLETED.value,
                finished_at=to_db_datetime(utc_now()),
            ),
        )
        return result.rowcount == 1

    def _load_run_view(self, *, session: Session, run_id: str) -> FactoryRunView | None:
        row = session.get(FactoryRun, run_id, populate_existing=True)
        if row is None:
            return None
        return _to_run_view(row, _run_counts(session, run_id))

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        attempt_id: str,
        event_type: str,
        status_from: AttemptStatus | None,
        status_to: AttemptStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AttemptEvent(
                attempt_id=attempt_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _dispatchable_tasks(*, project_id: str, since: datetime) -> SelectOfScalar[Task]:
    blocking_attempt = exists().where(
        and_(
            col(Attempt.task_id) == col(Task.task_id),
            or_(
                col(Attempt.status).in_(_ACTIVE),
                col(Attempt.created_at) >= to_db_datetime(since),
            ),
        ),
    )
    return (
        select(Task)
        .where(
            Task.project_id == project_id,
            Task.status == TaskStatus.TODO.value,
            ~blocking_attempt,
        )
        .order_by(col(Task.created_at).asc(), col(Task.task_id).asc())
    )


def _count_running(session: Session, scope: SchedulingScope) -> int:
    statement = (
        select(func.count())
        .select_from(Attempt)
        .where(Attempt.status == AttemptStatus.RUNNING.value)
    )
    if scope.kind is ScopeKind.RUN:
        statement = statement.where(Attempt.factory_run_id == scope.scope_id)
    else:
        statement = statement.where(Attempt.project_id == scope.scope_id)
    return int(session.exec(statement).one())


def _sum_spend(session: Session, *, provider: str, since: datetime) -> float:
    total = session.exec(
        select(func.coalesce(func.sum(BudgetLedgerEntry.cost_usd), 0.0)).where(
            BudgetLedgerEntry.provider == provider,
            col(BudgetLedgerEntry.created_at) >= to_db_datetime(since),
        ),
    ).one()
    return round(float(total), 6)


def _run_counts(session: Session, run_id: str) -> RunCounts:
    rows = session.exec(
        select(Attempt.status, func.count())
        .where(Attempt.factory_run_id == run_id)
        .group_by(Attempt.status),
    ).all()
    counts = RunCounts()
    for status_value, number in rows:
        status = AttemptStatus(status_value)
        counts.total += number
        if status is AttemptStatus.COMPLETED:
            counts.completed += number
        elif status is AttemptStatus.FAILED:
            counts.failed += number
        elif status is AttemptStatus.STOPPED:
            counts.cancelled += number
        elif status is AttemptStatus.RUNNING:
            counts.running += number
        elif status in WAITING_ATTEMPT_STATUSES:
            counts.queued += number
        else:
            raise ValueError(f"Unhandled attempt status: {status}")
    return counts


def _nudge(value: datetime, offset: int) -> datetime:
    # Distinct created_at per batch member, one microsecond apart.
    return value + timedelta(microseconds=offset)


def _dump_ids(values: Iterable[str]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _load_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        name=row.name,
        execution_status=ProjectExecutionStatus(row.execution_status),
        max_parallel=row.max_parallel,
        repo_path=row.repo_path,
        repo_url=row.repo_url,
        execution_started_at=_optional_aware(row.execution_started_at),
        execution_finished_at=_optional_aware(row.execution_finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        project_id=row.project_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        position=row.position,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_attempt_view(row: Attempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.attempt_id,
        task_id=row.task_id,
        project_id=row.project_id,
        factory_run_id=row.factory_run_id,
        autopilot_session_id=row.autopilot_session_id,
        status=AttemptStatus(row.status),
        provider=row.provider,
        created_at=to_utc_aware_datetime(row.created_at),
        queued_at=_optional_aware(row.queued_at),
        started_at=_optional_aware(row.started_at),
        heartbeat_at=_optional_aware(row.heartbeat_at),
        finished_at=_optional_aware(row.finished_at),
        exit_code=row.exit_code,
        pr_url=row.pr_url,
        error=row.error,
    )


def _to_run_view(row: FactoryRun, counts: RunCounts) -> FactoryRunView:
    return FactoryRunView(
        run_id=row.run_id,
        project_id=row.project_id,
        status=FactoryRunStatus(row.status),
        mode=FactoryRunMode(row.mode),
        max_parallel=row.max_parallel,
        provider=row.provider,
        target_task_ids=_load_ids(row.target_task_ids_json),
        column_status=TaskStatus(row.column_status) if row.column_status is not None else None,
        source_run_id=row.source_run_id,
        error=row.error,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        counts=counts,
    )


def _to_autopilot_view(row: AutopilotSession) -> AutopilotSessionView:
    return AutopilotSessionView(
        session_id=row.session_id,
        project_id=row.project_id,
        status=AutopilotSessionStatus(row.status),
        mode=AutopilotMode(row.mode),
        task_ids=_load_ids(row.task_ids_json),
        completed_task_ids=_load_ids(row.completed_task_ids_json),
        current_index=row.current_index,
        current_task_id=row.current_task_id,
        current_attempt_id=row.current_attempt_id,
        awaiting_approval=bool(row.awaiting_approval),
        error_code=row.error_code,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        finished_at=_optional_aware(row.finished_at),
    )


def _to_planning_view(row: PlanningSession) -> PlanningSessionView:
    return PlanningSessionView(
        session_id=row.session_id,
        project_id=row.project_id,
        idea_text=row.idea_text,
        status=PlanningSessionStatus(row.status),
        applied_task_ids=(
            _load_ids(row.applied_task_ids_json)
            if row.applied_task_ids_json is not None
            else None
        ),
        applied_at=_optional_aware(row.applied_at),
    )


def _compact(values: dict[str, object]) -> dict[str, object]:
    return {key: value for key, value in values.items() if value is not None}

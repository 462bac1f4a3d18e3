from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

import allure
import pytest
from sqlalchemy.exc import OperationalError

from task_factory.scheduler import service as service_module
from task_factory.scheduler.loop import SchedulerLoop
from task_factory.scheduler.models import (
    AttemptStatus,
    FactoryRunMode,
    FactoryRunStatus,
    ProjectView,
    TaskStatus,
    TaskView,
)
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.scheduler.service import FactoryScheduler
from task_factory.storage.common import utc_now

if TYPE_CHECKING:
    from conftest import RecordingExecutor

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Reconciliation"),
]

TaskFactory = Callable[[str, int], list[TaskView]]


def test_reconcile_recovers_stale_attempts_once(
    monkeypatch: pytest.MonkeyPatch,
    scheduler: FactoryScheduler,
    executor: RecordingExecutor,
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: TaskFactory,
) -> None:
    tasks = make_tasks(project.project_id, 1)
    result = scheduler.start_batch(project_id=project.project_id)
    attempt_id = result.attempt_ids[0]

    assert scheduler.reconcile().recovered_attempt_ids == []

    later = utc_now() + timedelta(hours=1)
    monkeypatch.setattr(service_module, "utc_now", lambda: later)
    summary = scheduler.reconcile()

    assert summary.observed is True
    assert summary.recovered_attempt_ids == [attempt_id]
    assert executor.stopped == [attempt_id]
    attempt = repository.get_attempt(attempt_id)
    assert attempt.status is AttemptStatus.FAILED
    assert "heartbeat" in (attempt.error or "")
    assert repository.get_task(tasks[0].task_id).status is TaskStatus.TODO
    assert repository.get_factory_run(result.run_id).status is FactoryRunStatus.COMPLETED

    again = scheduler.reconcile()
    assert again.changed is False

    # The process reporting back after recovery is ignored.
    executor.complete(attempt_id)
    assert repository.get_attempt(attempt_id).status is AttemptStatus.FAILED


def test_heartbeat_keeps_attempt_alive(
    scheduler: FactoryScheduler,
    executor: RecordingExecutor,
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: TaskFactory,
) -> None:
    make_tasks(project.project_id, 1)
    attempt_id = scheduler.start_batch(project_id=project.project_id).attempt_ids[0]
    checkpoint = utc_now()

    executor.log(attempt_id, "still working")
    repository.touch_attempt(attempt_id)

    assert repository.recover_stale_running_attempts(stale_before=checkpoint) == []
    recovered = repository.recover_stale_running_attempts(
        stale_before=utc_now() + timedelta(seconds=1),
    )
    assert [finish.attempt.attempt_id for finish in recovered] == [attempt_id]


def test_reconcile_admits_work_queued_elsewhere(
    scheduler: FactoryScheduler,
    executor: RecordingExecutor,
    repository: SchedulerRepository,
    project: ProjectView,
    make_tasks: TaskFactory,
) -> None:
    tasks = make_tasks(project.project_id, 3)
    creation = repository.create_factory_run(
        project_id=project.project_id,
        mode=FactoryRunMode.SELECTION,
        max_parallel=2,
        provider="anthropic",
        task_ids=[task.task_id for task in tasks],
    )

    summary = scheduler.reconcile()

    assert summary.admitted_attempt_ids == creation.attempt_ids[:2]
    assert executor.started_ids == creation.attempt_ids[:2]
    assert scheduler.reconcile().admitted_attempt_ids == []


def test_reconcile_reports_unobserved_store(
    monkeypatch: pytest.MonkeyPatch,
    scheduler: FactoryScheduler,
) -> None:
    def _locked(**_: object) -> list:
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(scheduler.repository, "recover_stale_running_attempts", _locked)

    summary = scheduler.reconcile()

    assert summary.observed is False
    assert "database is locked" in (summary.error or "")
    assert summary.changed is False


class TestSchedulerLoop:
    def test_rejects_non_positive_interval(self, scheduler: FactoryScheduler) -> None:
        with pytest.raises(ValueError, match="interval_seconds"):
            SchedulerLoop(scheduler, interval_seconds=0)

    def test_tick_records_summary(self, scheduler: FactoryScheduler) -> None:
        loop = SchedulerLoop(scheduler, interval_seconds=1.0)

        summary = loop.tick()

        assert loop.ticks == 1
        assert loop.last_summary is summary
        assert summary.observed is True

    def test_background_thread_ticks_until_stopped(self, scheduler: FactoryScheduler) -> None:
        loop = SchedulerLoop(scheduler, interval_seconds=0.02)

        loop.start()
        try:
            assert loop.running is True
            assert loop.wait_until(lambda: loop.ticks >= 3, timeout=5.0)
        finally:
            loop.stop()

        assert loop.running is False
        ticks = loop.ticks
        assert loop.wait_until(lambda: loop.ticks > ticks, timeout=0.1) is False

    def test_completion_wakes_loop(
        self,
        scheduler: FactoryScheduler,
        executor: RecordingExecutor,
        project: ProjectView,
        make_tasks: TaskFactory,
    ) -> None:
        task = make_tasks(project.project_id, 1)[0]
        attempt_id = scheduler.retry_task(task.task_id).attempt_ids[0]
        loop = SchedulerLoop(scheduler, interval_seconds=60.0)

        loop.start()
        try:
            assert loop.wait_until(lambda: loop.ticks >= 1, timeout=5.0)
            executor.complete(attempt_id)
            assert loop.wait_until(lambda: loop.ticks >= 2, timeout=5.0)
        finally:
            loop.stop()

"""Derive new factory runs from a finished run's attempts."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from task_factory.config import MAX_PARALLEL_CEILING
from task_factory.scheduler.models import (
    RUNNABLE_TASK_STATUSES,
    AttemptStatus,
    CommandResult,
    DenialReason,
    FactoryRunMode,
    SchedulingScope,
)
from task_factory.scheduler.service import FactoryScheduler

logger = logging.getLogger(__name__)


def clamp_max_parallel(value: int | None, *, default: int) -> int:
    if value is None:
        value = default
    return max(1, min(MAX_PARALLEL_CEILING, value))


class RerunService:
    """Create selection-mode runs re-entering tasks at ``queued``.

    Every call creates a new run id; two rapid calls give two independent runs.
    """

    def __init__(self, scheduler: FactoryScheduler) -> None:
        self.scheduler = scheduler
        self.repository = scheduler.repository

    def rerun_failed(
        self,
        source_run_id: str,
        *,
        max_parallel: int | None = None,
    ) -> CommandResult:
        source = self.repository.get_factory_run(source_run_id)
        if source is None:
            return CommandResult.not_found(f"Run not found: {source_run_id}")
        failed = self.repository.list_attempts(
            factory_run_id=source_run_id,
            statuses=[AttemptStatus.FAILED],
        )
        task_ids = list(dict.fromkeys(attempt.task_id for attempt in failed))
        return self._rerun(
            source_run_id=source_run_id,
            task_ids=task_ids,
            max_parallel=clamp_max_parallel(max_parallel, default=source.max_parallel),
        )

    def rerun_selected(
        self,
        source_run_id: str,
        task_ids: Sequence[str],
        *,
        max_parallel: int | None = None,
    ) -> CommandResult:
        """Rerun chosen tasks of the source run regardless of how they ended there.

        Ids that did not take part in the source run are dropped.
        """

        source = self.repository.get_factory_run(source_run_id)
        if source is None:
            return CommandResult.not_found(f"Run not found: {source_run_id}")
        in_source = {
            attempt.task_id
            for attempt in self.repository.list_attempts(factory_run_id=source_run_id)
        }
        return self._rerun(
            source_run_id=source_run_id,
            task_ids=[task_id for task_id in dict.fromkeys(task_ids) if task_id in in_source],
            max_parallel=clamp_max_parallel(max_parallel, default=source.max_parallel),
        )

    def _rerun(
        self,
        *,
        source_run_id: str,
        task_ids: list[str],
        max_parallel: int,
    ) -> CommandResult:
        task_ids = self._runnable(task_ids)
        if not task_ids:
            return CommandResult.denied(
                DenialReason.NO_TASKS_TO_RERUN,
                f"Run {source_run_id} has no tasks to rerun.",
            )
        source = self.repository.get_factory_run(source_run_id)
        assert source is not None
        decision = self.scheduler.budget_guard.check_budget(self.scheduler.provider)
        if not decision.allowed:
            return CommandResult.budget_denied(decision)

        creation = self.repository.create_factory_run(
            project_id=source.project_id,
            mode=FactoryRunMode.SELECTION,
            max_parallel=max_parallel,
            provider=self.scheduler.provider,
            task_ids=task_ids,
            source_run_id=source_run_id,
            initial_status=AttemptStatus.QUEUED,
        )
        if creation is None:
            return CommandResult.not_found(f"Project not found: {source.project_id}")
        logger.info(
            "Rerun %s of %s created with %d attempt(s)",
            creation.run.run_id,
            source_run_id,
            len(creation.attempt_ids),
        )
        skipped = set(creation.skipped_task_ids)
        result = CommandResult.success(
            f"Rerun {creation.run.run_id} created from {source_run_id}.",
            run_id=creation.run.run_id,
            attempt_ids=creation.attempt_ids,
            task_ids=[task_id for task_id in task_ids if task_id not in skipped],
            run=creation.run,
        )
        self.scheduler.schedule_next(SchedulingScope.for_run(creation.run.run_id))
        return result

    def _runnable(self, task_ids: list[str]) -> list[str]:
        runnable: list[str] = []
        for task_id in task_ids:
            task = self.repository.get_task(task_id)
            if task is not None and task.status in RUNNABLE_TASK_STATUSES:
                runnable.append(task_id)
        return runnable

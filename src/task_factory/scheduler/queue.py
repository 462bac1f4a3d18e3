"""Admission control for attempts within a scheduling scope."""

from __future__ import annotations

import logging

from task_factory.scheduler.budget import BudgetGuard
from task_factory.scheduler.models import AdmissionResult, SchedulingScope
from task_factory.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)


class AttemptQueue:
    """FIFO admission under a scope's ``max_parallel`` and the budget gate."""

    def __init__(self, *, repository: SchedulerRepository, budget_guard: BudgetGuard) -> None:
        self.repository = repository
        self.budget_guard = budget_guard

    def has_available_slot(self, scope: SchedulingScope) -> bool:
        cap = self.repository.scope_max_parallel(scope)
        if cap is None:
            return False
        return self.repository.count_running_attempts(scope) < cap

    def admit(self, scope: SchedulingScope) -> AdmissionResult:
        """Move waiting attempts to running while slots are free.

        Safe to call redundantly: with no free slot or no waiting work it only
        parks pending attempts as queued.
        """

        result = self.repository.admit_waiting_attempts(
            scope=scope,
            budget_gate=self.budget_guard.evaluate,
            spend_since=self.budget_guard.month_start(),
        )
        if result.admitted:
            logger.info(
                "Admitted %d attempt(s) in %s: %s",
                len(result.admitted),
                scope,
                ", ".join(attempt.attempt_id for attempt in result.admitted),
            )
        if result.budget_blocked is not None:
            logger.warning(
                "Budget gate holds attempts in %s: %s spend %.2f >= limit %.2f",
                scope,
                result.budget_blocked.provider,
                result.budget_blocked.spend_usd,
                result.budget_blocked.limit_usd or 0.0,
            )
        return result

    def queue_position(self, attempt_id: str) -> int | None:
        return self.repository.queue_position(attempt_id)

"""Monthly spend guard per AI provider."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from task_factory.config import BudgetSettings
from task_factory.scheduler.models import BudgetDecision, BudgetReason
from task_factory.scheduler.repository import SchedulerRepository
from task_factory.storage.common import utc_now


class BudgetGuard:
    """Compare a provider's month-to-date spend against its configured limit.

    Nothing is cached: every call reads the ledger. Concurrent admissions may
    both pass before either cost lands, so the limit is a soft gate.
    """

    def __init__(
        self,
        *,
        repository: SchedulerRepository,
        limits_usd: Mapping[str, float],
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.limits = BudgetSettings(
            monthly_limits_usd={key.strip().lower(): value for key, value in limits_usd.items()},
        )
        self._now = now

    def limit_for(self, provider: str) -> float | None:
        return self.limits.limit_for(provider)

    def month_start(self) -> datetime:
        """First instant of the current calendar month, UTC."""

        now = self._now().astimezone(UTC)
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def monthly_spend(self, provider: str) -> float:
        return self.repository.sum_spend(provider=provider, since=self.month_start())

    def check_budget(self, provider: str) -> BudgetDecision:
        limit = self.limit_for(provider)
        if limit is None:
            return BudgetDecision(allowed=True, provider=provider, reason=BudgetReason.NO_LIMIT)
        return self.evaluate(provider, self.monthly_spend(provider))

    def evaluate(self, provider: str, spend_usd: float) -> BudgetDecision:
        """Decide for an already computed spend; equality blocks."""

        limit = self.limit_for(provider)
        if limit is None:
            return BudgetDecision(
                allowed=True,
                provider=provider,
                reason=BudgetReason.NO_LIMIT,
                spend_usd=spend_usd,
            )
        if spend_usd >= limit:
            return BudgetDecision(
                allowed=False,
                provider=provider,
                reason=BudgetReason.LIMIT_EXCEEDED,
                limit_usd=limit,
                spend_usd=spend_usd,
            )
        return BudgetDecision(
            allowed=True,
            provider=provider,
            reason=BudgetReason.WITHIN_LIMIT,
            limit_usd=limit,
            spend_usd=spend_usd,
        )

    def record_cost(
        self,
        *,
        provider: str,
        cost_usd: float,
        attempt_id: str | None = None,
    ) -> None:
        if cost_usd < 0:
            raise ValueError(f"cost_usd must be >= 0, got {cost_usd}")
        self.repository.append_ledger_entry(
            provider=provider,
            cost_usd=cost_usd,
            attempt_id=attempt_id,
            created_at=self._now(),
        )

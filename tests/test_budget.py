from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from task_factory.scheduler.budget import BudgetGuard
from task_factory.scheduler.models import BudgetReason
from task_factory.scheduler.repository import SchedulerRepository

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Budget Guard"),
]


@pytest.mark.parametrize(
    ("spend", "allowed"),
    [
        (9.99, True),
        (10.0, False),
        (10.01, False),
    ],
)
def test_limit_boundary(repository: SchedulerRepository, spend: float, allowed: bool) -> None:
    guard = BudgetGuard(repository=repository, limits_usd={"anthropic": 10.0})
    guard.record_cost(provider="anthropic", cost_usd=spend)

    decision = guard.check_budget("anthropic")

    assert decision.allowed is allowed
    assert decision.limit_usd == 10.0
    assert decision.spend_usd == pytest.approx(spend)
    expected_reason = BudgetReason.WITHIN_LIMIT if allowed else BudgetReason.LIMIT_EXCEEDED
    assert decision.reason is expected_reason


def test_absent_limit_always_allows(repository: SchedulerRepository) -> None:
    guard = BudgetGuard(repository=repository, limits_usd={"anthropic": 10.0})
    guard.record_cost(provider="openai", cost_usd=1_000.0)

    decision = guard.check_budget("openai")

    assert decision.allowed is True
    assert decision.reason is BudgetReason.NO_LIMIT
    assert decision.limit_usd is None


def test_spend_is_summed_per_provider_and_month(repository: SchedulerRepository) -> None:
    now = datetime(2026, 3, 15, 9, 30, tzinfo=UTC)
    guard = BudgetGuard(
        repository=repository,
        limits_usd={"Anthropic ": 10.0},
        now=lambda: now,
    )
    repository.append_ledger_entry(
        provider="anthropic",
        cost_usd=7.0,
        created_at=datetime(2026, 2, 28, 23, 59, tzinfo=UTC),
    )
    repository.append_ledger_entry(
        provider="anthropic",
        cost_usd=2.5,
        created_at=datetime(2026, 3, 1, 0, 0, tzinfo=UTC),
    )
    repository.append_ledger_entry(
        provider="openai",
        cost_usd=4.0,
        created_at=datetime(2026, 3, 2, tzinfo=UTC),
    )

    assert guard.month_start() == datetime(2026, 3, 1, tzinfo=UTC)
    assert guard.monthly_spend("anthropic") == pytest.approx(2.5)
    assert guard.limit_for("ANTHROPIC") == 10.0
    assert guard.check_budget("anthropic").allowed is True


def test_record_cost_rejects_negative_amount(repository: SchedulerRepository) -> None:
    guard = BudgetGuard(repository=repository, limits_usd={})

    with pytest.raises(ValueError, match="cost"):
        guard.record_cost(provider="anthropic", cost_usd=-1.0)

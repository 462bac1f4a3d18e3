"""In-process publish sink for scheduler status transitions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from task_factory.scheduler.models import (
    AttemptStatus,
    FactoryRunStatus,
    RunCounts,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunStatusChanged:
    run_id: str
    project_id: str
    status: FactoryRunStatus


@dataclass(frozen=True, slots=True)
class AttemptStatusChanged:
    attempt_id: str
    task_id: str
    run_id: str | None
    status: AttemptStatus
    error: str | None = None


@dataclass(frozen=True, slots=True)
class LogLineAppended:
    attempt_id: str
    run_id: str | None
    line: str


@dataclass(frozen=True, slots=True)
class RunSummaryUpdated:
    run_id: str
    counts: RunCounts = field(default_factory=RunCounts)


SchedulerEvent = RunStatusChanged | AttemptStatusChanged | LogLineAppended | RunSummaryUpdated
Subscriber = Callable[[SchedulerEvent], None]


class EventsHub:
    """Fan events out to subscribers; delivery is best-effort.

    A failing subscriber is logged and skipped, never raised to the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a callable that unsubscribes it."""

        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: SchedulerEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event subscriber failed for %s", type(event).__name__)

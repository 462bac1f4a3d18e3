from __future__ import annotations

import allure

from task_factory.scheduler.events import (
    EventsHub,
    LogLineAppended,
    RunStatusChanged,
    SchedulerEvent,
)
from task_factory.scheduler.models import FactoryRunStatus

pytestmark = [
    allure.epic("Execution Scheduler"),
    allure.feature("Events"),
]


def test_subscribers_receive_until_unsubscribed() -> None:
    hub = EventsHub()
    received: list[SchedulerEvent] = []
    unsubscribe = hub.subscribe(received.append)
    event = RunStatusChanged(run_id="r1", project_id="p1", status=FactoryRunStatus.RUNNING)

    hub.publish(event)
    unsubscribe()
    unsubscribe()
    hub.publish(LogLineAppended(attempt_id="a1", run_id="r1", line="ignored"))

    assert received == [event]


def test_failing_subscriber_does_not_break_delivery(caplog) -> None:
    hub = EventsHub()
    received: list[SchedulerEvent] = []

    def _broken(event: SchedulerEvent) -> None:
        raise RuntimeError("socket closed")

    hub.subscribe(_broken)
    hub.subscribe(received.append)

    hub.publish(LogLineAppended(attempt_id="a1", run_id=None, line="hello"))

    assert len(received) == 1
    assert "Event subscriber failed" in caplog.text

"""Wakeable reconciliation loop that keeps the scheduler moving."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from task_factory.scheduler.models import AttemptView, ReconcileSummary
from task_factory.scheduler.service import FactoryScheduler

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Run ``FactoryScheduler.reconcile`` on every completion and every interval.

    Completions wake the loop through a completion listener, so freed slots are
    refilled promptly even when the executor reports from its own thread. The
    periodic sweep covers everything else: stale heartbeats, idle runs and work
    queued by another process sharing the store.
    """

    def __init__(self, scheduler: FactoryScheduler, *, interval_seconds: float = 5.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.last_summary: ReconcileSummary | None = None
        self.ticks = 0
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        scheduler.add_completion_listener(self._on_attempt_finished)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="task-factory-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler loop started (interval=%.1fs)", self.interval_seconds)

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scheduler loop stopped after %d tick(s)", self.ticks)

    def wake(self) -> None:
        self._wake.set()

    def tick(self) -> ReconcileSummary:
        summary = self.scheduler.reconcile()
        self.ticks += 1
        self.last_summary = summary
        if summary.changed:
            logger.debug(
                "Reconcile: recovered=%d finalized=%d admitted=%d",
                len(summary.recovered_attempt_ids),
                len(summary.finalized_run_ids),
                len(summary.admitted_attempt_ids),
            )
        return summary

    def wait_until(
        self,
        predicate: Callable[[], bool],
        *,
        timeout: float,
        poll_seconds: float = 0.05,
    ) -> bool:
        """Block until ``predicate()`` is true or ``timeout`` elapses."""

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(min(poll_seconds, max(0.0, deadline - time.monotonic())))
        return predicate()

    def run_forever(self) -> None:
        """Foreground variant for the CLI: reconcile until SIGINT/SIGTERM."""

        with self._signal_handlers():
            self._run()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler loop tick failed")
            self._wake.wait(self.interval_seconds)
            self._wake.clear()

    def _on_attempt_finished(self, attempt: AttemptView) -> None:
        del attempt
        self._wake.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s; stopping scheduler loop", signal.Signals(signum).name)
            self._stop.set()
            self._wake.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

"""Summary: Periodic sweep that dispatches due reminders.

Importance: Finds every scheduled entry whose fire time has passed and hands
it to the dispatcher on a bounded worker pool.
Alternatives: An external cron job calling the CLI every minute.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from nudgeflow.dispatcher import DeliveryDispatcher, DispatchOutcome
from nudgeflow.models import STATE_CANCELLED, STATE_FAILED, STATE_SCHEDULED, STATE_SENT
from nudgeflow.storage.base import ReminderStore


logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts of what one sweep did."""

    due: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    retrying: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, outcome: DispatchOutcome) -> None:
        if not outcome.claimed:
            self.skipped += 1
        elif outcome.state == STATE_SENT:
            self.sent += 1
        elif outcome.state == STATE_FAILED:
            self.failed += 1
        elif outcome.state == STATE_CANCELLED:
            self.cancelled += 1
        elif outcome.state == STATE_SCHEDULED:
            self.retrying += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "due": self.due,
            "sent": self.sent,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "retrying": self.retrying,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class ReminderSweeper:
    """Summary: Runs sweeps on demand or on a background timer thread.

    Importance: One entry's exception never aborts the rest of the batch,
    and a failing sweep never stops the timer.
    Alternatives: Dispatch entries serially on the timer thread.
    """

    def __init__(
        self,
        store: ReminderStore,
        dispatcher: DeliveryDispatcher,
        concurrency: int = 4,
        interval_seconds: float = 60.0,
        batch_limit: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._concurrency = max(1, int(concurrency))
        self._interval = max(0.05, float(interval_seconds))
        self._batch_limit = batch_limit
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> SweepReport:
        """Summary: Dispatch every due entry, oldest first.

        Importance: Overlapping sweeps are serialized; the entry lease still
        protects against a second process sweeping the same database.
        Alternatives: Allow overlapping sweeps and rely on the lease alone.
        """

        with self._run_lock:
            report = SweepReport()
            entries = self._store.list_due_entries(self._clock(), self._batch_limit)
            report.due = len(entries)
            if not entries:
                return report
            with ThreadPoolExecutor(
                max_workers=self._concurrency, thread_name_prefix="nudgeflow_dispatch"
            ) as executor:
                futures = {executor.submit(self._dispatcher.dispatch, entry): entry for entry in entries}
                for future in as_completed(futures):
                    entry = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.error("Dispatch crashed for entry %s.", entry.id, exc_info=exc)
                        report.errors += 1
                        continue
                    report.add(outcome)
            logger.info(
                "Sweep finished: %s due, %s sent, %s failed, %s retrying.",
                report.due,
                report.sent,
                report.failed,
                report.retrying,
            )
            return report

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="nudgeflow_sweeper", daemon=True)
        self._thread.start()
        logger.info("Reminder sweeper started (every %.0fs).", self._interval)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None
        logger.info("Reminder sweeper stopped.")

    def run_forever(self) -> None:
        """Run sweeps on the calling thread until ``stop`` is called."""

        self._stop_event.clear()
        self._loop()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Reminder sweep failed; retrying next interval.")
            self._stop_event.wait(self._interval)

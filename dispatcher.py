"""
Work queue that invokes the reconciler with per-group exclusivity and backoff
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List

from reconciler import GroupReconciler, ReconciliationOutcome


logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Collects group names to reconcile and runs them in rounds.

    A name is queued at most once; within a round every name runs at most
    once, so invocations for one group never overlap. Failed names are
    queued again with exponential backoff. Errors that need an operator to
    fix something (AmbiguousResult, DirectoryWriteFailed) wait the full
    max_delay straight away.
    """

    def __init__(
        self,
        reconciler: GroupReconciler,
        workers: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reconciler = reconciler
        self.workers = workers
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock

        self._lock = threading.Lock()
        self._queue: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._stop = threading.Event()

    def enqueue(self, name: str, delay: float = 0.0):
        due = self.clock() + delay
        with self._lock:
            if name not in self._queue or due < self._queue[name]:
                self._queue[name] = due

    def pending(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._queue)

    def retry_delay(self, name: str, error: Exception) -> float:
        failures = self._failures.get(name, 1)
        if getattr(error, 'needs_intervention', False):
            return self.max_delay
        return min(self.max_delay, self.base_delay * 2 ** (failures - 1))

    def _pop_due(self) -> List[str]:
        now = self.clock()
        with self._lock:
            due = sorted(name for name, at in self._queue.items() if at <= now)
            for name in due:
                del self._queue[name]
        return due

    def _run(self, name: str) -> ReconciliationOutcome:
        try:
            return self.reconciler.reconcile(name)
        except Exception as e:
            logger.error(f"Reconciliation of ldap-group {name} failed: {e}", exc_info=True)
            return ReconciliationOutcome(name, error=e)

    def process_once(self) -> List[ReconciliationOutcome]:
        """Reconcile every due group and wait for all of them to finish."""
        due = self._pop_due()
        if not due:
            return []

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            outcomes = list(executor.map(self._run, due))

        for outcome in outcomes:
            if outcome.error is None:
                self._failures.pop(outcome.name, None)
                continue

            self._failures[outcome.name] = self._failures.get(outcome.name, 0) + 1
            delay = self.retry_delay(outcome.name, outcome.error)
            logger.info(f"Retrying ldap-group {outcome.name} in {delay:.1f}s")
            self.enqueue(outcome.name, delay)

        return outcomes

    def stop(self):
        self._stop.set()

    def run_forever(self, interval: float = 1.0):
        """Process due groups every interval seconds until stopped."""
        logger.info("Dispatcher started")
        while not self._stop.is_set():
            self.process_once()
            self._stop.wait(interval)
        logger.info("Dispatcher stopped")

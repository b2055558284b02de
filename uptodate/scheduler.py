"""
Cycle scheduler: scan, evaluate and update containers on a fixed interval.

One cycle runs at a time and containers are evaluated strictly in order.
A stop request while idle ends the loop before the next cycle; a request
that arrives mid-cycle takes effect once that cycle has finished.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .containers import LabelSelector, short_id
from .errors import EngineError, ListError, NotificationError
from .notify import MultiNotifier, NotifyRef
from .updater import FAILED, UPDATED, UpdateOutcome, Updater

log = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    """Counts and report entries for one cycle."""
    scanned: int = 0
    updated: int = 0
    failed: int = 0
    updated_refs: List[NotifyRef] = field(default_factory=list)
    failed_refs: List[NotifyRef] = field(default_factory=list)
    duration: float = 0.0

    def add(self, outcome: UpdateOutcome) -> None:
        if outcome.status == UPDATED:
            self.updated += 1
            self.updated_refs.append(NotifyRef(outcome.name, short_id(outcome.new_image_id) or 'unknown'))
        elif outcome.status == FAILED:
            self.failed += 1
            # Transient failures are counted and logged but kept out of the report.
            if not outcome.transient:
                self.failed_refs.append(NotifyRef(outcome.name, str(outcome.error)))

    @property
    def has_report(self) -> bool:
        return bool(self.updated_refs or self.failed_refs)


class Scheduler:
    """Runs one cycle immediately, then one per interval until stopped."""

    def __init__(self, engine, updater: Updater, interval: float,
                 label: Optional[LabelSelector] = None,
                 notifier: Optional[MultiNotifier] = None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.engine = engine
        self.updater = updater
        self.interval = interval
        self.label = label
        self.notifier = notifier
        self.logger = logger or log
        self._clock = clock
        self._stop = threading.Event()

    def stop(self) -> None:
        """Request shutdown; safe to call from a signal handler."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def list_eligible(self) -> List[Dict[str, Any]]:
        """Running containers, narrowed to the inclusion label when one is set."""
        try:
            return self.engine.list_containers(
                all=False,
                label=self.label.as_filter() if self.label else None,
            )
        except EngineError as e:
            raise ListError(f"list containers: {e}") from e

    def run_once(self) -> Optional[CycleSummary]:
        """Run a full scan-evaluate-update pass; None when listing failed."""
        start = self._clock()
        try:
            containers = self.list_eligible()
        except ListError as e:
            self.logger.error(f"list containers error: {e}")
            return None

        summary = CycleSummary(scanned=len(containers))
        self.logger.debug(f"scan: {summary.scanned} container(s) eligible")

        for container in containers:
            summary.add(self.updater.evaluate(container))

        summary.duration = self._clock() - start
        self.logger.info(
            f"session done scanned={summary.scanned} updated={summary.updated} "
            f"failed={summary.failed} duration={summary.duration:.2f}s",
            extra={
                'scanned': summary.scanned,
                'updated': summary.updated,
                'failed': summary.failed,
                'duration': summary.duration,
            },
        )

        if self.notifier and summary.has_report:
            try:
                self.notifier.notify(summary.updated_refs, summary.failed_refs)
            except NotificationError as e:
                self.logger.warning(f"notify error: {e}")

        return summary

    def run(self) -> None:
        """
        Loop until stop() is called.

        Cycles are due `interval` seconds after the previous one started; a
        cycle that overruns is followed immediately by the next one.
        """
        while True:
            started = self._clock()
            try:
                self.run_once()
            except Exception as e:
                self.logger.error(f"cycle error: {e}")
            remaining = max(0.0, started + self.interval - self._clock())
            if self._stop.wait(remaining):
                break
        self.logger.info("shutdown")

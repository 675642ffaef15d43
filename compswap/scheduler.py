"""Fixed-interval trigger for JobOrchestrator.tick()."""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

from compswap.orchestrator import JobOrchestrator, TickOutcome, TickReport

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Running totals for one scheduler run; size does not grow with the tick count."""
    ticks: int = 0
    errors: int = 0
    outcomes: Counter = field(default_factory=Counter)
    last_report: Optional[TickReport] = None

    def record(self, report: TickReport) -> None:
        self.outcomes[report.outcome] += 1
        self.last_report = report

    def count(self, outcome: TickOutcome) -> int:
        return self.outcomes[outcome]


class TickScheduler:
    """
    Calls tick() every interval_s seconds, measured start to start.

    A tick that overruns the interval is followed immediately by the next
    one; missed slots are dropped rather than replayed.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._orchestrator = orchestrator
        self._interval_s = interval_s
        self._clock = clock
        self._sleep = sleep
        self._stopped = False
        self.summary = RunSummary()

    def stop(self) -> None:
        self._stopped = True

    def run(
        self,
        max_ticks: Optional[int] = None,
        on_report: Optional[Callable[[TickReport], None]] = None,
    ) -> RunSummary:
        """
        Run until stop() is called or max_ticks ticks have happened.

        Args:
            max_ticks: Stop after this many ticks (None runs until stopped)
            on_report: Called with each report as soon as its tick finishes

        Returns:
            The RunSummary, also available as self.summary while running
        """
        summary = self.summary = RunSummary()
        while not self._stopped and (max_ticks is None or summary.ticks < max_ticks):
            started = self._clock()
            summary.ticks += 1
            try:
                report = self._orchestrator.tick()
            except Exception:
                summary.errors += 1
                logger.exception(f"Tick {summary.ticks} raised")
            else:
                summary.record(report)
                logger.info(f"Tick {summary.ticks}: {report.outcome.value} job={report.job_id}")
                if on_report is not None:
                    on_report(report)

            if self._stopped or (max_ticks is not None and summary.ticks >= max_ticks):
                break
            remaining = self._interval_s - (self._clock() - started)
            if remaining > 0:
                self._sleep(remaining)
        return summary

"""
Job orchestrator - one scheduler tick of the replacement engine.

A tick does at most one job's worth of work:

1. Take the fleet-wide lock (non-blocking); bail out if it is held
2. Pick the oldest INIT/HANDING job
3. Skip jobs without rules
4. Fail jobs whose in-progress marker survived a previous tick
5. Move the job to HANDING and set the in-progress marker
6. Run the replacement pass over every page the scope iterator yields
7. Complete the job (clear cursor and marker) or persist the next cursor
   and clear the marker
8. On any escaping error with the marker set, fail the job closed and
   clear the marker and cursor; the job is never resumed
9. Release the lock

The checkpoint and marker are only written here, and only after a whole
window (or job) has been processed.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from compswap.replacement import PassStats, ReplacementPass
from compswap.schemas import ReplacementJob, ReplacementRule, TaskStatus
from compswap.scope import ScopeIterator, cursor_key
from compswap.stores.base import CheckpointStore, JobStore, LockService

logger = logging.getLogger(__name__)

MARKER_KEY_PREFIX = "compswap:replace:marker"
DEFAULT_LOCK_KEY = "compswap:replace:lock"
DEFAULT_LEASE_MS = 60_000


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def marker_key(job_id: str) -> str:
    """Checkpoint key of a job's in-progress marker."""
    return f"{MARKER_KEY_PREFIX}:{job_id}"


class TickOutcome(str, Enum):
    """What a tick ended up doing."""
    LOCKED = "locked"          # another instance holds the lock
    IDLE = "idle"              # no pending job
    NO_RULES = "no_rules"      # oldest job has no rules
    ABORTED = "aborted"        # job forced to FAIL
    COMPLETED = "completed"    # job reached SUCCESS
    PROGRESSED = "progressed"  # window done, job continues next tick
    ERROR = "error"            # failed before any work was marked in progress


@dataclass
class TickReport:
    """Result of one tick."""
    outcome: TickOutcome
    job_id: Optional[str] = None
    pages: int = 0
    stats: PassStats = field(default_factory=PassStats)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "outcome": self.outcome.value,
            "job_id": self.job_id,
            "pages": self.pages,
            "stats": self.stats.to_dict(),
        }
        if self.error is not None:
            result["error"] = self.error
        return result


class JobOrchestrator:
    """
    Drives replacement jobs one tick at a time.

    Usage:
        orchestrator = JobOrchestrator(
            job_store=store,
            lock=store,
            checkpoints=store,
            scope=ScopeIterator(store, store, page_size=100),
            replacement=ReplacementPass(store, store, store, registry),
        )
        report = orchestrator.tick()
    """

    def __init__(
        self,
        job_store: JobStore,
        lock: LockService,
        checkpoints: CheckpointStore,
        scope: ScopeIterator,
        replacement: ReplacementPass,
        *,
        lock_key: str = DEFAULT_LOCK_KEY,
        lease_ms: int = DEFAULT_LEASE_MS,
        modifier: str = "compswap",
        honor_succeeded_rules: bool = True,
    ):
        self._job_store = job_store
        self._lock = lock
        self._checkpoints = checkpoints
        self._scope = scope
        self._replacement = replacement
        self._lock_key = lock_key
        self._lease_ms = lease_ms
        self._modifier = modifier
        self._honor_succeeded_rules = honor_succeeded_rules

    def tick(self) -> TickReport:
        """Run one tick. Never raises for failures inside the job's work."""
        if not self._lock.try_acquire(self._lock_key, self._lease_ms):
            logger.debug(f"Lock {self._lock_key} is held elsewhere, skipping tick")
            return TickReport(outcome=TickOutcome.LOCKED)

        job_id: Optional[str] = None
        try:
            job = self._job_store.next_pending_job()
            if job is None:
                logger.debug("No pending replacement jobs")
                return TickReport(outcome=TickOutcome.IDLE)
            job_id = job.job_id
            return self._process(job)
        except Exception as e:
            logger.exception(f"Tick failed for job {job_id}")
            if job_id is not None and self._checkpoints.get(marker_key(job_id)) is not None:
                self._abort(job_id, f"{type(e).__name__}: {e}")
                return TickReport(outcome=TickOutcome.ABORTED, job_id=job_id, error=str(e))
            return TickReport(outcome=TickOutcome.ERROR, job_id=job_id, error=str(e))
        finally:
            self._lock.release(self._lock_key)

    def _process(self, job: ReplacementJob) -> TickReport:
        if self._job_store.count_rules(job.job_id) == 0:
            logger.info(f"Job {job.job_id} has no rules, skipping")
            return TickReport(outcome=TickOutcome.NO_RULES, job_id=job.job_id)

        marker = self._checkpoints.get(marker_key(job.job_id))
        if marker is not None:
            logger.error(
                f"Job {job.job_id} has an in-progress marker from {marker}; "
                f"a previous tick did not finish, failing the job"
            )
            self._abort(job.job_id, "stale in-progress marker")
            return TickReport(outcome=TickOutcome.ABORTED, job_id=job.job_id, error="stale in-progress marker")

        if job.status != TaskStatus.HANDING:
            self._job_store.update_job_status(job.job_id, TaskStatus.HANDING, self._modifier)
        self._checkpoints.set(marker_key(job.job_id), _utcnow().isoformat())
        logger.info(f"Processing job {job.job_id} ({job.scope.kind.value})", extra={"job_id": job.job_id})

        report = TickReport(outcome=TickOutcome.PROGRESSED, job_id=job.job_id)
        sweep = self._scope.sweep(job)
        for page in sweep:
            report.stats.merge(self._replacement.run(job, page))
            report.pages += 1

        outcome = sweep.outcome
        if outcome.complete:
            self._job_store.update_job_status(job.job_id, TaskStatus.SUCCESS, self._modifier)
            self._checkpoints.delete(cursor_key(job.job_id))
            self._checkpoints.delete(marker_key(job.job_id))
            report.outcome = TickOutcome.COMPLETED
            logger.info(f"Job {job.job_id} completed: {report.stats.to_dict()}")
        else:
            self._checkpoints.set(cursor_key(job.job_id), str(outcome.next_cursor))
            self._checkpoints.delete(marker_key(job.job_id))
            logger.info(f"Job {job.job_id} advanced to cursor {outcome.next_cursor}")
        return report

    def _abort(self, job_id: str, reason: str) -> None:
        job = self._job_store.get_job(job_id)
        if job is not None and job.status.is_pending:
            self._job_store.update_job_status(job_id, TaskStatus.FAIL, self._modifier)
        self._checkpoints.delete(marker_key(job_id))
        self._checkpoints.delete(cursor_key(job_id))
        logger.error(f"Job {job_id} failed: {reason}", extra={"job_id": job_id})

    def requeue(self, job_id: str, creator: str) -> ReplacementJob:
        """
        Create a fresh INIT job that retries a finished job's rules.

        The finished job stays as it is. Rules that already succeeded are
        left out while honor_succeeded_rules is set.

        Args:
            job_id: Terminal job to retry
            creator: Identity requesting the retry

        Returns:
            The new job

        Raises:
            KeyError: Unknown job
            ValueError: Job still pending, or no rules left to retry
        """
        job = self._job_store.get_job(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        if job.status.is_pending:
            raise ValueError(f"Job {job_id} is still {job.status.value}")

        rules = self._all_rules(job_id)
        if self._honor_succeeded_rules:
            rules = [r for r in rules if r.status != TaskStatus.SUCCESS]
        if not rules:
            raise ValueError(f"Job {job_id} has no rules left to retry")

        now = _utcnow()
        new_job = ReplacementJob(job_id=str(uuid.uuid4()), scope=job.scope, creator=creator)
        new_rules = [
            dataclasses.replace(
                rule,
                rule_id=str(uuid.uuid4()),
                job_id=new_job.job_id,
                status=TaskStatus.INIT,
                created_at=now,
                updated_at=now,
                modifier=None,
            )
            for rule in rules
        ]
        self._job_store.create_job(new_job, new_rules)
        logger.info(f"Requeued job {job_id} as {new_job.job_id} with {len(new_rules)} rule(s)")
        return new_job

    def _all_rules(self, job_id: str, page_size: int = 100) -> list[ReplacementRule]:
        rules: list[ReplacementRule] = []
        after: Optional[int] = None
        while True:
            page = self._job_store.list_rules(job_id, after_ordinal=after, limit=page_size)
            rules.extend(page)
            if len(page) < page_size:
                return rules
            after = page[-1].ordinal

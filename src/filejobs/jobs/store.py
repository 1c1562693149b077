"""In-memory job store and retention sweeper.

The store is the only state shared between API handlers and workers. Records
are immutable pydantic models: an update builds a new record under the job's
own lock and swaps it in, so readers always see a whole record. The registry
lock only guards membership of the key maps and is never held while a record
is rebuilt.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..errors import DuplicateJob
from .models import JobRecord, JobStatus, utcnow

logger = logging.getLogger(__name__)


_TRANSITIONS: FrozenSet[Tuple[JobStatus, JobStatus]] = frozenset({
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.PROCESSING, JobStatus.PROCESSING),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PENDING, JobStatus.FAILED),
})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True if ``current -> target`` is a legal job status edge."""
    return (current, target) in _TRANSITIONS


class JobStore:
    """Thread-safe registry of JobRecord keyed by job id.

    All reads return deep copies; nothing outside the store holds a reference
    it could mutate.
    """

    def __init__(self):
        self._records: Dict[str, JobRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    def _lock_for(self, job_id: str) -> Optional[threading.Lock]:
        with self._registry_lock:
            return self._locks.get(job_id)

    def create(self, record: JobRecord) -> None:
        """Insert a new record.

        Raises:
            DuplicateJob: If a record with the same job_id exists
        """
        with self._registry_lock:
            if record.job_id in self._records:
                raise DuplicateJob(record.job_id)
            self._records[record.job_id] = record.model_copy(deep=True)
            self._locks[record.job_id] = threading.Lock()
        logger.info(f"Job {record.job_id} created ({record.job_type.value}, {record.status.value})")

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._registry_lock:
            record = self._records.get(job_id)
        return record.model_copy(deep=True) if record is not None else None

    def list_all(self) -> List[JobRecord]:
        """Snapshot of all records, most recently created first."""
        with self._registry_lock:
            records = list(self._records.values())
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        result_location: Optional[str] = None,
    ) -> bool:
        """Atomically move a job to ``status``.

        Args:
            job_id: Job identifier
            status: Target status
            error: Failure detail (used when status is Failed)
            result_location: Storage key of the result (required for Completed)

        Returns:
            True if the record changed, False if the job is absent or the
            transition is not allowed

        A missing job is not an error: a worker finishing a job that was
        deleted meanwhile must neither crash nor bring the record back.
        """
        lock = self._lock_for(job_id)
        if lock is None:
            logger.debug(f"Ignoring {status.value} for unknown job {job_id}")
            return False

        with lock:
            with self._registry_lock:
                current = self._records.get(job_id)
            if current is None:
                return False

            if status == JobStatus.COMPLETED and not result_location:
                raise ValueError("result_location is required to complete a job")

            if not can_transition(current.status, status):
                logger.warning(
                    f"Refused transition for job {job_id}: "
                    f"{current.status.value} -> {status.value}"
                )
                return False

            updated = current.model_copy(
                update=_transition_changes(status, error, result_location, utcnow())
            )
            with self._registry_lock:
                self._records[job_id] = updated

        logger.info(f"Job {job_id} transitioned: {current.status.value} -> {status.value}")
        return True

    def delete(self, job_id: str) -> Optional[JobRecord]:
        """Remove a record, returning it (or None if absent)."""
        lock = self._lock_for(job_id)
        if lock is None:
            return None

        with lock:
            with self._registry_lock:
                removed = self._records.pop(job_id, None)
                self._locks.pop(job_id, None)

        if removed is not None:
            logger.info(f"Job {job_id} deleted")
        return removed

    def sweep(self, retention_window: timedelta, now: Optional[datetime] = None) -> int:
        """Evict terminal jobs created before ``now - retention_window``.

        Returns:
            Count of removed records
        """
        cutoff = (now or utcnow()) - retention_window

        def expired(record: JobRecord) -> bool:
            return record.status.is_terminal and record.created_at < cutoff

        removed = 0
        for job_id in self._candidates(expired):
            lock = self._lock_for(job_id)
            if lock is None:
                continue
            with lock:
                with self._registry_lock:
                    record = self._records.get(job_id)
                    # Re-check: the record may have changed since the snapshot
                    if record is None or not expired(record):
                        continue
                    del self._records[job_id]
                    self._locks.pop(job_id, None)
            removed += 1

        if removed:
            logger.info(f"Retention sweep removed {removed} job(s) older than {cutoff.isoformat()}")
        return removed

    def fail_stale(self, stale_after: timedelta, now: Optional[datetime] = None) -> int:
        """Fail jobs stuck in Processing longer than ``stale_after``.

        A worker that crashed mid-delivery leaves its job in Processing; the
        broker redelivers the message, and the next worker moves the job back
        to Processing (refreshing started_at). A job that stays in Processing
        past the threshold has no live worker and is failed here.

        Returns:
            Count of jobs moved to Failed
        """
        current_time = now or utcnow()
        cutoff = current_time - stale_after
        detail = f"Processing timed out after {int(stale_after.total_seconds())}s without a result"

        def stale(record: JobRecord) -> bool:
            return (
                record.status == JobStatus.PROCESSING
                and record.started_at is not None
                and record.started_at < cutoff
            )

        failed = 0
        for job_id in self._candidates(stale):
            lock = self._lock_for(job_id)
            if lock is None:
                continue
            with lock:
                with self._registry_lock:
                    record = self._records.get(job_id)
                if record is None or not stale(record):
                    continue
                updated = record.model_copy(
                    update=_transition_changes(JobStatus.FAILED, detail, None, current_time)
                )
                with self._registry_lock:
                    self._records[job_id] = updated
            logger.warning(f"Job {job_id} transitioned: Processing -> Failed (stale)")
            failed += 1
        return failed

    def _candidates(self, predicate) -> List[str]:
        with self._registry_lock:
            records = list(self._records.values())
        return [r.job_id for r in records if predicate(r)]


def _transition_changes(
    status: JobStatus,
    error: Optional[str],
    result_location: Optional[str],
    now: datetime,
) -> dict:
    changes = {"status": status}
    if status == JobStatus.PROCESSING:
        changes.update(started_at=now, error_message=None, result_location=None, completed_at=None)
    elif status == JobStatus.COMPLETED:
        changes.update(completed_at=now, result_location=result_location, error_message=None)
    elif status == JobStatus.FAILED:
        changes.update(
            completed_at=now,
            result_location=None,
            error_message=error or "Job failed without error detail",
        )
    return changes


class RetentionSweeper:
    """Background thread that periodically fails stale jobs and evicts old ones.

    Features:
    - Explicit reference to the store it maintains (no module-level singleton)
    - Errors inside a cycle are logged and never stop later cycles
    - stop() wakes the thread immediately instead of waiting out the interval
    """

    def __init__(
        self,
        store: JobStore,
        interval_s: float = 1800,
        retention_window: timedelta = timedelta(hours=24),
        stale_after: Optional[timedelta] = timedelta(hours=1),
    ):
        self.store = store
        self.interval_s = interval_s
        self.retention_window = retention_window
        self.stale_after = stale_after
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            f"Retention sweeper started (every {self.interval_s}s, "
            f"window {self.retention_window})"
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_once(self) -> Tuple[int, int]:
        """Run one cycle.

        Returns:
            Tuple of (stale jobs failed, jobs removed)
        """
        stale = 0
        if self.stale_after is not None:
            stale = self.store.fail_stale(self.stale_after)
        removed = self.store.sweep(self.retention_window)
        return stale, removed

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("Retention sweep failed; retrying next cycle")

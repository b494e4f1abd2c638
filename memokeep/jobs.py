"""
Background job repository, shared by every enrichment job kind.

One JobRepository instance tracks one kind of job (auto-title,
auto-distill). Each memo has at most one job row per kind; the row is
created when the memo's transcript becomes available, updated by the
job runner on every attempt, and deleted with the memo.

The repository keeps a snapshot of all rows in memory, reloaded from
the record store after every write and republished to subscribers, so
observers (status displays, the runner's wake-up loop) never poll.

Failed attempts use exponential backoff before retry (30s, 60s, 120s,
... up to 1h, plus jitter). fetch_queued() hides jobs whose backoff has
not elapsed. Jobs that exhaust the retry budget, or fail in a way that
retrying cannot fix, stay in 'failed' status (dead letter) with their
last error preserved for diagnosis.
"""

import enum
import logging
import random
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional

from .events import EventBus, Subscription
from .protocol import RecordStoreProtocol
from .record_store import JobRecord
from .types import format_utc_timestamp, parse_utc_timestamp, utc_now, validate_memo_id

logger = logging.getLogger(__name__)

# Retry backoff: min(BASE * 2^(retries-1), MAX) seconds
RETRY_BACKOFF_BASE = 30     # 30 seconds initial delay
RETRY_BACKOFF_MAX = 3600    # 1 hour maximum delay
MAX_RETRIES = 3


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, enum.Enum):
    """Why the last attempt of a job failed."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    MODEL_UNAVAILABLE = "model_unavailable"
    CONTENT_REJECTED = "content_rejected"
    TRANSCRIPT_UNAVAILABLE = "transcript_unavailable"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        """False for failures that the same input will always reproduce."""
        return self not in (FailureReason.CONTENT_REJECTED, FailureReason.CONFIGURATION)


@dataclass(frozen=True)
class JobKind:
    """Parameters that distinguish one job repository from another."""
    name: str
    table: str
    has_mode: bool = False
    default_mode: Optional[str] = None


TITLE_JOBS = JobKind(name="title", table="title_jobs")
DISTILL_JOBS = JobKind(name="distill", table="distill_jobs", has_mode=True, default_mode="distill")

JOB_KINDS = {kind.name: kind for kind in (TITLE_JOBS, DISTILL_JOBS)}


@dataclass(frozen=True)
class Job:
    """
    One enrichment job for one memo.

    This is a read-only snapshot; use updating() to derive the next
    version and JobRepository.save() to persist it.
    """
    memo_id: str
    status: JobStatus = JobStatus.QUEUED
    mode: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None

    def updating(self, **changes) -> "Job":
        """Copy with changes applied; updated_at defaults to now."""
        changes.setdefault("updated_at", utc_now())
        return replace(self, **changes)

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.QUEUED, JobStatus.PROCESSING)

    def is_eligible(self, now: Optional[datetime] = None) -> bool:
        """True if the runner may pick this job up at `now`."""
        if not self.is_active:
            return False
        if self.next_retry_at is None:
            return True
        return self.next_retry_at <= (now or utc_now())


@dataclass(frozen=True)
class RetryPolicy:
    """
    How failed attempts are retried.

    max_retries is the ceiling on retry_count: the attempt that brings
    retry_count to max_retries leaves the job permanently failed.
    """
    max_retries: int = MAX_RETRIES
    backoff_base: float = RETRY_BACKOFF_BASE
    backoff_max: float = RETRY_BACKOFF_MAX
    jitter: float = 0.1

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the next attempt after `retry_count` failures."""
        exponent = max(retry_count - 1, 0)
        delay = min(self.backoff_base * (2 ** exponent), self.backoff_max)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return timedelta(seconds=delay)

    def apply_failure(
        self,
        job: Job,
        reason: FailureReason,
        message: str,
        *,
        now: Optional[datetime] = None,
        retry_after: Optional[float] = None,
    ) -> Job:
        """
        The job as it should be saved after a failed attempt.

        A job that is already permanently failed is returned unchanged.
        """
        if job.status == JobStatus.FAILED:
            return job
        now = now or utc_now()
        retry_count = job.retry_count + 1

        if not reason.is_retryable or retry_count >= self.max_retries:
            return job.updating(
                status=JobStatus.FAILED,
                updated_at=now,
                retry_count=retry_count,
                last_error=message,
                next_retry_at=None,
                failure_reason=reason,
            )

        delay = self.backoff(retry_count)
        if retry_after is not None:
            delay = max(delay, timedelta(seconds=retry_after))
        return job.updating(
            status=JobStatus.QUEUED,
            updated_at=now,
            retry_count=retry_count,
            last_error=message,
            next_retry_at=now + delay,
            failure_reason=reason,
        )


class JobRepository:
    """
    Durable, observable set of jobs of one kind, keyed by memo.

    Reads come from the in-memory snapshot; writes go to the record
    store first and then refresh the snapshot. If the store is
    unreachable the snapshot is still updated so the running process
    stays consistent with itself.
    """

    def __init__(
        self,
        kind: JobKind,
        record_store: RecordStoreProtocol,
        bus: Optional[EventBus[list[Job]]] = None,
    ):
        self._kind = kind
        self._store = record_store
        self._bus: EventBus[list[Job]] = bus or EventBus(f"{kind.name}-jobs")
        self._jobs: dict[str, Job] = {}
        self._lock = threading.RLock()
        self.refresh()

    @property
    def kind(self) -> JobKind:
        return self._kind

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def fetch_all(self) -> list[Job]:
        """All jobs, oldest first."""
        with self._lock:
            return _ordered(self._jobs.values())

    def fetch_queued(self, now: Optional[datetime] = None) -> list[Job]:
        """
        The runner's work list: queued or processing jobs whose retry
        backoff (if any) has elapsed, oldest first.
        """
        now = now or utc_now()
        with self._lock:
            return _ordered(job for job in self._jobs.values() if job.is_eligible(now))

    def job_for(self, memo_id: str) -> Optional[Job]:
        """The job for a memo, or None."""
        with self._lock:
            return self._jobs.get(memo_id)

    def jobs_for(self, memo_ids: list[str]) -> dict[str, Optional[Job]]:
        """Jobs for many memos; same answers as job_for() per id."""
        with self._lock:
            return {memo_id: self._jobs.get(memo_id) for memo_id in memo_ids}

    def stats(self) -> dict:
        """Job counts by status."""
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            counts["total"] = len(self._jobs)
            return counts

    def list_failed(self) -> list[Job]:
        """Jobs in failed (dead letter) status, oldest first."""
        with self._lock:
            return _ordered(job for job in self._jobs.values() if job.status == JobStatus.FAILED)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save(self, job: Job) -> Job:
        """
        Insert or update the job for job.memo_id and republish the snapshot.

        Returns the job as stored.
        """
        validate_memo_id(job.memo_id)
        if self._kind.has_mode and job.mode is None:
            job = replace(job, mode=self._kind.default_mode)
        elif not self._kind.has_mode and job.mode is not None:
            raise ValueError(f"{self._kind.name} jobs do not take a mode")

        with self._lock:
            existing = self._jobs.get(job.memo_id)
            if existing is not None and existing.created_at != job.created_at:
                # The row keeps its original creation time
                job = replace(job, created_at=existing.created_at)
            try:
                self._store.upsert_job(self._kind.table, _to_record(job))
            except sqlite3.Error as e:
                logger.error("Failed to save %s job for %s: %s", self._kind.name, job.memo_id, e)
                self._jobs[job.memo_id] = job
            else:
                if not self._reload():
                    self._jobs[job.memo_id] = job
            snapshot = _ordered(self._jobs.values())
            self._bus.publish(snapshot)
        logger.debug("Saved %s job %s: %s (retries=%d)",
                     self._kind.name, job.memo_id, job.status.value, job.retry_count)
        return job

    def delete_job(self, memo_id: str) -> bool:
        """
        Remove the job for a memo and republish the snapshot.

        Returns True if a job existed.
        """
        with self._lock:
            existed = memo_id in self._jobs
            try:
                existed = self._store.delete_job(self._kind.table, memo_id) or existed
            except sqlite3.Error as e:
                logger.error("Failed to delete %s job for %s: %s", self._kind.name, memo_id, e)
            self._jobs.pop(memo_id, None)
            if existed:
                self._bus.publish(_ordered(self._jobs.values()))
        return existed

    def retry_failed(self) -> int:
        """
        Reset every failed job back to queued with a fresh retry budget.

        Returns count of jobs reset.
        """
        with self._lock:
            failed = [job for job in self._jobs.values() if job.status == JobStatus.FAILED]
            for job in failed:
                self.save(job.updating(
                    status=JobStatus.QUEUED,
                    retry_count=0,
                    last_error=None,
                    next_retry_at=None,
                    failure_reason=None,
                ))
        if failed:
            logger.info("Reset %d failed %s jobs back to queued", len(failed), self._kind.name)
        return len(failed)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def subscribe(self) -> Subscription[list[Job]]:
        """Stream of job snapshots, starting with the current one."""
        with self._lock:
            return self._bus.subscribe(replay=_ordered(self._jobs.values()))

    def refresh(self) -> None:
        """Reload the snapshot from the record store and republish it."""
        with self._lock:
            if self._reload():
                self._bus.publish(_ordered(self._jobs.values()))

    def _reload(self) -> bool:
        """Replace the snapshot with the store's rows. Caller holds the lock."""
        try:
            records = self._store.list_jobs(self._kind.table)
        except sqlite3.Error as e:
            logger.warning("Failed to load %s jobs: %s", self._kind.name, e)
            return False
        jobs = {}
        for record in records:
            try:
                jobs[record.memo_id] = _from_record(record)
            except ValueError as e:
                logger.warning("Skipping unreadable %s job %s: %s", self._kind.name, record.memo_id, e)
        self._jobs = jobs
        return True


def title_job_repository(record_store: RecordStoreProtocol) -> JobRepository:
    """Repository for auto-title jobs."""
    return JobRepository(TITLE_JOBS, record_store)


def distill_job_repository(record_store: RecordStoreProtocol) -> JobRepository:
    """Repository for auto-distill jobs."""
    return JobRepository(DISTILL_JOBS, record_store)


def _ordered(jobs) -> list[Job]:
    return sorted(jobs, key=lambda job: (job.created_at, job.memo_id))


def _to_record(job: Job) -> JobRecord:
    return JobRecord(
        memo_id=job.memo_id,
        status=job.status.value,
        mode=job.mode,
        created_at=format_utc_timestamp(job.created_at),
        updated_at=format_utc_timestamp(job.updated_at),
        retry_count=job.retry_count,
        last_error=job.last_error,
        next_retry_at=format_utc_timestamp(job.next_retry_at) if job.next_retry_at else None,
        failure_reason=job.failure_reason.value if job.failure_reason else None,
    )


def _from_record(record: JobRecord) -> Job:
    try:
        status = JobStatus(record.status)
    except ValueError:
        status = JobStatus.QUEUED
    try:
        reason = FailureReason(record.failure_reason) if record.failure_reason else None
    except ValueError:
        reason = FailureReason.UNKNOWN
    return Job(
        memo_id=record.memo_id,
        status=status,
        mode=record.mode,
        created_at=parse_utc_timestamp(record.created_at),
        updated_at=parse_utc_timestamp(record.updated_at),
        retry_count=record.retry_count,
        last_error=record.last_error,
        next_retry_at=parse_utc_timestamp(record.next_retry_at) if record.next_retry_at else None,
        failure_reason=reason,
    )

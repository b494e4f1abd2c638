"""
Background job runners.

A JobRunner drains one JobRepository: it picks eligible jobs oldest
first, marks each one processing, hands it to a handler, and records
the outcome. Failures are classified and fed through the RetryPolicy,
so a job either comes back after its backoff or ends in the failed
dead-letter state.

Handlers do the actual enrichment:
- TitleJobHandler: generate a title from the transcript and rename the memo
- DistillJobHandler: run an analysis mode and store the result

A handler returns False when the job no longer applies (memo deleted,
user already titled it); the runner then drops the job instead of
completing it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from .analysis_cache import AnalysisMode, AnalysisResultCache, envelope_type
from .errors import (
    ConfigurationError,
    ContentRejectedError,
    EnrichmentTimeoutError,
    ModelUnavailableError,
    RateLimitedError,
    TranscriptUnavailableError,
    TransientNetworkError,
)
from .events import SubscriptionClosed
from .jobs import FailureReason, Job, JobRepository, JobStatus, RetryPolicy
from .protocol import AnalysisGenerator, MemoStoreProtocol, TitleGenerator
from .transcription_state import TranscriptionStateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

# Title prompts see the start and end of long transcripts only
TITLE_SLICE_HEAD = 1500
TITLE_SLICE_TAIL = 400


class JobHandler(Protocol):
    """Performs one job. Returns False if the job should be dropped."""

    async def handle(self, job: Job) -> bool: ...


def classify_failure(exc: BaseException) -> FailureReason:
    """Map an exception raised by a handler to a FailureReason."""
    if isinstance(exc, TranscriptUnavailableError):
        return FailureReason.TRANSCRIPT_UNAVAILABLE
    if isinstance(exc, RateLimitedError):
        return FailureReason.RATE_LIMITED
    if isinstance(exc, (EnrichmentTimeoutError, httpx.TimeoutException, TimeoutError)):
        return FailureReason.TIMEOUT
    if isinstance(exc, ContentRejectedError):
        return FailureReason.CONTENT_REJECTED
    if isinstance(exc, ConfigurationError):
        return FailureReason.CONFIGURATION
    if isinstance(exc, (ModelUnavailableError, ValidationError)):
        return FailureReason.MODEL_UNAVAILABLE
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 408:
            return FailureReason.TIMEOUT
        if status == 429:
            return FailureReason.RATE_LIMITED
        if status >= 500:
            return FailureReason.MODEL_UNAVAILABLE
        return FailureReason.CONTENT_REJECTED
    if isinstance(exc, (TransientNetworkError, httpx.TransportError, ConnectionError)):
        return FailureReason.NETWORK
    return FailureReason.UNKNOWN


def slice_transcript(transcript: str) -> str:
    """First and last part of a long transcript, for title generation."""
    if len(transcript) <= TITLE_SLICE_HEAD:
        return transcript
    return transcript[:TITLE_SLICE_HEAD] + "\n\n" + transcript[-TITLE_SLICE_TAIL:]


class JobRunner:
    """
    Processes the jobs of one repository.

    Call process_pending() to run one batch, or run() to keep going until
    stopped. Cancelling either puts the in-flight job back in the queue
    without using up a retry.
    """

    def __init__(
        self,
        repository: JobRepository,
        handler: JobHandler,
        policy: Optional[RetryPolicy] = None,
    ):
        self._repository = repository
        self._handler = handler
        self._policy = policy or RetryPolicy()

    @property
    def repository(self) -> JobRepository:
        return self._repository

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def enqueue(self, memo_id: str, mode: Optional[str] = None) -> Job:
        """
        Ensure the memo has a job.

        Existing queued, processing or completed jobs are left alone. A
        failed job is re-armed if it still has retry budget and its
        failure was retryable.
        """
        existing = self._repository.job_for(memo_id)
        if existing is None:
            job = self._repository.save(Job(memo_id=memo_id, mode=mode))
            logger.info("Queued %s job for %s", self._repository.kind.name, memo_id)
            return job
        if existing.status != JobStatus.FAILED:
            return existing
        if existing.failure_reason is not None and not existing.failure_reason.is_retryable:
            logger.debug("Not re-arming %s job for %s: %s is terminal",
                         self._repository.kind.name, memo_id, existing.failure_reason.value)
            return existing
        if existing.retry_count >= self._policy.max_retries:
            logger.debug("Not re-arming %s job for %s: retries exhausted",
                         self._repository.kind.name, memo_id)
            return existing
        logger.info("Re-arming failed %s job for %s", self._repository.kind.name, memo_id)
        return self._repository.save(existing.updating(
            status=JobStatus.QUEUED,
            next_retry_at=None,
        ))

    async def process_pending(self, limit: int = 10, now: Optional[datetime] = None) -> dict:
        """
        Run up to `limit` eligible jobs, oldest first.

        Returns:
            Dict with: processed (int), failed (int), abandoned (int),
            requeued (int), errors (list)
        """
        jobs = self._repository.fetch_queued(now)[:limit]
        result = {"processed": 0, "failed": 0, "abandoned": 0, "requeued": 0, "errors": []}
        for job in jobs:
            await self._attempt(job, result, now)
        return result

    async def _attempt(self, job: Job, result: dict, now: Optional[datetime]) -> None:
        kind = self._repository.kind.name
        current = self._repository.job_for(job.memo_id)
        if current is None or not current.is_eligible(now):
            return

        job = self._repository.save(current.updating(status=JobStatus.PROCESSING))
        logger.info("Running %s job for %s (attempt %d)", kind, job.memo_id, job.retry_count + 1)
        try:
            keep = await self._handler.handle(job)
        except asyncio.CancelledError:
            if self._repository.job_for(job.memo_id) is not None:
                self._repository.save(job.updating(status=JobStatus.QUEUED))
            logger.info("Cancelled %s job for %s, returned to queue", kind, job.memo_id)
            raise
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            if self._repository.job_for(job.memo_id) is None:
                # Deleted while running (memo removed)
                result["abandoned"] += 1
                return
            reason = classify_failure(e)
            updated = self._policy.apply_failure(
                job, reason, error_msg,
                now=now, retry_after=getattr(e, "retry_after", None),
            )
            self._repository.save(updated)
            result["errors"].append(f"{job.memo_id}: {error_msg}")
            if updated.status == JobStatus.FAILED:
                result["failed"] += 1
                logger.warning("%s job for %s failed permanently (%s, %d attempts): %s",
                               kind, job.memo_id, reason.value, updated.retry_count, e)
            else:
                result["requeued"] += 1
                logger.warning("%s job for %s failed (%s), retry at %s: %s",
                               kind, job.memo_id, reason.value, updated.next_retry_at, e)
            return

        if not keep or self._repository.job_for(job.memo_id) is None:
            self._repository.delete_job(job.memo_id)
            result["abandoned"] += 1
            logger.info("Dropped %s job for %s", kind, job.memo_id)
            return

        self._repository.save(job.updating(
            status=JobStatus.COMPLETED,
            last_error=None,
            next_retry_at=None,
            failure_reason=None,
        ))
        result["processed"] += 1
        logger.info("%s job for %s done", kind, job.memo_id)

    async def run(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Process jobs until `stop` is set.

        Sleeps between batches until the repository changes or
        poll_interval elapses (for jobs whose backoff expires).
        """
        stop = stop or asyncio.Event()
        kind = self._repository.kind.name
        logger.info("Starting %s job runner", kind)
        with self._repository.subscribe() as snapshots:
            while not stop.is_set():
                snapshots.drain()
                await self.process_pending()
                if await self._wait(snapshots, stop, poll_interval):
                    break
        logger.info("Stopped %s job runner", kind)

    @staticmethod
    async def _wait(snapshots, stop: asyncio.Event, timeout: float) -> bool:
        """Wait for a snapshot, stop, or timeout. True if the runner should exit."""
        change = asyncio.ensure_future(snapshots.async_get(timeout))
        stopped = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({change, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (change, stopped):
                if not task.done():
                    task.cancel()
        if change.done() and not change.cancelled():
            if isinstance(change.exception(), SubscriptionClosed):
                return True
        return stopped in done


class TitleJobHandler:
    """Generates a title for a memo from its transcript."""

    def __init__(
        self,
        memo_store: MemoStoreProtocol,
        transcriptions: TranscriptionStateStore,
        generator: TitleGenerator,
    ):
        self._memos = memo_store
        self._transcriptions = transcriptions
        self._generator = generator

    async def handle(self, job: Job) -> bool:
        memo = self._memos.get_memo(job.memo_id)
        if memo is None:
            logger.info("Memo %s no longer exists, dropping title job", job.memo_id)
            return False
        if memo.has_custom_title:
            logger.debug("Memo %s already has a title", job.memo_id)
            return False

        transcript = self._transcriptions.get_text(job.memo_id)
        if not transcript or not transcript.strip():
            raise TranscriptUnavailableError(f"No transcript for {job.memo_id}")

        title = await self._generator.generate_title(slice_transcript(transcript))
        if title is None:
            raise ContentRejectedError("No usable title generated")
        if not self._memos.rename_memo(job.memo_id, title):
            return False
        logger.info("Titled %s: %r", job.memo_id, title)
        return True


class DistillJobHandler:
    """Runs an analysis mode over a memo's transcript and caches the result."""

    def __init__(
        self,
        memo_store: MemoStoreProtocol,
        transcriptions: TranscriptionStateStore,
        generator: AnalysisGenerator,
        analysis_cache: AnalysisResultCache,
    ):
        self._memos = memo_store
        self._transcriptions = transcriptions
        self._generator = generator
        self._cache = analysis_cache

    async def handle(self, job: Job) -> bool:
        if self._memos.get_memo(job.memo_id) is None:
            logger.info("Memo %s no longer exists, dropping distill job", job.memo_id)
            return False

        transcript = self._transcriptions.get_text(job.memo_id)
        if not transcript or not transcript.strip():
            raise TranscriptUnavailableError(f"No transcript for {job.memo_id}")

        mode = AnalysisMode(job.mode or AnalysisMode.DISTILL.value)
        envelope = await self._generator.analyze(transcript, mode)
        result = envelope_type(mode).model_validate(envelope.model_dump())
        if result.moderation is not None and result.moderation.flagged:
            logger.warning("%s analysis for %s was flagged by moderation", mode.value, job.memo_id)
        self._cache.save(result, job.memo_id, mode)
        return True

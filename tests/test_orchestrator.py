"""Tests for memokeep.orchestrator: recording completion, restart recovery, deletion."""

import asyncio
from pathlib import Path

import pytest

from memokeep.analysis_cache import AnalysisMode, AnalysisResultCache
from memokeep.errors import TransientNetworkError
from memokeep.jobs import Job, JobStatus, RetryPolicy, distill_job_repository, title_job_repository
from memokeep.orchestrator import RecordingCompletionHandler
from memokeep.runner import DistillJobHandler, JobRunner, TitleJobHandler
from memokeep.transcription_state import TranscriptionStateStore
from memokeep.types import Completed, Failed, InProgress, NotStarted
from tests.conftest import (
    FakeAnalysisGenerator,
    FakeTitleGenerator,
    FakeTranscriber,
    make_envelope,
    make_memo,
)

AUDIO = Path("/recordings/M1.m4a")


class Pipeline:
    """Wires the real stores and runners around fake services."""

    def __init__(self, store, transcriber=None):
        self.store = store
        self.transcriber = transcriber or FakeTranscriber()
        self.titles = FakeTitleGenerator()
        self.analyses = FakeAnalysisGenerator()
        self.transcriptions = TranscriptionStateStore(store)
        self.cache = AnalysisResultCache(store)
        policy = RetryPolicy(jitter=0)
        self.title_runner = JobRunner(
            title_job_repository(store),
            TitleJobHandler(store, self.transcriptions, self.titles),
            policy,
        )
        self.distill_runner = JobRunner(
            distill_job_repository(store),
            DistillJobHandler(store, self.transcriptions, self.analyses, self.cache),
            policy,
        )
        self.handler = RecordingCompletionHandler(
            store, self.transcriptions, self.transcriber,
            self.title_runner, self.distill_runner,
            analysis_cache=self.cache,
        )

    @property
    def title_jobs(self):
        return self.title_runner.repository

    @property
    def distill_jobs(self):
        return self.distill_runner.repository


@pytest.fixture
def pipeline(flaky_store):
    return Pipeline(flaky_store)


class TestMemoCreated:

    @pytest.mark.asyncio
    async def test_happy_path(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        sub = pipeline.transcriptions.subscribe("M1")

        state = await pipeline.handler.memo_created(make_memo("M1"), AUDIO)

        assert state == Completed("hello world")
        assert pipeline.transcriber.calls == [AUDIO]
        assert pipeline.title_jobs.job_for("M1").status == JobStatus.QUEUED
        assert pipeline.distill_jobs.job_for("M1").mode == "distill"
        # Discovery, then in progress, then completed
        assert [e.current_state for e in sub.drain()] == [
            NotStarted(), InProgress(), Completed("hello world"),
        ]

    @pytest.mark.asyncio
    async def test_end_to_end_enrichment(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.titles.results = ["Grocery List Ideas"]
        pipeline.analyses.results = [make_envelope("Buy milk")]

        await pipeline.handler.memo_created(make_memo("M1"), AUDIO)
        await pipeline.title_runner.process_pending()
        await pipeline.distill_runner.process_pending()

        assert flaky_store.get_memo("M1").custom_title == "Grocery List Ideas"
        assert pipeline.cache.has("M1", AnalysisMode.DISTILL)
        assert pipeline.distill_jobs.job_for("M1").status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_custom_title_skips_title_job(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1", custom_title="Call with Sam"))
        await pipeline.handler.memo_created(make_memo("M1", custom_title="Call with Sam"), AUDIO)
        assert pipeline.title_jobs.job_for("M1") is None
        assert pipeline.distill_jobs.job_for("M1") is not None

    @pytest.mark.asyncio
    async def test_transcription_failure(self, flaky_store):
        pipeline = Pipeline(flaky_store, FakeTranscriber(error=TransientNetworkError("Network unavailable")))
        flaky_store.upsert_memo(make_memo("M1"))

        state = await pipeline.handler.memo_created(make_memo("M1"), AUDIO)

        assert state == Failed("Network unavailable")
        assert pipeline.transcriptions.get_state("M1") == Failed("Network unavailable")
        assert pipeline.title_jobs.job_for("M1") is None
        assert pipeline.distill_jobs.job_for("M1") is None

    @pytest.mark.asyncio
    async def test_empty_transcript(self, flaky_store):
        pipeline = Pipeline(flaky_store, FakeTranscriber(text="   "))
        flaky_store.upsert_memo(make_memo("M1"))
        state = await pipeline.handler.memo_created(make_memo("M1"), AUDIO)
        assert state == Failed("No speech detected")
        assert pipeline.title_jobs.fetch_all() == []

    @pytest.mark.asyncio
    async def test_failed_memo_can_be_retried(self, flaky_store):
        transcriber = FakeTranscriber(error=TransientNetworkError("offline"))
        pipeline = Pipeline(flaky_store, transcriber)
        flaky_store.upsert_memo(make_memo("M1"))
        await pipeline.handler.memo_created(make_memo("M1"), AUDIO)

        transcriber.error = None
        state = await pipeline.handler.memo_created(make_memo("M1"), AUDIO)
        assert state == Completed("hello world")
        assert len(transcriber.calls) == 2

    @pytest.mark.asyncio
    async def test_in_progress_is_not_restarted(self, pipeline):
        pipeline.transcriptions.save_state("M1", InProgress())
        state = await pipeline.handler.memo_created(make_memo("M1"), AUDIO)
        assert state == InProgress()
        assert pipeline.transcriber.calls == []

    @pytest.mark.asyncio
    async def test_completed_only_queues(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.transcriptions.save_state("M1", Completed("already here"))
        state = await pipeline.handler.memo_created(make_memo("M1"), AUDIO)
        assert state == Completed("already here")
        assert pipeline.transcriber.calls == []
        assert pipeline.title_jobs.job_for("M1") is not None

    @pytest.mark.asyncio
    async def test_cancel_resets_to_not_started(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.transcriber.gate = asyncio.Event()
        task = asyncio.create_task(pipeline.handler.memo_created(make_memo("M1"), AUDIO))
        for _ in range(100):
            if pipeline.transcriber.calls:
                break
            await asyncio.sleep(0)
        assert pipeline.transcriptions.get_state("M1") == InProgress()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert pipeline.transcriptions.get_state("M1") == NotStarted()

    @pytest.mark.asyncio
    async def test_invalid_memo_id(self, pipeline):
        with pytest.raises(ValueError):
            await pipeline.handler.memo_created(make_memo(""), AUDIO)


class TestResumePending:

    def test_resets_in_progress(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.transcriptions.save_state("M1", InProgress())

        result = pipeline.handler.resume_pending()

        assert result == {"reset": 1, "queued": 0}
        assert pipeline.transcriptions.get_state("M1") == NotStarted()

    def test_queues_missing_jobs(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        flaky_store.upsert_memo(make_memo("M2", custom_title="Named"))
        pipeline.transcriptions.save_state("M1", Completed("one"))
        pipeline.transcriptions.save_state("M2", Completed("two"))

        result = pipeline.handler.resume_pending()

        assert result["queued"] == 3
        assert pipeline.title_jobs.job_for("M2") is None
        assert pipeline.distill_jobs.job_for("M2") is not None

    def test_idempotent(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.transcriptions.save_state("M1", Completed("one"))
        pipeline.handler.resume_pending()
        assert pipeline.handler.resume_pending() == {"reset": 0, "queued": 0}

    def test_leaves_existing_jobs_alone(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.transcriptions.save_state("M1", Completed("one"))
        pipeline.title_jobs.save(Job("M1", status=JobStatus.FAILED, retry_count=1))
        pipeline.handler.resume_pending()
        assert pipeline.title_jobs.job_for("M1").status == JobStatus.FAILED

    def test_failed_transcriptions_untouched(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        pipeline.transcriptions.save_state("M1", Failed("bad audio"))
        assert pipeline.handler.resume_pending() == {"reset": 0, "queued": 0}
        assert pipeline.transcriptions.get_state("M1") == Failed("bad audio")


class TestMemoDeleted:

    @pytest.mark.asyncio
    async def test_cascade(self, pipeline, flaky_store):
        flaky_store.upsert_memo(make_memo("M1"))
        await pipeline.handler.memo_created(make_memo("M1"), AUDIO)
        pipeline.cache.save(make_envelope(), "M1", AnalysisMode.DISTILL)

        pipeline.handler.memo_deleted("M1")

        assert pipeline.transcriptions.get_state("M1") == NotStarted()
        assert pipeline.title_jobs.job_for("M1") is None
        assert pipeline.distill_jobs.job_for("M1") is None
        assert pipeline.cache.get_all("M1") == {}
        assert flaky_store._inner.get_transcription("M1") is None

    def test_analysis_store_failure_is_logged(self, pipeline, flaky_store):
        pipeline.cache.save(make_envelope(), "M1", AnalysisMode.DISTILL)
        flaky_store.failing.add("delete_analysis")
        pipeline.handler.memo_deleted("M1")
        assert pipeline.cache.size() == 0

    def test_unknown_memo(self, pipeline):
        pipeline.handler.memo_deleted("never-existed")
        assert pipeline.title_jobs.fetch_all() == []

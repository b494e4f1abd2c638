"""Tests for memokeep.api.Pipeline with injected enrichment services."""

import asyncio
import logging

import pytest

from memokeep.analysis_cache import AnalysisMode, AnalyzeEnvelope, DistillData
from memokeep.api import Pipeline
from memokeep.errors import ConfigurationError
from memokeep.jobs import JobStatus
from memokeep.types import Completed, NotStarted
from tests.conftest import FakeAnalysisGenerator, FakeTitleGenerator, FakeTranscriber, make_memo


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("MEMOKEEP_STORE_PATH", "MEMOKEEP_API_URL", "MEMOKEEP_API_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def pipeline(tmp_path):
    p = Pipeline(
        tmp_path / "store",
        transcriber=FakeTranscriber("remember to book the venue"),
        title_generator=FakeTitleGenerator(["Book The Venue"]),
        analysis_generator=FakeAnalysisGenerator(),
    )
    yield p
    p.close()


class TestPipeline:

    @pytest.mark.asyncio
    async def test_full_flow(self, pipeline, tmp_path):
        memo = make_memo("M1")
        state = await pipeline.memo_recorded(memo, tmp_path / "M1.m4a")
        assert state == Completed("remember to book the venue")

        result = await pipeline.process_pending()

        assert result["title"]["processed"] == 1
        assert result["distill"]["processed"] == 1
        assert pipeline.record_store.get_memo("M1").custom_title == "Book The Venue"
        envelope = pipeline.analysis.get("M1", AnalysisMode.DISTILL, AnalyzeEnvelope[DistillData])
        assert envelope is not None

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, pipeline, tmp_path):
        await pipeline.memo_recorded(make_memo("M1"), tmp_path / "M1.m4a")
        pipeline.close()

        with Pipeline(tmp_path / "store") as reopened:
            assert reopened.transcriptions.get_state("M1") == Completed("remember to book the venue")
            assert reopened.title_jobs.job_for("M1").status == JobStatus.QUEUED
            assert reopened.distill_jobs.job_for("M1").status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_delete_memo(self, pipeline, tmp_path):
        await pipeline.memo_recorded(make_memo("M1"), tmp_path / "M1.m4a")
        await pipeline.process_pending()

        assert pipeline.delete_memo("M1") is True
        assert pipeline.record_store.get_memo("M1") is None
        assert pipeline.transcriptions.get_state("M1") == NotStarted()
        assert pipeline.title_jobs.job_for("M1") is None
        assert pipeline.analysis.get_all("M1") == {}

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, pipeline, tmp_path):
        pipeline.config.retry.poll_interval = 0.05
        stop = asyncio.Event()
        task = asyncio.create_task(pipeline.run(stop))

        await pipeline.memo_recorded(make_memo("M1"), tmp_path / "M1.m4a")
        for _ in range(200):
            if pipeline.distill_jobs.job_for("M1").status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.02)
        stop.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert pipeline.distill_jobs.job_for("M1").status == JobStatus.COMPLETED

    def test_job_repository(self, pipeline):
        assert pipeline.job_repository("title") is pipeline.title_jobs
        assert pipeline.job_repository("distill") is pipeline.distill_jobs
        with pytest.raises(ValueError):
            pipeline.job_repository("summary")

    def test_close_removes_ops_log_handler(self, tmp_path):
        before = len(logging.getLogger("memokeep").handlers)
        p = Pipeline(tmp_path / "store")
        assert len(logging.getLogger("memokeep").handlers) == before + 1
        p.close()
        assert len(logging.getLogger("memokeep").handlers) == before
        assert (tmp_path / "store" / "memokeep-ops.log").exists()


class TestWithoutServices:

    @pytest.mark.asyncio
    async def test_memo_recorded_needs_transcriber(self, tmp_path):
        with Pipeline(tmp_path / "store") as pipeline:
            with pytest.raises(ConfigurationError):
                await pipeline.memo_recorded(make_memo("M1"), tmp_path / "M1.m4a")

    @pytest.mark.asyncio
    async def test_process_pending_needs_services(self, tmp_path):
        with Pipeline(tmp_path / "store") as pipeline:
            with pytest.raises(ConfigurationError):
                await pipeline.process_pending()

    def test_remote_config_creates_client(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMOKEEP_API_URL", "https://api.example.com")
        with Pipeline(tmp_path / "store") as pipeline:
            assert pipeline._client is not None
            assert pipeline._transcriber is pipeline._client

    def test_close_shuts_http_client(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMOKEEP_API_URL", "https://api.example.com")
        with Pipeline(tmp_path / "store") as pipeline:
            http = pipeline._client._client
            assert not http.is_closed
        assert pipeline._client is None
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_aclose_shuts_http_client(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMOKEEP_API_URL", "https://api.example.com")
        pipeline = Pipeline(tmp_path / "store")
        http = pipeline._client._client
        await pipeline.aclose()
        assert http.is_closed

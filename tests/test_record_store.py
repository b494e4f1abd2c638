"""Tests for memokeep.record_store: the SQLite record store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from memokeep.record_store import SCHEMA_VERSION, JobRecord, RecordStore
from tests.conftest import make_memo


def _job(memo_id="M1", status="queued", created="2026-03-01T09:00:00.000000+00:00", **kw):
    return JobRecord(
        memo_id=memo_id,
        status=status,
        mode=kw.pop("mode", None),
        created_at=created,
        updated_at=kw.pop("updated", created),
        **kw,
    )


class TestMemos:

    def test_upsert_and_get(self, record_store):
        record_store.upsert_memo(make_memo("M1"))
        memo = record_store.get_memo("M1")
        assert memo is not None
        assert memo.filename == "M1.m4a"
        assert memo.created_at == datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
        assert memo.custom_title is None

    def test_missing_memo(self, record_store):
        assert record_store.get_memo("nope") is None

    def test_rename(self, record_store):
        record_store.upsert_memo(make_memo("M1"))
        assert record_store.rename_memo("M1", "Grocery List Ideas") is True
        assert record_store.get_memo("M1").custom_title == "Grocery List Ideas"

    def test_rename_missing_memo(self, record_store):
        assert record_store.rename_memo("ghost", "Title") is False

    def test_delete_cascades(self, record_store):
        record_store.upsert_memo(make_memo("M1"))
        record_store.upsert_transcription("M1", "completed", "text")
        record_store.upsert_job("title_jobs", _job("M1"))
        record_store.upsert_job("distill_jobs", _job("M1", mode="distill"))
        record_store.insert_analysis("M1", "distill", b"{}", datetime.now(timezone.utc))

        assert record_store.delete_memo("M1") is True

        assert record_store.get_memo("M1") is None
        assert record_store.get_transcription("M1") is None
        assert record_store.get_job("title_jobs", "M1") is None
        assert record_store.get_job("distill_jobs", "M1") is None
        assert record_store.has_analysis("M1", "distill") is False

    def test_delete_leaves_other_memos(self, record_store):
        record_store.upsert_memo(make_memo("M1"))
        record_store.upsert_memo(make_memo("M2"))
        record_store.upsert_transcription("M2", "completed", "keep me")
        record_store.delete_memo("M1")
        assert record_store.get_memo("M2") is not None
        assert record_store.get_transcription("M2").text == "keep me"


class TestTranscriptions:

    def test_insert_then_update(self, record_store):
        record_store.upsert_transcription("M1", "inProgress", None)
        record_store.upsert_transcription("M1", "completed", "hello")
        record = record_store.get_transcription("M1")
        assert record.status == "completed"
        assert record.text == "hello"

    def test_none_text_keeps_existing(self, record_store):
        record_store.upsert_transcription("M1", "completed", "first transcript")
        record_store.upsert_transcription("M1", "inProgress", None)
        record = record_store.get_transcription("M1")
        assert record.status == "inProgress"
        assert record.text == "first transcript"

    def test_batch_get_omits_missing(self, record_store):
        record_store.upsert_transcription("A", "completed", "a")
        record_store.upsert_transcription("B", "failed", "boom")
        records = record_store.get_transcriptions(["A", "B", "C"])
        assert set(records) == {"A", "B"}
        assert records["B"].text == "boom"

    def test_batch_get_empty(self, record_store):
        assert record_store.get_transcriptions([]) == {}

    def test_list_by_status(self, record_store):
        record_store.upsert_transcription("A", "completed", "a")
        record_store.upsert_transcription("B", "inProgress", None)
        assert [r.memo_id for r in record_store.list_transcriptions("inProgress")] == ["B"]
        assert len(record_store.list_transcriptions()) == 2

    def test_delete(self, record_store):
        record_store.upsert_transcription("A", "completed", "a")
        assert record_store.delete_transcription("A") is True
        assert record_store.delete_transcription("A") is False


class TestJobs:

    def test_upsert_preserves_created_at(self, record_store):
        record_store.upsert_job("title_jobs", _job("M1"))
        record_store.upsert_job("title_jobs", _job(
            "M1", status="failed", created="2030-01-01T00:00:00.000000+00:00",
            updated="2026-03-02T00:00:00.000000+00:00", retry_count=3,
            last_error="boom", failure_reason="timeout",
        ))
        record = record_store.get_job("title_jobs", "M1")
        assert record.created_at == "2026-03-01T09:00:00.000000+00:00"
        assert record.status == "failed"
        assert record.retry_count == 3
        assert record.failure_reason == "timeout"

    def test_list_oldest_first(self, record_store):
        record_store.upsert_job("distill_jobs", _job("late", created="2026-03-02T00:00:00.000000+00:00"))
        record_store.upsert_job("distill_jobs", _job("early", created="2026-03-01T00:00:00.000000+00:00"))
        assert [r.memo_id for r in record_store.list_jobs("distill_jobs")] == ["early", "late"]

    def test_tables_are_independent(self, record_store):
        record_store.upsert_job("title_jobs", _job("M1"))
        assert record_store.list_jobs("distill_jobs") == []

    def test_unknown_table_rejected(self, record_store):
        with pytest.raises(ValueError):
            record_store.list_jobs("jobs; DROP TABLE memos")

    def test_delete(self, record_store):
        record_store.upsert_job("title_jobs", _job("M1"))
        assert record_store.delete_job("title_jobs", "M1") is True
        assert record_store.delete_job("title_jobs", "M1") is False


class TestAnalysis:

    def test_latest_wins(self, record_store):
        t0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
        record_store.insert_analysis("M1", "distill", b"old", t0)
        record_store.insert_analysis("M1", "distill", b"new", t0 + timedelta(seconds=1))
        assert record_store.latest_analysis("M1", "distill").payload == b"new"

    def test_same_timestamp_uses_insert_order(self, record_store):
        t0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
        record_store.insert_analysis("M1", "distill", b"first", t0)
        record_store.insert_analysis("M1", "distill", b"second", t0)
        assert record_store.latest_analysis("M1", "distill").payload == b"second"

    def test_modes_and_history(self, record_store):
        t0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
        record_store.insert_analysis("M1", "distill", b"a", t0)
        record_store.insert_analysis("M1", "events", b"b", t0 + timedelta(seconds=1))
        record_store.insert_analysis("M1", "distill", b"c", t0 + timedelta(seconds=2))
        assert record_store.analysis_modes("M1") == {"distill", "events"}
        assert [mode for mode, _ in record_store.analysis_history("M1")] == ["distill", "events", "distill"]

    def test_delete_one_mode(self, record_store):
        t0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
        record_store.insert_analysis("M1", "distill", b"a", t0)
        record_store.insert_analysis("M1", "distill", b"a2", t0)
        record_store.insert_analysis("M1", "events", b"b", t0)
        assert record_store.delete_analysis("M1", "distill") == 2
        assert record_store.analysis_modes("M1") == {"events"}

    def test_missing(self, record_store):
        assert record_store.latest_analysis("M1", "distill") is None
        assert record_store.has_analysis("M1", "distill") is False


class TestSchema:

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "memokeep.db"
        with RecordStore(path) as store:
            store.upsert_transcription("M1", "completed", "persisted")
        with RecordStore(path) as store:
            assert store.get_transcription("M1").text == "persisted"

    def test_migrates_v1_job_tables(self, tmp_path):
        path = tmp_path / "memokeep.db"
        conn = sqlite3.connect(str(path))
        conn.execute("""
            CREATE TABLE title_jobs (
                memo_id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'queued',
                mode TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT
            )
        """)
        conn.execute("""
            INSERT INTO title_jobs (memo_id, status, created_at, updated_at)
            VALUES ('old', 'queued', '2025-01-01T00:00:00+00:00', '2025-01-01T00:00:00+00:00')
        """)
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
        conn.close()

        with RecordStore(path) as store:
            record = store.get_job("title_jobs", "old")
            assert record is not None
            assert record.next_retry_at is None
            assert record.failure_reason is None
            version = store._conn.execute("PRAGMA user_version").fetchone()[0]
            assert version == SCHEMA_VERSION

"""
Shared pytest fixtures for memokeep tests.

Provides fake enrichment services so no test talks to a network, and a
record store wrapper that can be told to fail.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from memokeep.analysis_cache import AnalysisMode, AnalyzeEnvelope, DistillData, TokenUsage
from memokeep.record_store import RecordStore
from memokeep.types import Memo


class FlakyRecordStore:
    """
    RecordStore wrapper that records calls and fails on demand.

    Add method names to `failing` to make those calls raise
    sqlite3.OperationalError.
    """

    def __init__(self, inner: RecordStore):
        self._inner = inner
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            self.calls.append(name)
            if name in self.failing:
                raise sqlite3.OperationalError(f"{name}: database is locked")
            return attr(*args, **kwargs)
        return call

    def count(self, name: str) -> int:
        return self.calls.count(name)


class FakeTranscriber:
    """Returns canned transcripts; can fail or block until released."""

    def __init__(self, text: str = "hello world", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: list[Path] = []
        self.gate: Optional[asyncio.Event] = None

    async def transcribe(self, audio_path: Path) -> str:
        self.calls.append(audio_path)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.text


class FakeTitleGenerator:
    """
    Returns queued results in order: a title, None, or an exception to raise.

    Falls back to `default` when the queue is empty.
    """

    def __init__(self, results=None, default: Optional[str] = "Weekly Planning Notes"):
        self.results = list(results or [])
        self.default = default
        self.calls: list[str] = []

    async def generate_title(self, transcript: str, *, language_hint: Optional[str] = None) -> Optional[str]:
        self.calls.append(transcript)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, BaseException):
            raise result
        return result


def make_envelope(summary: str = "A short summary", mode: AnalysisMode = AnalysisMode.DISTILL):
    return AnalyzeEnvelope[DistillData](
        mode=mode,
        data=DistillData(summary=summary, reflection_questions=["What next?"]),
        model="test-model",
        tokens=TokenUsage(input=120, output=40),
        latency_ms=850,
    )


class FakeAnalysisGenerator:
    """Returns queued envelopes or exceptions; default is a distill envelope."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls: list[tuple[str, AnalysisMode]] = []

    async def analyze(self, transcript: str, mode: AnalysisMode) -> AnalyzeEnvelope:
        self.calls.append((transcript, mode))
        result = self.results.pop(0) if self.results else make_envelope(mode=mode)
        if isinstance(result, BaseException):
            raise result
        return result


def make_memo(memo_id: str = "M1", custom_title: Optional[str] = None) -> Memo:
    return Memo(
        id=memo_id,
        filename=f"{memo_id}.m4a",
        created_at=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc),
        custom_title=custom_title,
        duration=42.0,
    )


@pytest.fixture
def record_store(tmp_path):
    """A real SQLite record store in a temp directory."""
    store = RecordStore(tmp_path / "memokeep.db")
    yield store
    store.close()


@pytest.fixture
def flaky_store(record_store):
    """The record store behind a wrapper that can be told to fail."""
    return FlakyRecordStore(record_store)

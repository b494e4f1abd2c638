"""
Protocol definitions for the enrichment core and its collaborators.

Defines interface contracts at two levels:
- RecordStoreProtocol / MemoStoreProtocol: durable storage
  (SQLite locally via record_store.RecordStore)
- Transcriber / TitleGenerator / AnalysisGenerator: the out-of-process
  enrichment operations (task_client.EnrichmentClient, or test fakes)
"""

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from .record_store import AnalysisRecord, JobRecord, TranscriptionRecord
from .types import Memo

if TYPE_CHECKING:
    from .analysis_cache import AnalysisMode, AnalyzeEnvelope


@runtime_checkable
class MemoStoreProtocol(Protocol):
    """Memo lookup and title updates. The core never creates memos itself."""

    def get_memo(self, memo_id: str) -> Optional[Memo]: ...

    def list_memos(self) -> list[Memo]: ...

    def rename_memo(self, memo_id: str, title: Optional[str]) -> bool: ...


@runtime_checkable
class RecordStoreProtocol(MemoStoreProtocol, Protocol):
    """
    Durable storage for transcription, job and analysis records.

    Implemented by:
    - RecordStore (local SQLite)
    """

    # -- Transcriptions --

    def upsert_transcription(
        self, memo_id: str, status: str, text: Optional[str],
    ) -> TranscriptionRecord: ...

    def get_transcription(self, memo_id: str) -> Optional[TranscriptionRecord]: ...

    def get_transcriptions(self, memo_ids: list[str]) -> dict[str, TranscriptionRecord]: ...

    def delete_transcription(self, memo_id: str) -> bool: ...

    def list_transcriptions(self, status: Optional[str] = None) -> list[TranscriptionRecord]: ...

    # -- Jobs --

    def upsert_job(self, table: str, record: JobRecord) -> None: ...

    def list_jobs(self, table: str) -> list[JobRecord]: ...

    def get_job(self, table: str, memo_id: str) -> Optional[JobRecord]: ...

    def delete_job(self, table: str, memo_id: str) -> bool: ...

    # -- Analysis results --

    def insert_analysis(
        self, memo_id: str, mode: str, payload: bytes, timestamp: datetime,
    ) -> AnalysisRecord: ...

    def latest_analysis(self, memo_id: str, mode: str) -> Optional[AnalysisRecord]: ...

    def has_analysis(self, memo_id: str, mode: str) -> bool: ...

    def analysis_modes(self, memo_id: str) -> set[str]: ...

    def analysis_history(self, memo_id: str) -> list[tuple[str, str]]: ...

    def delete_analysis(self, memo_id: str, mode: Optional[str] = None) -> int: ...

    # -- Memos --

    def delete_memo(self, memo_id: str) -> bool: ...

    def close(self) -> None: ...


@runtime_checkable
class Transcriber(Protocol):
    """Turns recorded audio into text. May take minutes."""

    async def transcribe(self, audio_path: Path) -> str: ...


@runtime_checkable
class TitleGenerator(Protocol):
    """Produces a short title for a transcript, or None if it has none."""

    async def generate_title(
        self, transcript: str, *, language_hint: Optional[str] = None,
    ) -> Optional[str]: ...


@runtime_checkable
class AnalysisGenerator(Protocol):
    """Runs one analysis mode over a transcript and returns the envelope."""

    async def analyze(self, transcript: str, mode: "AnalysisMode") -> "AnalyzeEnvelope": ...

"""
Recording-completion orchestration.

Connects a finished recording to the enrichment pipeline: transcribe,
record the outcome in the transcription store, and queue the title and
distill jobs once a transcript exists. Also handles restart recovery
and cascading memo deletion.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from .analysis_cache import AnalysisResultCache
from .protocol import MemoStoreProtocol, Transcriber
from .runner import JobRunner
from .transcription_state import TranscriptionStateStore
from .types import (
    Completed,
    Failed,
    InProgress,
    Memo,
    NotStarted,
    TranscriptionState,
    validate_memo_id,
)

logger = logging.getLogger(__name__)


class RecordingCompletionHandler:
    """Drives a memo from 'recorded' to 'transcribed and queued for enrichment'."""

    def __init__(
        self,
        memo_store: MemoStoreProtocol,
        transcription_store: TranscriptionStateStore,
        transcriber: Transcriber,
        title_runner: JobRunner,
        distill_runner: JobRunner,
        *,
        analysis_cache: Optional[AnalysisResultCache] = None,
    ):
        self._memos = memo_store
        self._transcriptions = transcription_store
        self._transcriber = transcriber
        self._title_runner = title_runner
        self._distill_runner = distill_runner
        self._analysis_cache = analysis_cache

    async def memo_created(self, memo: Memo, audio_ref: Path) -> TranscriptionState:
        """
        Transcribe a new recording and queue its enrichment jobs.

        A memo that is already transcribing is left alone; one that is
        already transcribed only gets its jobs queued. Returns the final
        transcription state.
        """
        validate_memo_id(memo.id)
        state = self._transcriptions.get_state(memo.id)
        if isinstance(state, InProgress):
            logger.debug("Memo %s is already transcribing", memo.id)
            return state
        if isinstance(state, Completed):
            self._queue_enrichment(memo.id)
            return state

        self._transcriptions.save_state(memo.id, InProgress())
        logger.info("Transcribing %s", memo.id)
        try:
            text = await self._transcriber.transcribe(Path(audio_ref))
        except asyncio.CancelledError:
            # Leave it requestable again rather than stuck in progress
            self._transcriptions.save_state(memo.id, NotStarted())
            raise
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.warning("Transcription failed for %s: %s", memo.id, error_msg)
            failed = Failed(str(e) or type(e).__name__)
            self._transcriptions.save_state(memo.id, failed)
            return failed

        if not text or not text.strip():
            failed = Failed("No speech detected")
            self._transcriptions.save_state(memo.id, failed)
            logger.info("No speech detected in %s", memo.id)
            return failed

        completed = Completed(text)
        self._transcriptions.save_state(memo.id, completed)
        logger.info("Transcribed %s (%d chars)", memo.id, len(text))
        self._queue_enrichment(memo.id)
        return completed

    def resume_pending(self) -> dict:
        """
        Restart recovery.

        Memos left transcribing by a previous process are reset to
        NotStarted so they can be requested again; transcribed memos
        without enrichment jobs get them queued.

        Returns:
            Dict with: reset (int), queued (int)
        """
        result = {"reset": 0, "queued": 0}
        memos = self._memos.list_memos()
        states = self._transcriptions.get_states([memo.id for memo in memos])
        for memo in memos:
            state = states.get(memo.id)
            if isinstance(state, InProgress):
                self._transcriptions.save_state(memo.id, NotStarted())
                result["reset"] += 1
            elif isinstance(state, Completed) and state.text.strip():
                result["queued"] += self._queue_enrichment(memo.id, only_missing=True)
        if result["reset"] or result["queued"]:
            logger.info("Resumed: reset %d transcriptions, queued %d jobs",
                        result["reset"], result["queued"])
        return result

    def memo_deleted(self, memo_id: str) -> None:
        """Remove every piece of enrichment state for a deleted memo."""
        validate_memo_id(memo_id)
        self._transcriptions.delete_state(memo_id)
        self._title_runner.repository.delete_job(memo_id)
        self._distill_runner.repository.delete_job(memo_id)
        if self._analysis_cache is not None:
            try:
                self._analysis_cache.delete_all(memo_id)
            except sqlite3.Error as e:
                logger.error("Failed to delete analysis results for %s: %s", memo_id, e)
        logger.info("Removed enrichment state for %s", memo_id)

    def _queue_enrichment(self, memo_id: str, *, only_missing: bool = False) -> int:
        """Queue title and distill jobs for a transcribed memo. Returns jobs created."""
        memo = self._memos.get_memo(memo_id)
        if memo is None:
            logger.debug("Memo %s disappeared before enrichment", memo_id)
            return 0
        runners = [self._distill_runner]
        if not memo.has_custom_title:
            runners.insert(0, self._title_runner)
        queued = 0
        for runner in runners:
            existing = runner.repository.job_for(memo_id)
            if existing is not None and only_missing:
                continue
            runner.enqueue(memo_id)
            if existing is None:
                queued += 1
        return queued

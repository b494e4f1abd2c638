"""
Transcription state store.

Owns the single transcription state of every memo. Reads are served from
an in-memory cache that is filled lazily from the record store; writes
update the cache and notify subscribers before the durable write, so
observers see transitions without waiting on disk.

Store failures never escape: reads fall back to the cache or to
NotStarted, and writes keep the in-memory state. A crash between the
cache update and the durable write loses that write; this is accepted
for a single-process deployment.

Every operation runs under the store's lock, which is what makes the
per-memo order of published transitions match the order of writes.
"""

import logging
import sqlite3
import threading
from typing import Optional

from .events import EventBus, Subscription
from .protocol import RecordStoreProtocol
from .types import (
    Completed,
    NotStarted,
    TranscriptionState,
    TranscriptionStateChange,
    state_from_record,
    state_text,
    state_to_record,
    validate_memo_id,
)

logger = logging.getLogger(__name__)


class TranscriptionStateStore:
    """
    Cached, observable transcription state per memo.

    Every memo is implicitly NotStarted until a state is saved.
    """

    def __init__(
        self,
        record_store: RecordStoreProtocol,
        bus: Optional[EventBus[TranscriptionStateChange]] = None,
    ):
        self._store = record_store
        self._bus: EventBus[TranscriptionStateChange] = bus or EventBus("transcription")
        self._states: dict[str, TranscriptionState] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_state(self, memo_id: str) -> TranscriptionState:
        """
        Current state of a memo.

        On a cache miss the state is loaded from the record store (or
        defaulted to NotStarted), cached, and announced to subscribers as
        a discovery with previous_state=None.
        """
        validate_memo_id(memo_id)
        with self._lock:
            cached = self._states.get(memo_id)
            if cached is not None:
                return cached

            try:
                record = self._store.get_transcription(memo_id)
            except sqlite3.Error as e:
                logger.warning("Failed to load transcription state for %s: %s", memo_id, e)
                return NotStarted()

            state = state_from_record(record.status, record.text) if record else NotStarted()
            self._discover(memo_id, state)
            return state

    def get_states(self, memo_ids: list[str]) -> dict[str, TranscriptionState]:
        """
        States for many memos with at most one store read.

        Equivalent to calling get_state() once per id, including cache
        population and discovery events for previously unseen memos.
        """
        for memo_id in memo_ids:
            validate_memo_id(memo_id)
        with self._lock:
            result: dict[str, TranscriptionState] = {}
            missing: list[str] = []
            for memo_id in dict.fromkeys(memo_ids):
                cached = self._states.get(memo_id)
                if cached is not None:
                    result[memo_id] = cached
                else:
                    missing.append(memo_id)

            if not missing:
                return result

            try:
                records = self._store.get_transcriptions(missing)
            except sqlite3.Error as e:
                logger.warning("Failed to batch-load %d transcription states: %s", len(missing), e)
                for memo_id in missing:
                    result[memo_id] = NotStarted()
                return result

            for memo_id in missing:
                record = records.get(memo_id)
                state = state_from_record(record.status, record.text) if record else NotStarted()
                self._discover(memo_id, state)
                result[memo_id] = state
            return result

    def get_text(self, memo_id: str) -> Optional[str]:
        """Transcript text if transcription completed, else None."""
        return state_text(self.get_state(memo_id))

    def cached_states(self) -> dict[str, TranscriptionState]:
        """Snapshot of the in-memory cache (diagnostics)."""
        with self._lock:
            return dict(self._states)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save_state(self, memo_id: str, state: TranscriptionState) -> None:
        """
        Record a new state for a memo.

        Any state may replace any other. The cache and subscribers are
        updated first; a failed durable write is logged and not rolled back.
        """
        validate_memo_id(memo_id)
        with self._lock:
            previous = self._states.get(memo_id)
            self._states[memo_id] = state
            self._bus.publish(TranscriptionStateChange(memo_id, previous, state))
            logger.debug(
                "Transcription %s: %s -> %s",
                memo_id, previous.status if previous else None, state.status,
            )

            status, text = state_to_record(state)
            try:
                self._store.upsert_transcription(memo_id, status, text)
            except sqlite3.Error as e:
                logger.error("Failed to persist transcription state for %s: %s", memo_id, e)

    def save_text(self, memo_id: str, text: str) -> None:
        """Shorthand for saving a Completed state."""
        self.save_state(memo_id, Completed(text))

    def delete_state(self, memo_id: str) -> None:
        """
        Forget a memo's transcription.

        If a state existed (cached or stored), subscribers see a
        transition to NotStarted.
        """
        validate_memo_id(memo_id)
        with self._lock:
            previous = self._states.pop(memo_id, None)
            if previous is None:
                try:
                    record = self._store.get_transcription(memo_id)
                except sqlite3.Error as e:
                    logger.warning("Failed to read transcription for %s before delete: %s", memo_id, e)
                    record = None
                if record is not None:
                    previous = state_from_record(record.status, record.text)

            try:
                self._store.delete_transcription(memo_id)
            except sqlite3.Error as e:
                logger.error("Failed to delete transcription for %s: %s", memo_id, e)

            if previous is not None:
                self._bus.publish(TranscriptionStateChange(memo_id, previous, NotStarted()))
            logger.info("Deleted transcription state for %s", memo_id)

    def clear_cache(self) -> None:
        """Drop the in-memory cache. States reload from the store on demand."""
        with self._lock:
            self._states.clear()
        logger.debug("Cleared transcription cache")

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def subscribe(self, memo_id: Optional[str] = None) -> Subscription[TranscriptionStateChange]:
        """
        Stream of state changes from now on, optionally for one memo only.

        Close the subscription (or use it as a context manager) when done.
        """
        if memo_id is None:
            return self._bus.subscribe()
        validate_memo_id(memo_id)
        return self._bus.subscribe(lambda change: change.memo_id == memo_id)

    def _discover(self, memo_id: str, state: TranscriptionState) -> None:
        """Cache a freshly loaded state and announce it. Caller holds the lock."""
        self._states[memo_id] = state
        self._bus.publish(TranscriptionStateChange(memo_id, None, state))

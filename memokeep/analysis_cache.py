"""
Two-tier cache for analysis results.

Results are keyed by (memo, analysis mode). The memory tier holds the
serialized payload and the decoded value of the latest result for each
key; the record store keeps every result ever saved, and the newest row
for a key is the current value. A memory miss always falls through to
the store before a result is reported absent, so the memory tier can be
dropped at any time (clear()) without losing data.

Payloads are pydantic models serialized to JSON. Readers name the shape
they expect (e.g. AnalyzeEnvelope[DistillData]); a stored payload that
does not validate against it is logged and treated as absent.
"""

import enum
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .protocol import RecordStoreProtocol
from .types import parse_utc_timestamp, utc_now, validate_memo_id

logger = logging.getLogger(__name__)


class AnalysisMode(str, enum.Enum):
    DISTILL = "distill"
    EVENTS = "events"
    REMINDERS = "reminders"
    LITE_DISTILL = "lite-distill"

    # Distill components, run in parallel and merged
    DISTILL_SUMMARY = "distill-summary"
    DISTILL_ACTIONS = "distill-actions"
    DISTILL_THEMES = "distill-themes"
    DISTILL_REFLECTION = "distill-reflection"

    COGNITIVE_CLARITY = "cognitive-clarity"
    PHILOSOPHICAL_ECHOES = "philosophical-echoes"
    VALUES_RECOGNITION = "values-recognition"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self, self.value.replace("-", " ").title())


_DISPLAY_NAMES = {
    AnalysisMode.DISTILL: "Distill",
    AnalysisMode.LITE_DISTILL: "Clarity",
    AnalysisMode.EVENTS: "Events",
    AnalysisMode.REMINDERS: "Reminders",
    AnalysisMode.DISTILL_SUMMARY: "Summary",
    AnalysisMode.DISTILL_ACTIONS: "Actions",
    AnalysisMode.DISTILL_THEMES: "Themes",
    AnalysisMode.DISTILL_REFLECTION: "Reflection",
}


# ---------------------------------------------------------------------------
# Payload shapes
# ---------------------------------------------------------------------------

T = TypeVar("T")


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


class ModerationResult(BaseModel):
    flagged: bool = False
    categories: dict[str, bool] = {}


class AnalyzeEnvelope(BaseModel, Generic[T]):
    """A model's output for one analysis mode, plus call metadata."""
    mode: AnalysisMode
    data: T
    model: str
    tokens: TokenUsage = TokenUsage()
    latency_ms: int = 0
    moderation: Optional[ModerationResult] = None


class ActionItem(BaseModel):
    text: str
    priority: str = "medium"


class DetectedEvent(BaseModel):
    title: str
    start_date: Optional[str] = None
    location: Optional[str] = None
    confidence: float = 0.0


class DetectedReminder(BaseModel):
    title: str
    due_date: Optional[str] = None
    priority: str = "medium"
    confidence: float = 0.0


class DistillData(BaseModel):
    summary: str
    action_items: Optional[list[ActionItem]] = None
    reflection_questions: list[str] = []
    key_themes: Optional[list[str]] = None
    events: Optional[list[DetectedEvent]] = None
    reminders: Optional[list[DetectedReminder]] = None


class EventsData(BaseModel):
    events: list[DetectedEvent]


class RemindersData(BaseModel):
    reminders: list[DetectedReminder]


_PAYLOAD_TYPES: dict[AnalysisMode, type] = {
    AnalysisMode.DISTILL: DistillData,
    AnalysisMode.EVENTS: EventsData,
    AnalysisMode.REMINDERS: RemindersData,
}


def envelope_type(mode: AnalysisMode) -> type[AnalyzeEnvelope]:
    """The envelope shape stored for a mode. Modes without a typed payload keep a plain dict."""
    return AnalyzeEnvelope[_PAYLOAD_TYPES.get(AnalysisMode(mode), dict)]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class _AvailableInStore:
    """Marker for results known to exist in the store but not decoded."""

    def __repr__(self) -> str:
        return "AVAILABLE_IN_STORE"


AVAILABLE_IN_STORE = _AvailableInStore()

M = TypeVar("M", bound=BaseModel)


@dataclass
class _Entry:
    payload: bytes
    value: BaseModel
    timestamp: datetime


class AnalysisResultCache:
    """
    Memory-over-store cache of analysis results with per-memo history.

    History is an ordered list of (mode, timestamp) per memo. Saving the
    same key again appends to the history and replaces the current value.
    """

    def __init__(self, record_store: RecordStoreProtocol):
        self._store = record_store
        self._cache: dict[tuple[str, AnalysisMode], _Entry] = {}
        self._history: dict[str, list[tuple[AnalysisMode, datetime]]] = {}
        self._lock = threading.RLock()

    def save(self, result: BaseModel, memo_id: str, mode: AnalysisMode) -> None:
        """
        Store a result as the current value for (memo_id, mode).

        The memory tier and history are updated even if the durable
        write fails; the failure is logged.
        """
        validate_memo_id(memo_id)
        mode = AnalysisMode(mode)
        payload = result.model_dump_json().encode("utf-8")
        timestamp = utc_now()
        with self._lock:
            self._cache[(memo_id, mode)] = _Entry(payload, result, timestamp)
            ledger = self._history.get(memo_id)
            if ledger is None:
                # Start from the stored rows so earlier results stay in the history
                ledger = self._load_history(memo_id)
                if ledger is not None:
                    self._history[memo_id] = ledger
            if ledger is not None:
                ledger.append((mode, timestamp))
            try:
                self._store.insert_analysis(memo_id, mode.value, payload, timestamp)
            except sqlite3.Error as e:
                logger.error("Failed to persist %s analysis for %s: %s", mode.value, memo_id, e)
                return
        logger.info("Saved %s analysis for %s (%d bytes)", mode.value, memo_id, len(payload))

    def get(
        self,
        memo_id: str,
        mode: AnalysisMode,
        expected_type: type[M],
    ) -> Optional[M]:
        """
        Current result for (memo_id, mode) decoded as expected_type.

        Returns None if there is no result, or if the stored payload does
        not match expected_type (logged).
        """
        validate_memo_id(memo_id)
        mode = AnalysisMode(mode)
        key = (memo_id, mode)
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if type(entry.value) is expected_type:
                    logger.debug("Analysis cache hit: %s/%s", memo_id, mode.value)
                    return entry.value
                value = self._decode(entry.payload, expected_type, memo_id, mode)
                if value is not None:
                    entry.value = value
                return value

            logger.debug("Analysis cache miss, checking store: %s/%s", memo_id, mode.value)
            try:
                record = self._store.latest_analysis(memo_id, mode.value)
            except sqlite3.Error as e:
                logger.warning("Failed to load %s analysis for %s: %s", mode.value, memo_id, e)
                return None
            if record is None:
                return None

            value = self._decode(record.payload, expected_type, memo_id, mode)
            if value is None:
                return None
            self._cache[key] = _Entry(record.payload, value, parse_utc_timestamp(record.timestamp))
            logger.debug("Loaded %s analysis for %s from store", mode.value, memo_id)
            return value

    def has(self, memo_id: str, mode: AnalysisMode) -> bool:
        """True if a result exists in memory or in the store. Nothing is decoded."""
        validate_memo_id(memo_id)
        mode = AnalysisMode(mode)
        with self._lock:
            if (memo_id, mode) in self._cache:
                return True
            try:
                return self._store.has_analysis(memo_id, mode.value)
            except sqlite3.Error as e:
                logger.warning("Failed to check %s analysis for %s: %s", mode.value, memo_id, e)
                return False

    def get_all(self, memo_id: str) -> dict[AnalysisMode, Union[BaseModel, _AvailableInStore]]:
        """
        Every mode with a result for a memo.

        Cached results are returned as their decoded value; results that
        exist only in the store map to AVAILABLE_IN_STORE without being
        loaded.
        """
        validate_memo_id(memo_id)
        results: dict[AnalysisMode, Any] = {}
        with self._lock:
            for (cached_memo, mode), entry in self._cache.items():
                if cached_memo == memo_id:
                    results[mode] = entry.value
            try:
                stored_modes = self._store.analysis_modes(memo_id)
            except sqlite3.Error as e:
                logger.warning("Failed to list analyses for %s: %s", memo_id, e)
                stored_modes = set()
        for raw_mode in stored_modes:
            try:
                mode = AnalysisMode(raw_mode)
            except ValueError:
                logger.debug("Ignoring unknown analysis mode %r for %s", raw_mode, memo_id)
                continue
            results.setdefault(mode, AVAILABLE_IN_STORE)
        return {mode: results[mode] for mode in AnalysisMode if mode in results}

    def history(self, memo_id: str) -> list[tuple[AnalysisMode, datetime]]:
        """(mode, timestamp) of every saved result for a memo, oldest first."""
        validate_memo_id(memo_id)
        with self._lock:
            ledger = self._history.get(memo_id)
            if ledger is None:
                ledger = self._load_history(memo_id)
            return list(ledger or [])

    def delete(self, memo_id: str, mode: AnalysisMode) -> None:
        """
        Remove every result for (memo_id, mode) from both tiers.

        A store failure is logged; the memory tier is still pruned.
        """
        validate_memo_id(memo_id)
        mode = AnalysisMode(mode)
        with self._lock:
            self._cache.pop((memo_id, mode), None)
            self._prune_history(memo_id, mode)
            try:
                self._store.delete_analysis(memo_id, mode.value)
            except sqlite3.Error as e:
                logger.error("Failed to delete %s analysis for %s: %s", mode.value, memo_id, e)

    def delete_all(self, memo_id: str) -> int:
        """
        Remove every result for a memo from both tiers.

        Returns the number of stored rows deleted.

        Raises:
            sqlite3.Error: if the store could not delete the rows
        """
        validate_memo_id(memo_id)
        with self._lock:
            for key in [key for key in self._cache if key[0] == memo_id]:
                del self._cache[key]
            self._history.pop(memo_id, None)
            deleted = self._store.delete_analysis(memo_id)
        logger.info("Deleted %d analysis results for %s", deleted, memo_id)
        return deleted

    def clear(self) -> None:
        """Drop the memory tier. Stored results are untouched."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._history.clear()
        logger.debug("Cleared analysis cache (%d entries)", count)

    def size(self) -> int:
        """Number of results held in memory."""
        with self._lock:
            return len(self._cache)

    def _load_history(self, memo_id: str) -> Optional[list[tuple[AnalysisMode, datetime]]]:
        """History rebuilt from the store, or None if the store can't be read."""
        try:
            rows = self._store.analysis_history(memo_id)
        except sqlite3.Error as e:
            logger.warning("Failed to load analysis history for %s: %s", memo_id, e)
            return None
        history = []
        for raw_mode, ts in rows:
            try:
                history.append((AnalysisMode(raw_mode), parse_utc_timestamp(ts)))
            except ValueError:
                logger.debug("Ignoring unreadable history row %r/%r for %s", raw_mode, ts, memo_id)
        return history

    def _prune_history(self, memo_id: str, mode: AnalysisMode) -> None:
        ledger = self._history.get(memo_id)
        if ledger is None:
            return
        remaining = [(m, ts) for m, ts in ledger if m != mode]
        if remaining:
            self._history[memo_id] = remaining
        else:
            del self._history[memo_id]

    @staticmethod
    def _decode(payload: bytes, expected_type: type[M], memo_id: str, mode: AnalysisMode) -> Optional[M]:
        try:
            return expected_type.model_validate_json(payload)
        except ValidationError as e:
            logger.warning(
                "Stored %s analysis for %s does not match %s: %s",
                mode.value, memo_id, expected_type.__name__, e.error_count(),
            )
            return None

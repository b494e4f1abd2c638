"""
Data types for memo enrichment.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_utc_timestamp(dt: datetime) -> str:
    """Canonical storage format for timestamps: ISO-8601 in UTC.

    Microseconds are kept so that history rows written in quick
    succession still sort in write order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles both the canonical format and values written with a 'Z'
    suffix or without any offset.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


MAX_MEMO_ID_LENGTH = 256

# Memo IDs are UUID strings in practice; reject control characters and
# anything long enough to suggest a path or payload was passed by mistake.
_MEMO_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f]')


def validate_memo_id(memo_id: str) -> None:
    """Validate a memo identifier: length and no control characters."""
    if not isinstance(memo_id, str) or not memo_id or len(memo_id) > MAX_MEMO_ID_LENGTH:
        raise ValueError(f"Memo ID must be 1-{MAX_MEMO_ID_LENGTH} characters: {memo_id!r}")
    if _MEMO_ID_BLOCKED_RE.search(memo_id):
        raise ValueError(f"Memo ID contains invalid characters: {memo_id!r}")


# ---------------------------------------------------------------------------
# Transcription state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NotStarted:
    """No transcription has been requested (the implicit initial state)."""
    status = "notStarted"
    status_text = "Not transcribed"


@dataclass(frozen=True)
class InProgress:
    """Transcription has been requested and is running."""
    status = "inProgress"
    status_text = "Transcribing..."


@dataclass(frozen=True)
class Completed:
    """Transcription finished with text."""
    text: str
    status = "completed"
    status_text = "Transcribed"


@dataclass(frozen=True)
class Failed:
    """Transcription failed; the message is kept for display."""
    error_message: str
    status = "failed"
    status_text = "Transcription failed"


TranscriptionState = Union[NotStarted, InProgress, Completed, Failed]

TRANSCRIPTION_STATUSES = ("notStarted", "inProgress", "completed", "failed")


def state_text(state: TranscriptionState) -> Optional[str]:
    """Transcript text if the state is Completed, else None."""
    return state.text if isinstance(state, Completed) else None


def state_error(state: TranscriptionState) -> Optional[str]:
    """Error message if the state is Failed, else None."""
    return state.error_message if isinstance(state, Failed) else None


def state_from_record(status: str, text: str) -> TranscriptionState:
    """Map a persisted (status, text) pair back to a state.

    Unknown statuses map to NotStarted, matching a missing record.
    """
    if status == "completed":
        return Completed(text or "")
    if status == "inProgress":
        return InProgress()
    if status == "failed":
        return Failed(text or "")
    return NotStarted()


def state_to_record(state: TranscriptionState) -> tuple[str, Optional[str]]:
    """Map a state to its persisted (status, text) pair.

    Failed states store their error message in the text column.
    """
    if isinstance(state, Completed):
        return state.status, state.text
    if isinstance(state, Failed):
        return state.status, state.error_message
    return state.status, None


@dataclass(frozen=True)
class TranscriptionStateChange:
    """
    A transcription state transition for one memo.

    previous_state is None when the state was first discovered
    (loaded from the store or defaulted) rather than changed.
    """
    memo_id: str
    previous_state: Optional[TranscriptionState]
    current_state: TranscriptionState


# ---------------------------------------------------------------------------
# Memo (external entity)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Memo:
    """
    A recorded memo as seen by the enrichment core.

    The core only reads and writes custom_title; everything else
    belongs to the recording side.
    """
    id: str
    filename: str
    created_at: datetime
    custom_title: Optional[str] = None
    duration: float = 0.0

    @property
    def has_custom_title(self) -> bool:
        return bool(self.custom_title and self.custom_title.strip())

    @property
    def display_name(self) -> str:
        return self.custom_title if self.has_custom_title else self.filename

"""
memokeep

Background enrichment for voice memos: transcription state, auto-title
and auto-distill jobs with retry, and a cache of analysis results, all
kept in one SQLite store and observable through in-process events.

Quick Start:
    from memokeep import Pipeline

    with Pipeline() as pipeline:
        state = pipeline.transcriptions.get_state(memo_id)
        summary = pipeline.analysis.get(memo_id, AnalysisMode.DISTILL,
                                        AnalyzeEnvelope[DistillData])

CLI Usage:
    memokeep status MEMO_ID
    memokeep jobs --kind distill --failed
    memokeep pending

Default Store:
    ~/.memokeep/ (created automatically).
    Override with MEMOKEEP_STORE_PATH or an explicit path argument.

Environment Variables:
    MEMOKEEP_STORE_PATH  - Override default store location
    MEMOKEEP_API_URL     - Enrichment API base URL
    MEMOKEEP_API_KEY     - Bearer token for the enrichment API
    MEMOKEEP_VERBOSE     - Debug logging for the CLI
"""

from .analysis_cache import (
    AVAILABLE_IN_STORE,
    AnalysisMode,
    AnalysisResultCache,
    AnalyzeEnvelope,
    DistillData,
    EventsData,
    RemindersData,
)
from .api import Pipeline
from .events import EventBus, Subscription
from .jobs import FailureReason, Job, JobRepository, JobStatus, RetryPolicy
from .transcription_state import TranscriptionStateStore
from .types import (
    Completed,
    Failed,
    InProgress,
    Memo,
    NotStarted,
    TranscriptionState,
    TranscriptionStateChange,
)

__version__ = "0.1.0"
__all__ = [
    "Pipeline",
    "TranscriptionStateStore",
    "TranscriptionState",
    "TranscriptionStateChange",
    "NotStarted",
    "InProgress",
    "Completed",
    "Failed",
    "Memo",
    "Job",
    "JobStatus",
    "FailureReason",
    "JobRepository",
    "RetryPolicy",
    "AnalysisMode",
    "AnalysisResultCache",
    "AnalyzeEnvelope",
    "DistillData",
    "EventsData",
    "RemindersData",
    "AVAILABLE_IN_STORE",
    "EventBus",
    "Subscription",
]

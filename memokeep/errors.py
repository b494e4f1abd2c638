"""
Error types and error logging utilities for memokeep.

Enrichment errors carry enough information for the job runner to
classify a failure (see runner.classify_failure). The error log writes
full stack traces for debugging while the CLI shows clean messages.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class EnrichmentError(Exception):
    """An out-of-process enrichment call (transcribe, title, analyze) failed."""


class TransientNetworkError(EnrichmentError):
    """Connection-level failure; the request may not have reached the service."""


class EnrichmentTimeoutError(EnrichmentError):
    """The service did not answer in time."""


class RateLimitedError(EnrichmentError):
    """The service refused the request because of rate limits or quota."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ModelUnavailableError(EnrichmentError):
    """The model backing the service is unavailable or returned garbage."""


class ContentRejectedError(EnrichmentError):
    """The input was rejected (invalid request, moderation, empty result)."""


class TranscriptUnavailableError(EnrichmentError):
    """A job needs a transcript but the memo has none yet."""


class ConfigurationError(EnrichmentError):
    """The client is misconfigured (missing key, bad URL, unencodable input)."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MEMOKEEP_STORE_PATH."""
    store = os.environ.get("MEMOKEEP_STORE_PATH")
    if store:
        return Path(store) / "memokeep-errors.log"
    return Path.home() / ".memokeep" / "memokeep-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path

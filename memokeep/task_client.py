"""
HTTP client for the hosted enrichment API.

Transcribes audio, generates titles and runs analysis modes on the
service that holds the model credentials. Implements the Transcriber,
TitleGenerator and AnalysisGenerator protocols so the job runners can
use it directly.

Reads the [remote] config (api_url, api_key) from memokeep.toml or
environment variables. Failures are raised as EnrichmentError
subclasses; retrying is left to the job runner.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

import httpx
from pydantic import ValidationError

from .analysis_cache import AnalysisMode, AnalyzeEnvelope
from .errors import (
    ConfigurationError,
    ContentRejectedError,
    EnrichmentError,
    EnrichmentTimeoutError,
    ModelUnavailableError,
    RateLimitedError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

# Timeouts
DEFAULT_TIMEOUT = 30.0
TITLE_TIMEOUT = 8.0
TRANSCRIBE_TIMEOUT = 300.0

# Title rules enforced by the service, re-checked locally
TITLE_MIN_WORDS = 3
TITLE_MAX_WORDS = 5
TITLE_MAX_CHARS = 32

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)


def validate_title(raw: str) -> Optional[str]:
    """The title if it meets the title rules, else None."""
    title = raw.strip()
    if not title:
        return None
    if not TITLE_MIN_WORDS <= len(title.split()) <= TITLE_MAX_WORDS:
        return None
    if len(title) > TITLE_MAX_CHARS:
        return None
    if _PUNCTUATION.search(title):
        return None
    return title


class EnrichmentClient:
    """Async HTTP client for the enrichment API."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            from urllib.parse import urlparse
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Enrichment API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )

    async def transcribe(self, audio_path: Path, *, language: Optional[str] = None) -> str:
        """POST /transcribe (multipart) -> transcript text."""
        audio_path = Path(audio_path)
        try:
            audio = audio_path.read_bytes()
        except OSError as e:
            raise ConfigurationError(f"Cannot read audio {audio_path}: {e}") from e

        data = {"language": language} if language else None
        files = {"file": (audio_path.name, audio, "application/octet-stream")}
        body = await self._post(
            "/transcribe", files=files, data=data, timeout=TRANSCRIBE_TIMEOUT,
        )
        text = body.get("text")
        if not isinstance(text, str):
            raise ModelUnavailableError("Transcription response has no text")
        logger.debug("Transcribed %s: %d chars", audio_path.name, len(text))
        return text

    async def generate_title(
        self, transcript: str, *, language_hint: Optional[str] = None,
    ) -> Optional[str]:
        """POST /title -> validated title, or None if the model's title breaks the rules."""
        payload: dict = {
            "transcript": transcript,
            "rules": {
                "words": f"{TITLE_MIN_WORDS}-{TITLE_MAX_WORDS}",
                "titleCase": True,
                "noPunctuation": True,
                "maxChars": TITLE_MAX_CHARS,
            },
        }
        if language_hint:
            payload["language"] = language_hint
        body = await self._post("/title", json=payload, timeout=TITLE_TIMEOUT)
        raw = body.get("title")
        if not isinstance(raw, str):
            raise ModelUnavailableError("Title response has no title")
        title = validate_title(raw)
        if title is None:
            logger.info("Discarding title that breaks the rules: %r", raw)
        return title

    async def analyze(self, transcript: str, mode: AnalysisMode) -> AnalyzeEnvelope:
        """POST /analyze {mode, transcript} -> envelope."""
        mode = AnalysisMode(mode)
        body = await self._post("/analyze", json={"mode": mode.value, "transcript": transcript})
        try:
            return AnalyzeEnvelope[dict].model_validate(body)
        except ValidationError as e:
            raise ModelUnavailableError(f"Malformed {mode.value} analysis response: {e.error_count()} errors") from e

    async def _post(self, path: str, *, timeout: Optional[float] = None, **kwargs) -> dict:
        """POST and decode the JSON body, mapping failures to EnrichmentError."""
        try:
            resp = await self._client.post(path, timeout=timeout or DEFAULT_TIMEOUT, **kwargs)
        except httpx.TimeoutException as e:
            raise EnrichmentTimeoutError(f"{path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{path} failed: {e}") from e

        if resp.status_code != 200:
            raise _status_error(path, resp)
        try:
            body = resp.json()
        except ValueError as e:
            raise ModelUnavailableError(f"{path} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise ModelUnavailableError(f"{path} returned {type(body).__name__}, expected object")
        return body

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


def _status_error(path: str, resp: httpx.Response) -> EnrichmentError:
    status = resp.status_code
    detail = _error_detail(resp)
    message = f"{path} returned {status}" + (f": {detail}" if detail else "")
    if status == 429:
        retry_after = None
        header = resp.headers.get("Retry-After")
        if header:
            try:
                retry_after = min(float(header), 3600.0)
            except ValueError:
                pass
        return RateLimitedError(message, retry_after=retry_after)
    if status == 408:
        return EnrichmentTimeoutError(message)
    if status in (401, 403):
        return ConfigurationError(message)
    if status >= 500:
        return ModelUnavailableError(message)
    return ContentRejectedError(message)


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip()[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or "")
    return ""

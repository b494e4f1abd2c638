"""
Pipeline: the assembled enrichment core for one store.

Wires the record store, transcription state, both job repositories,
the analysis cache, the job runners and the recording-completion
handler together, using the store's memokeep.toml.

Example:
    with Pipeline() as pipeline:
        pipeline.transcriptions.get_state(memo_id)
        asyncio.run(pipeline.process_pending())
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .analysis_cache import AnalysisResultCache
from .config import PipelineConfig, load_or_create_config
from .errors import ConfigurationError
from .events import EventBus
from .jobs import JobRepository, distill_job_repository, title_job_repository
from .orchestrator import RecordingCompletionHandler
from .protocol import AnalysisGenerator, TitleGenerator, Transcriber
from .record_store import RecordStore
from .runner import DistillJobHandler, JobRunner, TitleJobHandler
from .task_client import EnrichmentClient
from .transcription_state import TranscriptionStateStore
from .types import Memo, TranscriptionState, TranscriptionStateChange

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Background enrichment for voice memos.

    Enrichment services (transcriber, title and analysis generators) can
    be injected; otherwise an EnrichmentClient is created when the config
    names a remote API. Read-only use (status, job listings, cached
    results) needs no services at all.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        config: Optional[PipelineConfig] = None,
        *,
        transcriber: Optional[Transcriber] = None,
        title_generator: Optional[TitleGenerator] = None,
        analysis_generator: Optional[AnalysisGenerator] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses MEMOKEEP_STORE_PATH or
                ~/.memokeep if not specified.
            config: Pre-loaded config (skips filesystem config discovery).
            transcriber: Injected transcription service.
            title_generator: Injected title service.
            analysis_generator: Injected analysis service.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(Path(store_path).resolve() if store_path else None)
        self._store_path = self._config.path

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Enrichment services ---
        self._client: Optional[EnrichmentClient] = None
        if self._config.remote.enabled and not (transcriber and title_generator and analysis_generator):
            self._client = EnrichmentClient(self._config.remote.api_url, self._config.remote.api_key)
        self._transcriber = transcriber or self._client
        self._title_generator = title_generator or self._client
        self._analysis_generator = analysis_generator or self._client

        # --- Stores ---
        self._record_store = RecordStore(self._config.database_path)
        self._bus: EventBus[TranscriptionStateChange] = EventBus("transcription")
        self._transcriptions = TranscriptionStateStore(self._record_store, self._bus)
        self._title_jobs = title_job_repository(self._record_store)
        self._distill_jobs = distill_job_repository(self._record_store)
        self._analysis = AnalysisResultCache(self._record_store)

        # --- Runners ---
        policy = self._config.retry.policy()
        self._title_runner = JobRunner(
            self._title_jobs,
            TitleJobHandler(self._record_store, self._transcriptions, self._title_generator),
            policy,
        )
        self._distill_runner = JobRunner(
            self._distill_jobs,
            DistillJobHandler(self._record_store, self._transcriptions,
                              self._analysis_generator, self._analysis),
            policy,
        )
        self._completion = RecordingCompletionHandler(
            self._record_store,
            self._transcriptions,
            self._transcriber,
            self._title_runner,
            self._distill_runner,
            analysis_cache=self._analysis,
        )
        logger.debug("Opened pipeline at %s", self._store_path)

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def record_store(self) -> RecordStore:
        return self._record_store

    @property
    def transcriptions(self) -> TranscriptionStateStore:
        return self._transcriptions

    @property
    def title_jobs(self) -> JobRepository:
        return self._title_jobs

    @property
    def distill_jobs(self) -> JobRepository:
        return self._distill_jobs

    @property
    def analysis(self) -> AnalysisResultCache:
        return self._analysis

    @property
    def title_runner(self) -> JobRunner:
        return self._title_runner

    @property
    def distill_runner(self) -> JobRunner:
        return self._distill_runner

    def job_repository(self, kind: str) -> JobRepository:
        """Job repository by kind name ('title' or 'distill')."""
        repositories = {"title": self._title_jobs, "distill": self._distill_jobs}
        if kind not in repositories:
            raise ValueError(f"Unknown job kind: {kind!r} (expected one of {sorted(repositories)})")
        return repositories[kind]

    # -------------------------------------------------------------------------
    # Memo lifecycle
    # -------------------------------------------------------------------------

    async def memo_recorded(self, memo: Memo, audio_path: Path) -> TranscriptionState:
        """Register a finished recording, transcribe it and queue enrichment."""
        if self._transcriber is None:
            raise ConfigurationError(
                "No transcription service configured. Set MEMOKEEP_API_URL or [remote] api_url."
            )
        self._record_store.upsert_memo(memo)
        return await self._completion.memo_created(memo, audio_path)

    def delete_memo(self, memo_id: str) -> bool:
        """Delete a memo and all of its enrichment state. Returns True if it existed."""
        self._completion.memo_deleted(memo_id)
        return self._record_store.delete_memo(memo_id)

    def resume_pending(self) -> dict:
        """Restart recovery; see RecordingCompletionHandler.resume_pending()."""
        return self._completion.resume_pending()

    # -------------------------------------------------------------------------
    # Background processing
    # -------------------------------------------------------------------------

    def _require_services(self) -> None:
        if self._title_generator is None or self._analysis_generator is None:
            raise ConfigurationError(
                "No enrichment service configured. Set MEMOKEEP_API_URL or [remote] api_url."
            )

    async def process_pending(self, limit: int = 10) -> dict:
        """
        Run one batch of title jobs, then one batch of distill jobs.

        Returns:
            Dict with one process_pending() result per job kind
        """
        self._require_services()
        return {
            "title": await self._title_runner.process_pending(limit=limit),
            "distill": await self._distill_runner.process_pending(limit=limit),
        }

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run both job runners until `stop` is set."""
        self._require_services()
        stop = stop or asyncio.Event()
        interval = self._config.retry.poll_interval
        await asyncio.gather(
            self._title_runner.run(interval, stop),
            self._distill_runner.run(interval, stop),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the HTTP client (if any) and then the stores."""
        if self._client is not None:
            await self._client.close()
            self._client = None
        self.close()

    def close(self) -> None:
        """
        Close resources (HTTP client, event bus, record store, ops log).

        Inside a running event loop the HTTP client is closed by a task
        scheduled on that loop; prefer aclose() there.
        """
        client = getattr(self, "_client", None)
        if client is not None:
            self._client = None
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(client.close())
            else:
                loop.create_task(client.close())

        if hasattr(self, "_bus"):
            self._bus.close()

        if hasattr(self, "_record_store") and self._record_store is not None:
            self._record_store.close()

        # Remove ops log handler to avoid handler accumulation
        if hasattr(self, "_ops_log_handler") and self._ops_log_handler:
            logging.getLogger("memokeep").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False

    def __del__(self):
        """Cleanup on deletion."""
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection

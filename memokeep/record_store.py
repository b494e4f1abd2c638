"""
Persistent record store using SQLite.

The record store is the single source of truth for:
- Memo records (only the title field is written by the enrichment core)
- Transcription records (one per memo)
- Background job records (one table per job kind, one row per memo)
- Analysis results (many rows per memo and mode; the newest is current)

In-memory caches elsewhere are derived from these tables and can be
rebuilt at any time by reading them back.

Callers (the stores in transcription_state, jobs, analysis_cache) own
their serialization; this class only guards the connection.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .types import Memo, format_utc_timestamp, parse_utc_timestamp, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Job tables are named by kind; only these names are ever interpolated into SQL.
JOB_TABLES = ("title_jobs", "distill_jobs")


@dataclass
class TranscriptionRecord:
    """A persisted transcription row."""
    memo_id: str
    status: str
    text: str
    last_updated: str


@dataclass
class JobRecord:
    """A persisted background job row (shared by all job tables)."""
    memo_id: str
    status: str
    mode: Optional[str]
    created_at: str
    updated_at: str
    retry_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class AnalysisRecord:
    """A persisted analysis result row."""
    memo_id: str
    mode: str
    payload: bytes
    timestamp: str


class RecordStore:
    """
    SQLite-backed store for memo, transcription, job and analysis records.

    One database file holds all tables so that deleting a memo can
    cascade in a single transaction.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access across processes
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS memos (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                created_at TEXT NOT NULL,
                custom_title TEXT,
                duration REAL NOT NULL DEFAULT 0
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS transcriptions (
                memo_id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'notStarted',
                text TEXT NOT NULL DEFAULT '',
                last_updated TEXT NOT NULL
            )
        """)

        for table in JOB_TABLES:
            self._conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    memo_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'queued',
                    mode TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    next_retry_at TEXT,
                    failure_reason TEXT
                )
            """)
            self._conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created
                ON {table}(created_at)
            """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS analysis_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                memo_id TEXT NOT NULL,
                mode TEXT NOT NULL,
                payload BLOB NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_analysis_memo_mode
            ON analysis_results(memo_id, mode, timestamp)
        """)

        self._migrate()
        self._conn.commit()

    def _migrate(self) -> None:
        """Migrate existing databases to current schema."""
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version >= SCHEMA_VERSION:
            return

        if version < 2:
            # Version 1 job tables predate retry backoff and failure classification
            for table in JOB_TABLES:
                cursor = self._conn.execute(f"PRAGMA table_info({table})")
                columns = {row[1] for row in cursor.fetchall()}
                if "next_retry_at" not in columns:
                    self._conn.execute(
                        f"ALTER TABLE {table} ADD COLUMN next_retry_at TEXT"
                    )
                if "failure_reason" not in columns:
                    self._conn.execute(
                        f"ALTER TABLE {table} ADD COLUMN failure_reason TEXT"
                    )

        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.info("Migrated record store %s from v%d to v%d",
                    self._db_path, version, SCHEMA_VERSION)

    @property
    def path(self) -> Path:
        return self._db_path

    # -------------------------------------------------------------------------
    # Memos
    # -------------------------------------------------------------------------

    def upsert_memo(self, memo: Memo) -> None:
        """Insert or replace a memo record."""
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO memos
                (id, filename, created_at, custom_title, duration)
                VALUES (?, ?, ?, ?, ?)
            """, (memo.id, memo.filename, format_utc_timestamp(memo.created_at),
                  memo.custom_title, memo.duration))
            self._conn.commit()

    def get_memo(self, memo_id: str) -> Optional[Memo]:
        """Get a memo by ID, or None."""
        with self._lock:
            row = self._conn.execute("""
                SELECT id, filename, created_at, custom_title, duration
                FROM memos WHERE id = ?
            """, (memo_id,)).fetchone()
        if row is None:
            return None
        return _row_to_memo(row)

    def list_memos(self) -> list[Memo]:
        """All memos, oldest first."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT id, filename, created_at, custom_title, duration
                FROM memos ORDER BY created_at ASC
            """).fetchall()
        return [_row_to_memo(row) for row in rows]

    def rename_memo(self, memo_id: str, title: Optional[str]) -> bool:
        """Set the custom title of a memo. Returns False if the memo is missing."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE memos SET custom_title = ? WHERE id = ?",
                (title, memo_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def delete_memo(self, memo_id: str) -> bool:
        """
        Delete a memo and cascade to every row that references it.

        Returns True if the memo row existed.
        """
        with self._lock:
            try:
                self._conn.execute("DELETE FROM transcriptions WHERE memo_id = ?", (memo_id,))
                for table in JOB_TABLES:
                    self._conn.execute(f"DELETE FROM {table} WHERE memo_id = ?", (memo_id,))
                self._conn.execute("DELETE FROM analysis_results WHERE memo_id = ?", (memo_id,))
                cursor = self._conn.execute("DELETE FROM memos WHERE id = ?", (memo_id,))
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Transcriptions
    # -------------------------------------------------------------------------

    def upsert_transcription(
        self,
        memo_id: str,
        status: str,
        text: Optional[str],
    ) -> TranscriptionRecord:
        """
        Insert or update the transcription row for a memo.

        A None text keeps the previously stored text (so that moving to
        inProgress does not erase an earlier transcript).
        """
        now = format_utc_timestamp(utc_now())
        with self._lock:
            existing = self._conn.execute(
                "SELECT text FROM transcriptions WHERE memo_id = ?", (memo_id,)
            ).fetchone()
            if existing is not None:
                stored_text = text if text is not None else existing["text"]
                self._conn.execute("""
                    UPDATE transcriptions
                    SET status = ?, text = ?, last_updated = ?
                    WHERE memo_id = ?
                """, (status, stored_text, now, memo_id))
            else:
                stored_text = text or ""
                self._conn.execute("""
                    INSERT INTO transcriptions (memo_id, status, text, last_updated)
                    VALUES (?, ?, ?, ?)
                """, (memo_id, status, stored_text, now))
            self._conn.commit()
        return TranscriptionRecord(memo_id, status, stored_text, now)

    def get_transcription(self, memo_id: str) -> Optional[TranscriptionRecord]:
        """Get the transcription row for a memo, or None."""
        with self._lock:
            row = self._conn.execute("""
                SELECT memo_id, status, text, last_updated
                FROM transcriptions WHERE memo_id = ?
            """, (memo_id,)).fetchone()
        if row is None:
            return None
        return TranscriptionRecord(
            row["memo_id"], row["status"], row["text"], row["last_updated"]
        )

    def get_transcriptions(self, memo_ids: list[str]) -> dict[str, TranscriptionRecord]:
        """
        Get transcription rows for many memos in a single query.

        Returns:
            Dict mapping memo_id → TranscriptionRecord (missing IDs omitted)
        """
        if not memo_ids:
            return {}
        placeholders = ",".join("?" * len(memo_ids))
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT memo_id, status, text, last_updated
                FROM transcriptions WHERE memo_id IN ({placeholders})
            """, tuple(memo_ids)).fetchall()
        return {
            row["memo_id"]: TranscriptionRecord(
                row["memo_id"], row["status"], row["text"], row["last_updated"]
            )
            for row in rows
        }

    def delete_transcription(self, memo_id: str) -> bool:
        """Delete the transcription row. Returns True if it existed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM transcriptions WHERE memo_id = ?", (memo_id,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def list_transcriptions(self, status: Optional[str] = None) -> list[TranscriptionRecord]:
        """List transcription rows, optionally filtered by status."""
        with self._lock:
            if status is None:
                rows = self._conn.execute("""
                    SELECT memo_id, status, text, last_updated FROM transcriptions
                """).fetchall()
            else:
                rows = self._conn.execute("""
                    SELECT memo_id, status, text, last_updated FROM transcriptions
                    WHERE status = ?
                """, (status,)).fetchall()
        return [
            TranscriptionRecord(row["memo_id"], row["status"], row["text"], row["last_updated"])
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def upsert_job(self, table: str, record: JobRecord) -> None:
        """
        Insert or update the job row for (table, memo_id).

        The row is updated in place when present, so created_at and the
        row identity survive every status change.
        """
        _check_job_table(table)
        with self._lock:
            cursor = self._conn.execute(f"""
                UPDATE {table}
                SET status = ?, mode = ?, updated_at = ?, retry_count = ?,
                    last_error = ?, next_retry_at = ?, failure_reason = ?
                WHERE memo_id = ?
            """, (record.status, record.mode, record.updated_at, record.retry_count,
                  record.last_error, record.next_retry_at, record.failure_reason,
                  record.memo_id))
            if cursor.rowcount == 0:
                self._conn.execute(f"""
                    INSERT INTO {table}
                    (memo_id, status, mode, created_at, updated_at, retry_count,
                     last_error, next_retry_at, failure_reason)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (record.memo_id, record.status, record.mode, record.created_at,
                      record.updated_at, record.retry_count, record.last_error,
                      record.next_retry_at, record.failure_reason))
            self._conn.commit()

    def list_jobs(self, table: str) -> list[JobRecord]:
        """All job rows of one kind, oldest first."""
        _check_job_table(table)
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT memo_id, status, mode, created_at, updated_at, retry_count,
                       last_error, next_retry_at, failure_reason
                FROM {table}
                ORDER BY created_at ASC, memo_id ASC
            """).fetchall()
        return [_row_to_job(row) for row in rows]

    def get_job(self, table: str, memo_id: str) -> Optional[JobRecord]:
        """Get one job row, or None."""
        _check_job_table(table)
        with self._lock:
            row = self._conn.execute(f"""
                SELECT memo_id, status, mode, created_at, updated_at, retry_count,
                       last_error, next_retry_at, failure_reason
                FROM {table} WHERE memo_id = ?
            """, (memo_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def delete_job(self, table: str, memo_id: str) -> bool:
        """Delete one job row. Returns True if it existed."""
        _check_job_table(table)
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM {table} WHERE memo_id = ?", (memo_id,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Analysis results
    # -------------------------------------------------------------------------

    def insert_analysis(
        self,
        memo_id: str,
        mode: str,
        payload: bytes,
        timestamp: datetime,
    ) -> AnalysisRecord:
        """Append an analysis result row (earlier rows are kept as history)."""
        ts = format_utc_timestamp(timestamp)
        with self._lock:
            self._conn.execute("""
                INSERT INTO analysis_results (memo_id, mode, payload, timestamp)
                VALUES (?, ?, ?, ?)
            """, (memo_id, mode, payload, ts))
            self._conn.commit()
        return AnalysisRecord(memo_id, mode, payload, ts)

    def latest_analysis(self, memo_id: str, mode: str) -> Optional[AnalysisRecord]:
        """The most recent analysis row for (memo_id, mode), or None."""
        with self._lock:
            row = self._conn.execute("""
                SELECT memo_id, mode, payload, timestamp
                FROM analysis_results
                WHERE memo_id = ? AND mode = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
            """, (memo_id, mode)).fetchone()
        if row is None:
            return None
        return AnalysisRecord(row["memo_id"], row["mode"], bytes(row["payload"]), row["timestamp"])

    def has_analysis(self, memo_id: str, mode: str) -> bool:
        """Check if any analysis row exists for (memo_id, mode)."""
        with self._lock:
            row = self._conn.execute("""
                SELECT 1 FROM analysis_results
                WHERE memo_id = ? AND mode = ?
                LIMIT 1
            """, (memo_id, mode)).fetchone()
        return row is not None

    def analysis_modes(self, memo_id: str) -> set[str]:
        """Distinct modes with at least one stored result for a memo."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT DISTINCT mode FROM analysis_results WHERE memo_id = ?
            """, (memo_id,)).fetchall()
        return {row["mode"] for row in rows}

    def analysis_history(self, memo_id: str) -> list[tuple[str, str]]:
        """(mode, timestamp) pairs for a memo, oldest first."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT mode, timestamp FROM analysis_results
                WHERE memo_id = ?
                ORDER BY timestamp ASC, id ASC
            """, (memo_id,)).fetchall()
        return [(row["mode"], row["timestamp"]) for row in rows]

    def delete_analysis(self, memo_id: str, mode: Optional[str] = None) -> int:
        """
        Delete analysis rows for a memo (all modes, or one mode).

        Returns number of rows deleted.
        """
        with self._lock:
            if mode is None:
                cursor = self._conn.execute(
                    "DELETE FROM analysis_results WHERE memo_id = ?", (memo_id,)
                )
            else:
                cursor = self._conn.execute(
                    "DELETE FROM analysis_results WHERE memo_id = ? AND mode = ?",
                    (memo_id, mode),
                )
            self._conn.commit()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()


def _check_job_table(table: str) -> None:
    if table not in JOB_TABLES:
        raise ValueError(f"Unknown job table: {table!r}")


def _row_to_memo(row: sqlite3.Row) -> Memo:
    return Memo(
        id=row["id"],
        filename=row["filename"],
        created_at=parse_utc_timestamp(row["created_at"]),
        custom_title=row["custom_title"],
        duration=row["duration"],
    )


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        memo_id=row["memo_id"],
        status=row["status"],
        mode=row["mode"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        next_retry_at=row["next_retry_at"],
        failure_reason=row["failure_reason"],
    )

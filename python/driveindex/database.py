"""
Database - Shared SQLite connection for every durable table.

Assets, permission snapshots, crawl jobs and the change cursor all live in
one WAL-mode database so a process restart resumes from the same state.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import get_config, EngineConfig
from .errors import StoreError


logger = logging.getLogger(__name__)


SCHEMA = """
    -- Indexed files
    CREATE TABLE IF NOT EXISTS assets (
        file_id TEXT PRIMARY KEY,
        path TEXT NOT NULL,
        name TEXT NOT NULL,
        revision_token TEXT NOT NULL,
        tags TEXT NOT NULL,
        intrinsic_metadata TEXT NOT NULL,
        index_state TEXT NOT NULL,
        confidence TEXT NOT NULL,
        indexed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_assets_path ON assets(path);
    CREATE INDEX IF NOT EXISTS idx_assets_state ON assets(index_state);

    -- Access-control mirror
    CREATE TABLE IF NOT EXISTS permission_snapshots (
        file_id TEXT PRIMARY KEY,
        principals TEXT NOT NULL,
        captured_at TEXT NOT NULL,
        revision_token TEXT
    );

    -- Crawl jobs
    CREATE TABLE IF NOT EXISTS crawl_jobs (
        job_id INTEGER PRIMARY KEY AUTOINCREMENT,
        scope_folder_id TEXT NOT NULL,
        scope_path TEXT,
        kind TEXT NOT NULL,
        state TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        owner TEXT,
        payload TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        heartbeat_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_state ON crawl_jobs(state);
    CREATE INDEX IF NOT EXISTS idx_jobs_scope ON crawl_jobs(scope_folder_id);

    -- Append-only audit trail
    CREATE TABLE IF NOT EXISTS job_transitions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        at TEXT NOT NULL,
        reason TEXT,
        owner TEXT,
        FOREIGN KEY (job_id) REFERENCES crawl_jobs(job_id)
    );

    CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id);

    -- Files observed by a full crawl (tombstone-by-absence)
    CREATE TABLE IF NOT EXISTS crawl_seen (
        job_id INTEGER NOT NULL,
        file_id TEXT NOT NULL,
        PRIMARY KEY (job_id, file_id)
    );

    CREATE TABLE IF NOT EXISTS halted_scopes (
        scope_folder_id TEXT PRIMARY KEY,
        reason TEXT,
        halted_at TEXT NOT NULL
    );

    -- Change stream cursors
    CREATE TABLE IF NOT EXISTS cursors (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
"""


class Database:
    """
    Thin wrapper around one SQLite connection.

    Writers use `transaction()`; a failed write raises StoreError so the
    orchestrator treats it as transient.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.config.db_path),
                check_same_thread=False,
                isolation_level=None,  # explicit BEGIN in transaction()
            )
            self._conn.row_factory = sqlite3.Row
            # Performance optimizations
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA cache_size = -64000")  # 64MB cache
            self._conn.executescript(SCHEMA)
            logger.debug(f"Opened database {self.config.db_path}")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE / COMMIT, rolling back on error."""
        with self._lock:
            conn = self.connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreError(f"cannot start transaction: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StoreError(str(e)) from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def query(self, sql: str, params: tuple = ()) -> list:
        """Run a read query and return all rows."""
        with self._lock:
            try:
                return self.connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

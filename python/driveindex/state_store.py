"""
Crawl State Store - Durable crawl jobs, audit trail and sync cursors.

Claiming is an atomic `queued -> processing` transition with mutual
exclusion between overlapping scopes. A processing job whose owner stops
heartbeating for longer than the liveness window can be reclaimed by
another worker.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .config import get_config, EngineConfig
from .database import Database
from .errors import InvalidTransitionError
from .index import is_under, normalize_scope_path
from .models import (
    ChangeEvent, CrawlJob, JobKind, JobState, JobTransition, TERMINAL_STATES, utcnow,
)


logger = logging.getLogger(__name__)


# Allowed state changes (from → to)
TRANSITIONS: Dict[JobState, Set[JobState]] = {
    JobState.QUEUED: {JobState.PROCESSING, JobState.FAILED},
    JobState.PROCESSING: {JobState.PROCESSING, JobState.DONE, JobState.REVIEW, JobState.FAILED},
    JobState.REVIEW: {JobState.DONE},
    JobState.FAILED: {JobState.QUEUED},
    JobState.DONE: set(),
}


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def scopes_overlap(a: Tuple[str, Optional[str]], b: Tuple[str, Optional[str]]) -> bool:
    """
    True when two (scope_folder_id, scope_path) pairs may cover the same files.

    A scope whose path is not resolved yet (queued full crawls, incremental
    batches) is treated as the whole drive.
    """
    if a[0] == b[0]:
        return True
    if a[1] is None or b[1] is None:
        return True
    path_a, path_b = normalize_scope_path(a[1]), normalize_scope_path(b[1])
    return path_a == path_b or is_under(path_a, path_b) or is_under(path_b, path_a)


class CrawlStateStore:
    """Job queue and bookkeeping backed by the shared database."""

    def __init__(self, db: Database, config: Optional[EngineConfig] = None):
        self.config = config or get_config()
        self._db = db

    # ─────────────────────────────────────────────────────────────
    # Jobs
    # ─────────────────────────────────────────────────────────────

    def enqueue(self, job: CrawlJob) -> CrawlJob:
        """Persist a new job in the queued state and return it with its id."""
        now = utcnow()
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO crawl_jobs (scope_folder_id, scope_path, kind, state, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    job.scope_folder_id,
                    job.scope_path,
                    job.kind.value,
                    JobState.QUEUED.value,
                    json.dumps([e.to_dict() for e in job.payload]),
                    now.isoformat(),
                ),
            )
            job_id = cursor.lastrowid
            self._record(conn, job_id, None, JobState.QUEUED, now, reason=f"enqueued {job.kind.value}")

        logger.info(f"Enqueued {job.kind.value} job {job_id} for scope {job.scope_folder_id}")
        return self.get(job_id)

    def claim(self, worker_id: str, scope: Optional[str] = None) -> Optional[CrawlJob]:
        """
        Claim the oldest runnable job.

        Runnable means queued, or processing with an expired heartbeat
        (stale-lock recovery). Jobs whose scope overlaps a live processing
        job (same folder, ancestor or descendant), or whose scope an
        operator halted, are skipped.
        """
        now = utcnow()
        stale_before = (now - timedelta(seconds=self.config.liveness_window_s)).isoformat()

        with self._db.transaction() as conn:
            busy: List[Tuple[str, Optional[str]]] = [
                (row["scope_folder_id"], row["scope_path"])
                for row in conn.execute(
                    """
                    SELECT scope_folder_id, scope_path FROM crawl_jobs
                    WHERE state = ? AND heartbeat_at >= ?
                    """,
                    (JobState.PROCESSING.value, stale_before),
                )
            ]
            halted = {row[0] for row in conn.execute("SELECT scope_folder_id FROM halted_scopes")}

            sql = """
                SELECT * FROM crawl_jobs
                WHERE (state = ? OR (state = ? AND (heartbeat_at IS NULL OR heartbeat_at < ?)))
            """
            params: list = [JobState.QUEUED.value, JobState.PROCESSING.value, stale_before]
            if scope is not None:
                sql += " AND scope_folder_id = ?"
                params.append(scope)
            sql += " ORDER BY job_id"

            for row in conn.execute(sql, params).fetchall():
                job_scope = (row["scope_folder_id"], row["scope_path"])
                if job_scope[0] in halted:
                    continue
                if any(scopes_overlap(job_scope, other) for other in busy):
                    continue

                previous = JobState(row["state"])
                reason = "claimed"
                if previous is JobState.PROCESSING:
                    reason = f"reclaimed from stale owner {row['owner']}"
                    logger.warning(f"Job {row['job_id']}: {reason}")

                conn.execute(
                    """
                    UPDATE crawl_jobs
                    SET state = ?, owner = ?, attempt_count = attempt_count + 1,
                        started_at = COALESCE(started_at, ?), heartbeat_at = ?
                    WHERE job_id = ?
                    """,
                    (JobState.PROCESSING.value, worker_id, now.isoformat(), now.isoformat(), row["job_id"]),
                )
                self._record(conn, row["job_id"], previous, JobState.PROCESSING, now, reason, worker_id)
                busy.append(job_scope)
                claimed_id = row["job_id"]
                break
            else:
                return None

        return self.get(claimed_id)

    def heartbeat(self, job: CrawlJob) -> None:
        """Report that the job's owner is still alive."""
        now = utcnow()
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE crawl_jobs SET heartbeat_at = ? WHERE job_id = ? AND state = ?",
                (now.isoformat(), job.job_id, JobState.PROCESSING.value),
            )
        job.heartbeat_at = now

    def set_scope_path(self, job: CrawlJob, scope_path: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE crawl_jobs SET scope_path = ? WHERE job_id = ?",
                (scope_path, job.job_id),
            )
        job.scope_path = scope_path

    def complete(self, job: CrawlJob, outcome: JobState, error: Optional[str] = None) -> CrawlJob:
        """Move a processing job to a terminal state."""
        if outcome not in TERMINAL_STATES:
            raise InvalidTransitionError(f"{outcome.value} is not a terminal state")
        return self._transition(
            job.job_id, outcome, reason=error or outcome.value, error=error, expected_owner=job.owner
        )

    def cancel_queued(self, job_id: int) -> CrawlJob:
        """Fail a job that never started."""
        return self._transition(job_id, JobState.FAILED, reason="cancelled", error="cancelled")

    def resolve_review(self, job_id: int, reason: str = "review resolved") -> CrawlJob:
        """Operator closes a job whose taxonomy issues were triaged."""
        return self._transition(job_id, JobState.DONE, reason=reason)

    def requeue(self, job_id: int, reason: str = "requeued by operator") -> CrawlJob:
        """Operator retries a failed job with a fresh attempt budget."""
        return self._transition(job_id, JobState.QUEUED, reason=reason)

    def _transition(
        self,
        job_id: int,
        to_state: JobState,
        reason: Optional[str] = None,
        error: Optional[str] = None,
        expected_owner: Optional[str] = None,
    ) -> CrawlJob:
        now = utcnow()
        with self._db.transaction() as conn:
            row = conn.execute("SELECT state, owner FROM crawl_jobs WHERE job_id = ?", (job_id,)).fetchone()
            if row is None:
                raise InvalidTransitionError(f"unknown job {job_id}")
            if expected_owner is not None and row["owner"] != expected_owner:
                raise InvalidTransitionError(
                    f"job {job_id} is owned by {row['owner']}, not {expected_owner}"
                )
            from_state = JobState(row["state"])
            if to_state not in TRANSITIONS[from_state]:
                raise InvalidTransitionError(
                    f"job {job_id}: {from_state.value} -> {to_state.value} not allowed"
                )

            completed_at = now.isoformat() if to_state in TERMINAL_STATES else None
            if to_state is JobState.QUEUED:
                conn.execute(
                    """
                    UPDATE crawl_jobs SET state = ?, owner = NULL, heartbeat_at = NULL,
                        started_at = NULL, completed_at = NULL, last_error = NULL,
                        attempt_count = 0
                    WHERE job_id = ?
                    """,
                    (to_state.value, job_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE crawl_jobs SET state = ?, completed_at = ?,
                        last_error = COALESCE(?, last_error)
                    WHERE job_id = ?
                    """,
                    (to_state.value, completed_at, error, job_id),
                )
            self._record(conn, job_id, from_state, to_state, now, reason, row["owner"])

        logger.info(f"Job {job_id}: {from_state.value} -> {to_state.value}" + (f" ({reason})" if reason else ""))
        return self.get(job_id)

    def _record(
        self,
        conn: sqlite3.Connection,
        job_id: int,
        from_state: Optional[JobState],
        to_state: JobState,
        at: datetime,
        reason: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO job_transitions (job_id, from_state, to_state, at, reason, owner)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state.value if from_state else None, to_state.value, at.isoformat(), reason, owner),
        )

    # ─────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────

    def get(self, job_id: int) -> Optional[CrawlJob]:
        rows = self._db.query("SELECT * FROM crawl_jobs WHERE job_id = ?", (job_id,))
        return self._to_job(rows[0]) if rows else None

    def list_by_state(self, state: JobState) -> List[CrawlJob]:
        rows = self._db.query(
            "SELECT * FROM crawl_jobs WHERE state = ? ORDER BY job_id", (state.value,)
        )
        return [self._to_job(r) for r in rows]

    def latest_for_scope(self, scope: str) -> Optional[CrawlJob]:
        rows = self._db.query(
            "SELECT * FROM crawl_jobs WHERE scope_folder_id = ? ORDER BY job_id DESC LIMIT 1",
            (scope,),
        )
        return self._to_job(rows[0]) if rows else None

    def latest_full_for_scope(self, scope: str) -> Optional[CrawlJob]:
        rows = self._db.query(
            """
            SELECT * FROM crawl_jobs WHERE scope_folder_id = ? AND kind = ?
            ORDER BY job_id DESC LIMIT 1
            """,
            (scope, JobKind.FULL.value),
        )
        return self._to_job(rows[0]) if rows else None

    def transitions(self, job_id: int) -> List[JobTransition]:
        rows = self._db.query(
            "SELECT * FROM job_transitions WHERE job_id = ? ORDER BY id", (job_id,)
        )
        return [
            JobTransition(
                job_id=r["job_id"],
                from_state=JobState(r["from_state"]) if r["from_state"] else None,
                to_state=JobState(r["to_state"]),
                at=datetime.fromisoformat(r["at"]),
                reason=r["reason"],
                owner=r["owner"],
            )
            for r in rows
        ]

    def _to_job(self, row: sqlite3.Row) -> CrawlJob:
        return CrawlJob(
            job_id=row["job_id"],
            scope_folder_id=row["scope_folder_id"],
            scope_path=row["scope_path"],
            kind=JobKind(row["kind"]),
            state=JobState(row["state"]),
            attempt_count=row["attempt_count"],
            last_error=row["last_error"],
            owner=row["owner"],
            payload=[ChangeEvent.from_dict(d) for d in json.loads(row["payload"] or "[]")],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            heartbeat_at=_dt(row["heartbeat_at"]),
        )

    # ─────────────────────────────────────────────────────────────
    # Scope halts
    # ─────────────────────────────────────────────────────────────

    def halt_scope(self, scope: str, reason: str) -> None:
        """Stop handing out jobs for a scope until an operator resumes it."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO halted_scopes (scope_folder_id, reason, halted_at) VALUES (?, ?, ?)
                ON CONFLICT(scope_folder_id) DO UPDATE SET reason = excluded.reason
                """,
                (scope, reason, utcnow().isoformat()),
            )
        logger.critical(f"Halted scope {scope}: {reason}")

    def resume_scope(self, scope: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM halted_scopes WHERE scope_folder_id = ?", (scope,))
        logger.info(f"Resumed scope {scope}")

    def is_halted(self, scope: str) -> bool:
        return bool(self._db.query("SELECT 1 FROM halted_scopes WHERE scope_folder_id = ?", (scope,)))

    # ─────────────────────────────────────────────────────────────
    # Seen sets (tombstone-by-absence)
    # ─────────────────────────────────────────────────────────────

    def mark_seen(self, job: CrawlJob, file_ids: Iterable[str]) -> None:
        with self._db.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO crawl_seen (job_id, file_id) VALUES (?, ?)",
                [(job.job_id, fid) for fid in file_ids],
            )

    def seen_ids(self, job: CrawlJob) -> Set[str]:
        rows = self._db.query("SELECT file_id FROM crawl_seen WHERE job_id = ?", (job.job_id,))
        return {r[0] for r in rows}

    def clear_seen(self, job: CrawlJob) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM crawl_seen WHERE job_id = ?", (job.job_id,))

    # ─────────────────────────────────────────────────────────────
    # Change cursors
    # ─────────────────────────────────────────────────────────────

    def get_cursor(self, name: str) -> Optional[str]:
        rows = self._db.query("SELECT value FROM cursors WHERE name = ?", (name,))
        return rows[0][0] if rows else None

    def set_cursor(self, name: str, value: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO cursors (name, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (name, value, utcnow().isoformat()),
            )

"""
Orchestrator - Main entry point for the crawl & index engine.

Turns "file observed" events into indexed, permissioned Assets:

    Enumerate (full) / Change batch (incremental)
        → Idempotence filter (revision token)
        → Fetch metadata + permissions (rate limited, retried)
        → Parse path taxonomy
        → Permission Mirror upsert → Search Index upsert

and drives each CrawlJob through queued → processing → {done | review | failed}.
"""

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from .alerts import AlertSink
from .backoff import RetryPolicy, retry_transient
from .config import get_config, EngineConfig, set_config
from .connector import DriveConnector
from .database import Database
from .errors import (
    ConnectorAuthError, CrawlCancelled, ErrorAction, FileGoneError, InvalidTransitionError,
    RateLimitedError, RetryExhaustedError, StoreError, handle_error,
)
from .index import SearchIndex, normalize_scope_path
from .models import (
    Asset, ChangeEvent, ChangeType, Confidence, CrawlJob, CrawlStats, CrawlStatus,
    DriveEntry, FileMetadata, IndexState, JobKind, JobState, is_newer_revision, utcnow,
)
from .permissions import PermissionMirror
from .ratelimit import TokenBucket
from .search import SearchService
from .state_store import CrawlStateStore
from .taxonomy import TaxonomyParser


logger = logging.getLogger(__name__)

T = TypeVar("T")

SEEN_FLUSH_SIZE = 500


@dataclass
class _JobRun:
    """Mutable bookkeeping for one executing job."""
    job: CrawlJob
    stats: CrawlStats = field(default_factory=CrawlStats)
    failures: Dict[str, str] = field(default_factory=dict)
    fatal: Optional[BaseException] = None
    cancelled: bool = False

    def record_failure(self, file_id: str, error: BaseException) -> None:
        self.failures[file_id] = str(error)
        self.stats.errors += 1


def coalesce_events(events: Iterable[ChangeEvent]) -> List[ChangeEvent]:
    """
    Keep the newest event per file.

    Order across files is irrelevant; within one file only the highest
    revision survives (the later event wins a tie).
    """
    newest: Dict[str, ChangeEvent] = {}
    for event in events:
        current = newest.get(event.file_id)
        if current is None or not is_newer_revision(current.revision_token, event.revision_token):
            newest[event.file_id] = event
    return list(newest.values())


class Orchestrator:
    """
    Main orchestrator for the crawl & index engine.

    Owns the stores, the shared outbound budget and the worker pool. Each
    worker claims one CrawlJob at a time through the state store, which
    guarantees at most one processing job per scope.
    """

    def __init__(
        self,
        connector: DriveConnector,
        config: Optional[EngineConfig] = None,
        db: Optional[Database] = None,
        alerts: Optional[AlertSink] = None,
    ):
        self.config = config or get_config()
        if config:
            set_config(config)

        self.connector = connector
        self._db = db or Database(self.config)
        self.mirror = PermissionMirror(self._db, self.config)
        self.index = SearchIndex(self._db, self.mirror, self.config)
        self.store = CrawlStateStore(self._db, self.config)
        self.search_service = SearchService(self.index, connector, self.config)
        self.parser = TaxonomyParser(anchor=self.config.taxonomy_anchor)
        self.alerts = alerts or AlertSink()

        self._bucket = TokenBucket(config=self.config)
        self._retry = RetryPolicy.from_config(self.config)
        self._cancel_requests: Set[int] = set()

    # ═══════════════════════════════════════════════════════════════════
    # Scheduling
    # ═══════════════════════════════════════════════════════════════════

    def schedule_full_crawl(self, scope: Optional[str] = None) -> CrawlJob:
        """Queue a full crawl of a folder subtree (default: configured root)."""
        return self.store.enqueue(CrawlJob(
            scope_folder_id=scope or self.config.root_folder_id,
            kind=JobKind.FULL,
        ))

    def schedule_incremental(
        self,
        events: List[ChangeEvent],
        scope: Optional[str] = None,
    ) -> CrawlJob:
        """Queue a bounded batch of change events as one durable job."""
        return self.store.enqueue(CrawlJob(
            scope_folder_id=scope or self.config.root_folder_id,
            kind=JobKind.INCREMENTAL,
            payload=list(events),
        ))

    def cancel(self, job_id: int) -> None:
        """
        Cancel a job.

        A queued job fails immediately. A processing job finishes its
        in-flight files, schedules no further enumeration and ends failed.
        """
        job = self.store.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.state is JobState.QUEUED:
            self.store.cancel_queued(job_id)
        elif job.state is JobState.PROCESSING:
            self._cancel_requests.add(job_id)
            logger.info(f"Cancellation requested for job {job_id}")

    def _is_cancelled(self, run: _JobRun) -> bool:
        if run.job.job_id in self._cancel_requests:
            run.cancelled = True
        return run.cancelled

    # ═══════════════════════════════════════════════════════════════════
    # Workers
    # ═══════════════════════════════════════════════════════════════════

    async def run_workers(
        self,
        stop_event: asyncio.Event,
        worker_count: Optional[int] = None,
    ) -> None:
        """Run the bounded worker pool until `stop_event` is set."""
        count = worker_count or self.config.worker_count
        logger.info(f"Starting {count} crawl workers")
        await asyncio.gather(*(
            self._worker_loop(f"{os.getpid()}-worker-{i}", stop_event)
            for i in range(count)
        ))
        logger.info("Crawl workers stopped")

    async def _worker_loop(self, worker_id: str, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            job = self.store.claim(worker_id)
            if job is None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.poll_interval_s)
                except asyncio.TimeoutError:
                    pass
                continue
            await self.execute(job)

    async def run_pending(self, worker_id: str = "inline") -> List[CrawlJob]:
        """Claim and execute jobs until none is runnable. Returns finished jobs."""
        finished: List[CrawlJob] = []
        while True:
            job = self.store.claim(worker_id)
            if job is None:
                return finished
            finished.append(await self.execute(job))

    async def crawl(self, scope: Optional[str] = None) -> CrawlJob:
        """Schedule and run a full crawl inline."""
        job = self.schedule_full_crawl(scope)
        await self.run_pending()
        return self.store.get(job.job_id)

    # ═══════════════════════════════════════════════════════════════════
    # Job execution
    # ═══════════════════════════════════════════════════════════════════

    async def execute(self, job: CrawlJob) -> CrawlJob:
        """Run a claimed job to a terminal state."""
        run = _JobRun(job=job)
        start_time = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat_loop(job))
        outcome = JobState.DONE
        error: Optional[str] = None

        logger.info(
            f"Job {job.job_id}: {job.kind.value} crawl of {job.scope_folder_id} "
            f"(attempt {job.attempt_count})"
        )

        try:
            if job.attempt_count > self.config.retry_max_attempts:
                raise RetryExhaustedError(f"job {job.job_id}", job.attempt_count - 1, RuntimeError("owner lost"))
            if job.kind is JobKind.FULL:
                await self.run_full_crawl(run)
            else:
                await self.run_incremental(run)
            if run.fatal is not None:
                raise run.fatal
        except CrawlCancelled:
            outcome, error = JobState.FAILED, "cancelled"
        except ConnectorAuthError as e:
            outcome, error = JobState.FAILED, f"authorization failure: {e}"
            self.store.halt_scope(job.scope_folder_id, str(e))
            self.alerts.raise_alert(job.scope_folder_id, error, level=logging.CRITICAL, job_id=job.job_id)
        except RetryExhaustedError as e:
            outcome, error = JobState.FAILED, str(e)
            self.alerts.raise_alert(job.scope_folder_id, error, job_id=job.job_id)
        except Exception as e:
            handle_error(e, context=f"job {job.job_id}")
            outcome, error = JobState.FAILED, f"{type(e).__name__}: {e}"
            self.alerts.raise_alert(job.scope_folder_id, error, job_id=job.job_id)
        else:
            if run.failures:
                first_id, first_error = next(iter(run.failures.items()))
                outcome = JobState.FAILED
                error = f"{len(run.failures)} files could not be indexed (first: {first_id}: {first_error})"
                self.alerts.raise_alert(job.scope_folder_id, error, job_id=job.job_id)
            elif run.stats.files_needs_review:
                outcome = JobState.REVIEW
        finally:
            heartbeat.cancel()
            self._cancel_requests.discard(job.job_id)

        run.stats.duration_seconds = time.monotonic() - start_time
        logger.info(f"Job {job.job_id} finished {outcome.value}: {run.stats}")

        if job.kind is JobKind.FULL:
            self.store.clear_seen(job)
        try:
            return self.store.complete(job, outcome, error)
        except InvalidTransitionError as e:
            # Another worker reclaimed the job while this one was stalled
            logger.warning(f"Job {job.job_id}: result discarded: {e}")
            return self.store.get(job.job_id)

    async def _heartbeat_loop(self, job: CrawlJob) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_s)
            try:
                self.store.heartbeat(job)
            except StoreError as e:
                logger.warning(f"Job {job.job_id}: heartbeat not recorded: {e}")

    # ═══════════════════════════════════════════════════════════════════
    # Full crawl
    # ═══════════════════════════════════════════════════════════════════

    async def run_full_crawl(self, run: _JobRun) -> CrawlStats:
        """
        Enumerate the scope transitively and observe every file.

        Assets under the scope that were not observed are tombstoned, but
        only when the enumeration ran to completion.
        """
        job = run.job
        stats = run.stats

        if not job.scope_path:
            scope_meta = await self._call(
                f"resolve scope {job.scope_folder_id}",
                lambda: self.connector.get_file_metadata(job.scope_folder_id),
            )
            self.store.set_scope_path(job, normalize_scope_path(scope_meta.path))

        # A reclaimed job keeps the files its previous owner already saw
        seen: Set[str] = self.store.seen_ids(job)
        unflushed: List[str] = []
        semaphore = asyncio.Semaphore(self.config.file_concurrency)
        in_flight: Set[asyncio.Task] = set()
        folders = deque([job.scope_folder_id])

        phase_start = time.monotonic()
        logger.info(f"Job {job.job_id}: enumerating {job.scope_path}")

        try:
            while folders and not self._is_cancelled(run) and run.fatal is None:
                folder_id = folders.popleft()
                try:
                    entries = await self._list_folder(folder_id)
                except FileGoneError:
                    if folder_id == job.scope_folder_id:
                        raise
                    # Deleted after its parent was listed; its files fall to tombstoning
                    logger.info(f"Job {job.job_id}: folder {folder_id} vanished during enumeration")
                    stats.folders_gone += 1
                    continue

                for entry in entries:
                    if entry.is_folder:
                        folders.append(entry.file_id)
                        continue
                    if self._is_cancelled(run) or run.fatal is not None:
                        break

                    stats.files_seen += 1
                    if entry.file_id not in seen:
                        seen.add(entry.file_id)
                        unflushed.append(entry.file_id)
                    if len(unflushed) >= SEEN_FLUSH_SIZE:
                        self.store.mark_seen(job, unflushed)
                        unflushed = []

                    await semaphore.acquire()
                    task = asyncio.create_task(self._observe_guarded(entry, run))
                    in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
                    task.add_done_callback(lambda _t: semaphore.release())
        finally:
            # In-flight files always complete, even on cancel or failure
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            if unflushed:
                self.store.mark_seen(job, unflushed)

        logger.info(
            f"Job {job.job_id}: enumeration finished, {stats.files_seen} files "
            f"in {time.monotonic() - phase_start:.1f}s"
        )

        if run.fatal is not None:
            logger.info(f"Job {job.job_id}: skipping tombstones (crawl incomplete)")
            return stats
        if run.cancelled:
            logger.info(f"Job {job.job_id}: cancelled, skipping tombstones")
            raise CrawlCancelled(job.job_id)

        # Assets written after this job started came from a newer observation
        previously_indexed = self.index.ids_under(job.scope_path, indexed_before=job.started_at)
        absent = previously_indexed - seen
        for file_id in absent:
            if self.index.remove(file_id):
                stats.files_tombstoned += 1
        if absent:
            logger.info(f"Job {job.job_id}: tombstoned {stats.files_tombstoned} files no longer present")

        return stats

    async def _list_folder(self, folder_id: str) -> List[DriveEntry]:
        async def list_all() -> List[DriveEntry]:
            return [entry async for entry in self.connector.list_folder(folder_id)]

        return await self._call(f"list folder {folder_id}", list_all)

    # ═══════════════════════════════════════════════════════════════════
    # Incremental crawl
    # ═══════════════════════════════════════════════════════════════════

    async def run_incremental(self, run: _JobRun) -> CrawlStats:
        """Apply a batch of change events without enumerating the subtree."""
        events = coalesce_events(run.job.payload)
        semaphore = asyncio.Semaphore(self.config.file_concurrency)

        async def apply(event: ChangeEvent) -> None:
            async with semaphore:
                if self._is_cancelled(run) or run.fatal is not None:
                    return
                run.stats.files_seen += 1
                if event.change_type is ChangeType.REMOVED:
                    if self.index.remove(event.file_id, event.revision_token):
                        run.stats.files_removed += 1
                    else:
                        run.stats.files_unchanged += 1
                    return
                await self._observe_event_guarded(event, run)

        await asyncio.gather(*(apply(e) for e in events))
        if run.cancelled:
            raise CrawlCancelled(run.job.job_id)
        return run.stats

    async def _observe_event_guarded(self, event: ChangeEvent, run: _JobRun) -> None:
        try:
            if self._is_unchanged(event.file_id, event.revision_token):
                run.stats.files_unchanged += 1
                return
            try:
                metadata = await self._call(
                    f"metadata {event.file_id}",
                    lambda: self.connector.get_file_metadata(event.file_id),
                )
            except FileGoneError:
                # Modified at the source, gone by the time we looked
                if self.index.remove(event.file_id):
                    run.stats.files_removed += 1
                return
            await self.observe(metadata.to_entry(), run, metadata=metadata)
        except Exception as e:
            self._contain(e, event.file_id, run)

    # ═══════════════════════════════════════════════════════════════════
    # Per-file observation
    # ═══════════════════════════════════════════════════════════════════

    async def _observe_guarded(self, entry: DriveEntry, run: _JobRun) -> None:
        try:
            await self.observe(entry, run)
        except Exception as e:
            self._contain(e, entry.file_id, run)

    def _contain(self, error: Exception, file_id: str, run: _JobRun) -> None:
        """Keep a per-file failure inside that file unless it must escalate."""
        action = handle_error(error, file_id, f"job {run.job.job_id}")
        if action in (ErrorAction.ESCALATE, ErrorAction.ABORT):
            if run.fatal is None:
                run.fatal = error
            return
        if isinstance(error, FileGoneError):
            return
        run.record_failure(file_id, error)

    def _is_unchanged(self, file_id: str, revision_token: str) -> bool:
        stored = self.index.get(file_id)
        if stored is None or is_newer_revision(revision_token, stored.revision_token):
            return False
        # Same revision of a tombstoned file: the file came back into view
        if stored.index_state is IndexState.DELETED and revision_token == stored.revision_token:
            return False
        logger.debug(f"Skipping {file_id}@{revision_token}: stored {stored.revision_token}")
        return True

    async def observe(
        self,
        entry: DriveEntry,
        run: _JobRun,
        metadata: Optional[FileMetadata] = None,
    ) -> Optional[Asset]:
        """
        Observe one file and write it to the mirror and the index.

        Returns the stored Asset, or None when the observation was a no-op.
        """
        stats = run.stats
        if self._is_unchanged(entry.file_id, entry.revision_token):
            stats.files_unchanged += 1
            return None

        try:
            if metadata is None:
                metadata = await self._call(
                    f"metadata {entry.file_id}",
                    lambda: self.connector.get_file_metadata(entry.file_id),
                )
            principals = await self._call(
                f"permissions {entry.file_id}",
                lambda: self.connector.get_permissions(entry.file_id),
            )
        except (FileGoneError, ConnectorAuthError):
            raise
        except Exception:
            # The source moved on but its ACL could not be captured
            self.mirror.invalidate(entry.file_id)
            raise

        parsed = self.parser.parse(entry.path, entry.mime_type or metadata.mime_type)
        needs_review = parsed.confidence is Confidence.UNSTRUCTURED
        asset = Asset(
            file_id=entry.file_id,
            path=entry.path,
            name=entry.name,
            revision_token=entry.revision_token,
            tags=parsed.tags,
            intrinsic_metadata=metadata.intrinsic(),
            index_state=IndexState.NEEDS_REVIEW if needs_review else IndexState.INDEXED,
            confidence=parsed.confidence,
            indexed_at=utcnow(),
        )

        # Permissions first: the snapshot is never older than the asset
        async def write() -> bool:
            self.mirror.upsert(entry.file_id, principals, entry.revision_token)
            return self.index.upsert(asset)

        changed = await retry_transient(write, self._retry, f"write {entry.file_id}")
        if not changed:
            stats.files_unchanged += 1
            return None

        stats.files_indexed += 1
        if needs_review:
            stats.files_needs_review += 1
            logger.info(f"Unstructured path needs review: {entry.path}")
        return asset

    async def _call(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Rate-limited, retried call to the connector."""
        async def attempt() -> T:
            await self._bucket.acquire()
            try:
                return await operation()
            except RateLimitedError as e:
                self._bucket.penalize(e.retry_after or self._retry.base_delay_s)
                raise

        return await retry_transient(attempt, self._retry, description)

    # ═══════════════════════════════════════════════════════════════════
    # Status
    # ═══════════════════════════════════════════════════════════════════

    def crawl_status(self, scope: Optional[str] = None) -> CrawlStatus:
        """Dashboard view: latest job state, servable asset count, last error."""
        scope = scope or self.config.root_folder_id
        latest = self.store.latest_for_scope(scope)
        full = self.store.latest_full_for_scope(scope)
        scope_path = full.scope_path if full else None

        last_error = latest.last_error if latest else None
        if self.store.is_halted(scope):
            last_error = last_error or "scope halted"

        return CrawlStatus(
            scope_folder_id=scope,
            state=latest.state if latest else None,
            asset_count=self.index.count_under(scope_path) if scope_path else 0,
            last_error=last_error,
        )

    def close(self):
        """Clean up resources."""
        self._db.close()


async def run_full_crawl(
    connector: DriveConnector,
    scope: Optional[str] = None,
    config: Optional[EngineConfig] = None,
) -> CrawlJob:
    """
    Convenience function to run one full crawl.

    Usage:
        job = await run_full_crawl(LocalDriveConnector(Path("~/Drive")))
        print(job.state)
    """
    orchestrator = Orchestrator(connector, config)
    try:
        return await orchestrator.crawl(scope)
    finally:
        orchestrator.close()

"""
Change Ingestor - Source change stream to deduplicated crawl jobs.

The source delivers at-least-once, possibly out of order, possibly twice.
The ingestor drops exact repeats of (fileId, revisionToken), keeps only the
newest revision per file within a batch, and hands each batch to the
orchestrator as a durable incremental job. The stream cursor is persisted
only after the batch is enqueued, so a restart may redeliver but never
skips a change.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Dict, List, Optional

import xxhash

from .backoff import RetryPolicy
from .config import get_config, EngineConfig
from .errors import ConnectorAuthError, RetryExhaustedError, TransientError
from .models import ChangeEvent, CrawlJob, is_newer_revision


logger = logging.getLogger(__name__)


CURSOR_NAME = "changes"

_STREAM_END = object()


def dedup_key(file_id: str, revision_token: str) -> int:
    """64-bit digest of the deduplication key."""
    return xxhash.xxh64_intdigest(f"{file_id}\x1f{revision_token}".encode("utf-8"))


class ChangeIngestor:
    """
    Single logical consumer of the source change stream.

    Changes are debounced: a batch is flushed when it reaches
    `ingest_batch_size` events or `ingest_flush_ms` after its first event.
    """

    def __init__(self, orchestrator, config: Optional[EngineConfig] = None, cursor_name: str = CURSOR_NAME):
        self.config = config or orchestrator.config or get_config()
        self._orchestrator = orchestrator
        self._connector = orchestrator.connector
        self._store = orchestrator.store
        self.cursor_name = cursor_name

        self._recent: "OrderedDict[int, None]" = OrderedDict()
        self._pending: Dict[str, ChangeEvent] = {}
        self._pending_cursor: Optional[str] = None
        self._first_pending_at: Optional[float] = None
        self.duplicates_dropped = 0

    # ─────────────────────────────────────────────────────────────
    # Batching
    # ─────────────────────────────────────────────────────────────

    def accept(self, event: ChangeEvent, cursor: Optional[str] = None) -> bool:
        """
        Add one delivered event to the pending batch.

        Returns False when the event is a duplicate or is superseded by a
        newer pending revision of the same file.
        """
        if cursor is not None:
            self._pending_cursor = cursor

        key = dedup_key(event.file_id, event.revision_token)
        if key in self._recent:
            self._recent.move_to_end(key)
            self.duplicates_dropped += 1
            logger.debug(f"Duplicate change {event.file_id}@{event.revision_token}")
            return False
        self._remember(key)

        current = self._pending.get(event.file_id)
        if current is not None and is_newer_revision(current.revision_token, event.revision_token):
            logger.debug(
                f"Out-of-order change {event.file_id}@{event.revision_token} "
                f"(pending {current.revision_token})"
            )
            return False

        self._pending[event.file_id] = event
        if self._first_pending_at is None:
            self._first_pending_at = time.monotonic()
        return True

    def _remember(self, key: int) -> None:
        self._recent[key] = None
        while len(self._recent) > self.config.dedup_cache_size:
            self._recent.popitem(last=False)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def should_flush(self) -> bool:
        if not self._pending:
            return False
        if len(self._pending) >= self.config.ingest_batch_size:
            return True
        waited = time.monotonic() - (self._first_pending_at or time.monotonic())
        return waited >= self.config.ingest_flush_s

    def flush(self) -> Optional[CrawlJob]:
        """
        Enqueue pending changes as an incremental job, then persist the cursor.

        A batch of only duplicates still advances the cursor.
        """
        job = None
        if self._pending:
            events = list(self._pending.values())
            job = self._orchestrator.schedule_incremental(events)
            logger.info(f"Queued {len(events)} changes as job {job.job_id}")
            self._pending.clear()
            self._first_pending_at = None

        if self._pending_cursor is not None:
            self._store.set_cursor(self.cursor_name, self._pending_cursor)
        return job

    # ─────────────────────────────────────────────────────────────
    # Stream consumption
    # ─────────────────────────────────────────────────────────────

    @property
    def cursor(self) -> Optional[str]:
        return self._store.get_cursor(self.cursor_name)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Consume the change stream until it ends or `stop_event` is set.

        Transient stream failures reconnect from the last persisted cursor
        with bounded backoff; exhausting the budget raises an alert and
        re-raises. An authorization failure halts the root scope, raises a
        critical alert and propagates.
        """
        stop_event = stop_event or asyncio.Event()
        policy = RetryPolicy.from_config(self.config)
        failures = 0

        while not stop_event.is_set():
            try:
                finished = await self._consume(stop_event)
                failures = 0
                if finished:
                    return
            except ConnectorAuthError as e:
                self.discard_pending()
                scope = self.config.root_folder_id
                message = f"change stream authorization failure: {e}"
                self._orchestrator.store.halt_scope(scope, message)
                self._orchestrator.alerts.raise_alert(scope, message, level=logging.CRITICAL)
                raise
            except TransientError as e:
                # Anything not yet flushed is redelivered from the stored cursor
                self.discard_pending()
                failures += 1
                if failures >= policy.max_attempts:
                    exhausted = RetryExhaustedError("change stream", failures, e)
                    self._orchestrator.alerts.raise_alert(
                        self.config.root_folder_id, str(exhausted), level=logging.CRITICAL
                    )
                    raise exhausted from e
                delay = policy.delay(failures)
                logger.warning(f"Change stream interrupted: {e}; reconnecting in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def _consume(self, stop_event: asyncio.Event) -> bool:
        """Read one subscription. Returns True if the stream ended cleanly."""
        cursor = self.cursor
        logger.info(f"Subscribing to changes from cursor {cursor!r}")

        queue: asyncio.Queue = asyncio.Queue()

        async def pump() -> None:
            try:
                async for item in self._connector.subscribe_changes(cursor):
                    await queue.put(item)
                await queue.put(_STREAM_END)
            except Exception as e:
                await queue.put(e)

        reader = asyncio.create_task(pump())
        try:
            while not stop_event.is_set():
                timeout = self._time_to_flush()
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    if self.should_flush():
                        self.flush()
                    continue

                if item is _STREAM_END:
                    self.flush()
                    return True
                if isinstance(item, Exception):
                    raise item

                next_cursor, event = item
                self.accept(event, next_cursor)
                if self.should_flush():
                    self.flush()

            self.flush()
            return True
        finally:
            reader.cancel()

    def _time_to_flush(self) -> float:
        if self._first_pending_at is None:
            return self.config.ingest_flush_s
        waited = time.monotonic() - self._first_pending_at
        return max(0.0, self.config.ingest_flush_s - waited)

    def pending_events(self) -> List[ChangeEvent]:
        return list(self._pending.values())

    def discard_pending(self) -> None:
        """Drop the unflushed batch so its redelivery is not treated as duplicate."""
        for event in self._pending.values():
            self._recent.pop(dedup_key(event.file_id, event.revision_token), None)
        self._pending.clear()
        self._pending_cursor = None
        self._first_pending_at = None

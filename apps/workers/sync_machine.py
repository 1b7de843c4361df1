from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from apps.workers import metrics
from apps.workers.sync_state import SyncEvent, SyncState, transition
from connectors.base import Ack, CursorStore, TagSink
from connectors.sql.exceptions import PermanentFetchError, SchemaMismatch, StaleCursor, SyncError
from connectors.sql.fetcher import BatchFetcher
from connectors.sql.mapper import TagMapper, summarize
from connectors.sql.models import Batch, Cursor, QuerySpec, SchemaDescriptor, Watermark, encode_watermark
from connectors.sql.prober import SchemaCache, SchemaProber
from core.config import settings
from core.logging import log_event, set_query_name

logger = logging.getLogger(__name__)

REFRESH_SUFFIX = "#refresh"

Slot = Callable[[], Any]


@asynccontextmanager
async def _no_slot() -> AsyncIterator[None]:
    yield


def backoff_delay(attempt: int, initial: float, maximum: float) -> float:
    return min(maximum, initial * 2 ** max(attempt - 1, 0))


def _advances(previous: Optional[Watermark], watermark: Optional[Watermark]) -> bool:
    """False only for a page that ends on the watermark it started from.

    Keys are ordered by the database (collation included), never compared in Python.
    """
    if watermark is None:
        return False
    if previous is None:
        return True
    return tuple(watermark) != tuple(previous)


class _Failure(Exception):
    def __init__(self, message: str, retryable: bool, kind: str) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.kind = kind


class QuerySyncMachine:
    """Explicit per-query sync state machine.

    Each call to :meth:`step` performs the work of the current state once and
    applies the resulting event. :meth:`run_cycle` drives steps until the
    query is caught up, disabled or asked to stop. The in-flight batch is kept
    across backoff so a retried push sends exactly the same records, and the
    cursor only moves after upstream acknowledged the batch.
    """

    def __init__(
        self,
        query: QuerySpec,
        *,
        prober: SchemaProber,
        fetcher: BatchFetcher,
        cursor_store: CursorStore,
        sink: TagSink,
        schema_cache: Optional[SchemaCache] = None,
        initial_backoff_seconds: float = settings.initial_backoff_seconds,
        max_backoff_seconds: float = settings.max_backoff_seconds,
        stop_event: Optional[asyncio.Event] = None,
        slot: Optional[Slot] = None,
    ) -> None:
        self.query = query
        self.state = SyncState.IDLE
        self.schema: Optional[SchemaDescriptor] = None
        self.cursor: Optional[Cursor] = None
        self.batch: Optional[Batch] = None
        self.attempt = 0
        self.resume_state: Optional[SyncState] = None
        self.last_error: Optional[str] = None
        self.last_event: Optional[SyncEvent] = None

        self._prober = prober
        self._fetcher = fetcher
        self._cursor_store = cursor_store
        self._sink = sink
        self._schema_cache = schema_cache if schema_cache is not None else SchemaCache()
        self._mapper = TagMapper(query)
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._stop_event = stop_event or asyncio.Event()
        self._slot = slot or _no_slot
        self._cursor_loaded = False
        self._reprobed = False
        self._handlers: Dict[SyncState, Callable[[], Awaitable[SyncEvent]]] = {
            SyncState.IDLE: self._idle,
            SyncState.PROBING: self._probe,
            SyncState.FETCHING: self._fetch,
            SyncState.PUSHING: self._push,
            SyncState.COMMITTING: self._commit,
        }

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def status(self) -> Dict[str, Any]:
        return {
            "query": self.query.name,
            "state": self.state.value,
            "attempt": self.attempt,
            "pending": len(self.batch) if self.batch else 0,
            "watermark": encode_watermark(self.cursor.last_seen_key) if self.cursor else None,
            "last_error": self.last_error,
        }

    def reenable(self) -> None:
        if self.state is not SyncState.DISABLED:
            return
        self._schema_cache.invalidate(self.query.name)
        self._reset_in_flight()
        self._apply(SyncEvent.REENABLE)
        metrics.QUERY_DISABLED.labels(query=self.query.name).set(0)

    async def run_cycle(self) -> SyncState:
        """Drain the query: sync batches until caught up, disabled or stopped."""
        set_query_name(self.query.name)
        started = time.perf_counter()
        try:
            while not self.stopped:
                if self.state is SyncState.DISABLED:
                    break
                if self.state is SyncState.BACKOFF:
                    if not await self._wait_backoff():
                        break
                    continue
                async with self._slot():
                    await self.step()
                if self.state is SyncState.IDLE and self.last_event is SyncEvent.CAUGHT_UP:
                    if self.query.refresh and not self.stopped:
                        async with self._slot():
                            await self.refresh_once()
                    break
        finally:
            metrics.CYCLE_LATENCY.labels(query=self.query.name).observe(time.perf_counter() - started)
        return self.state

    async def step(self) -> SyncState:
        handler = self._handlers.get(self.state)
        if handler is None:
            raise RuntimeError(f"{self.query.name} cannot step while {self.state.value}")
        failed_in = self.state
        try:
            event = await handler()
        except _Failure as exc:
            return self._fail(failed_in, str(exc), exc.retryable, exc.kind)
        except SyncError as exc:
            return self._fail(failed_in, str(exc), exc.retryable, type(exc).__name__)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error while syncing", extra={"query": self.query.name, "state": failed_in.value})
            return self._fail(failed_in, f"{type(exc).__name__}: {exc}", False, type(exc).__name__)
        if self.resume_state is not None:
            self.attempt = 0
            self.resume_state = None
        return self._apply(event)

    async def _idle(self) -> SyncEvent:
        cached = self._schema_cache.get(self.query)
        if cached is not None:
            self.schema = cached
            return SyncEvent.SCHEMA_CACHED
        self.schema = None
        return SyncEvent.TICK

    async def _probe(self) -> SyncEvent:
        self.schema = await self._prober.probe(self.query)
        self._schema_cache.put(self.query, self.schema)
        return SyncEvent.SCHEMA_RESOLVED

    async def _fetch(self) -> SyncEvent:
        if self.schema is None:
            raise _Failure("No schema resolved before fetching", retryable=False, kind="NoSchema")
        if not self._cursor_loaded:
            self.cursor = await self._cursor_store.load(self.query.name)
            self._cursor_loaded = True
        base = self.cursor.last_seen_key if self.cursor else self.query.initial_key()
        page = await self._fetcher.fetch_next(self.query, self.cursor, self.query.batch_size)
        if page.is_empty:
            log_event(logger, "sync.caught_up", query=self.query.name)
            return SyncEvent.CAUGHT_UP
        try:
            records = self._mapper.map(page.rows, self.schema)
        except SchemaMismatch as exc:
            if self._reprobed:
                raise
            self._reprobed = True
            self._schema_cache.invalidate(self.query.name)
            logger.warning("Result shape changed, probing again", extra={"query": self.query.name, "error": str(exc)})
            return SyncEvent.SCHEMA_MISMATCH
        self._reprobed = False
        if not _advances(base, page.watermark):
            raise PermanentFetchError(
                f"Batch for {self.query.name} does not move the watermark past {base!r}; check the key columns are unique and ordered"
            )
        try:
            encode_watermark(page.watermark)
        except TypeError as exc:
            raise PermanentFetchError(f"Key columns of {self.query.name} cannot be stored as a watermark: {exc}") from exc
        self.batch = Batch(records=records, watermark=page.watermark)
        return SyncEvent.BATCH_READY

    async def _push(self) -> SyncEvent:
        if self.batch is None:
            raise _Failure("No batch to push", retryable=False, kind="NoBatch")
        result = await self._sink.submit_tags(self.batch)
        if isinstance(result, Ack):
            metrics.TAGS_PUSHED.labels(query=self.query.name).inc(result.accepted_count)
            return SyncEvent.ACKED
        raise _Failure(result.message, retryable=result.retryable, kind="PushError")

    async def _commit(self) -> SyncEvent:
        if self.batch is None or self.batch.watermark is None:
            raise _Failure("No acknowledged batch to commit", retryable=False, kind="NoBatch")
        base = self.cursor.last_seen_key if self.cursor else None
        try:
            self.cursor = await self._cursor_store.commit(self.query.name, base, self.batch.watermark)
        except StaleCursor as exc:
            logger.warning("Cursor moved underneath this worker, reloading", extra={"query": self.query.name, "error": str(exc)})
            self._reset_in_flight()
            return SyncEvent.STALE_CURSOR
        logger.info(summarize(self.batch.records), extra={"query": self.query.name})
        metrics.BATCHES_COMMITTED.labels(query=self.query.name).inc()
        self.batch = None
        return SyncEvent.COMMITTED

    async def refresh_once(self) -> bool:
        """Re-send one batch from a separate cursor that wraps around, so upstream edits get corrected."""
        if self.schema is None:
            return False
        refresh_id = f"{self.query.name}{REFRESH_SUFFIX}"
        try:
            cursor = await self._cursor_store.load(refresh_id)
            page = await self._fetcher.fetch_next(self.query, cursor, self.query.batch_size)
            if page.is_empty or not _advances(cursor.last_seen_key if cursor else None, page.watermark):
                await self._cursor_store.reset(refresh_id)
                log_event(logger, "refresh.restarted", query=self.query.name)
                return False
            batch = Batch(records=self._mapper.map(page.rows, self.schema), watermark=page.watermark)
            result = await self._sink.submit_tags(batch)
            if not isinstance(result, Ack):
                logger.warning("Refresh batch rejected", extra={"query": self.query.name, "error": result.message})
                return False
            await self._cursor_store.commit(refresh_id, cursor.last_seen_key if cursor else None, page.watermark)
        except SyncError as exc:
            metrics.SYNC_FAILURES.labels(query=self.query.name, kind=f"refresh:{type(exc).__name__}").inc()
            logger.warning("Refresh batch failed", extra={"query": self.query.name, "error": str(exc)})
            return False
        log_event(logger, "refresh.pushed", query=self.query.name, tags=len(batch))
        return True

    async def _wait_backoff(self) -> bool:
        delay = backoff_delay(self.attempt, self._initial_backoff, self._max_backoff)
        log_event(logger, "sync.backoff", query=self.query.name, attempt=self.attempt, delay=delay, resume=self.resume_state.value if self.resume_state else None)
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return False
        except asyncio.TimeoutError:
            pass
        self._apply(SyncEvent.RETRY)
        return True

    def _fail(self, failed_in: SyncState, message: str, retryable: bool, kind: str) -> SyncState:
        self.last_error = message
        metrics.SYNC_FAILURES.labels(query=self.query.name, kind=kind).inc()
        if retryable:
            self.attempt += 1
            self.resume_state = failed_in
            logger.warning("Transient sync failure", extra={"query": self.query.name, "state": failed_in.value, "error": message})
            return self._apply(SyncEvent.TRANSIENT_FAILURE)
        logger.error("Disabling query after permanent failure", extra={"query": self.query.name, "state": failed_in.value, "error": message})
        metrics.QUERY_DISABLED.labels(query=self.query.name).set(1)
        self._reset_in_flight()
        return self._apply(SyncEvent.PERMANENT_FAILURE)

    def _apply(self, event: SyncEvent) -> SyncState:
        previous = self.state
        self.state = transition(previous, event, self.resume_state)
        self.last_event = event
        log_event(logger, "sync.transition", query=self.query.name, source=previous.value, trigger=event.value, target=self.state.value)
        return self.state

    def _reset_in_flight(self) -> None:
        self.batch = None
        self.cursor = None
        self._cursor_loaded = False
        self._reprobed = False
        self.attempt = 0
        self.resume_state = None

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from apps.workers.sync_machine import QuerySyncMachine
from apps.workers.sync_state import SyncEvent, SyncState
from connectors.base import Ack, CursorStore, PushError, TagSink
from connectors.sql.exceptions import StaleCursor, TransientFetchError
from connectors.sql.models import Batch, ColumnDescriptor, Cursor, QuerySpec, RowPage, SchemaDescriptor
from connectors.sql.prober import SchemaCache, SchemaProber
from connectors.state_store import check_monotonic

SCHEMA = SchemaDescriptor(columns=(ColumnDescriptor("id", "integer"), ColumnDescriptor("tag_name", "string")))


def _query(**overrides) -> QuerySpec:
    fields = {"name": "cases", "dialect": "mysql", "sql": "SELECT id, tag_name FROM cases", "key_columns": ["id"], "batch_size": 2}
    fields.update(overrides)
    return QuerySpec(**fields)


def _rows(*ids: int) -> List[Dict[str, Any]]:
    return [{"id": tag_id, "tag_name": f"CASE-{tag_id}"} for tag_id in ids]


class FakeProber:
    def __init__(self, *schemas: SchemaDescriptor) -> None:
        self.schemas = list(schemas) or [SCHEMA]
        self.calls = 0

    async def probe(self, query: QuerySpec) -> SchemaDescriptor:
        self.calls += 1
        return self.schemas[min(self.calls, len(self.schemas)) - 1]


class FakeFetcher:
    def __init__(self, rows: List[Dict[str, Any]], ignore_cursor: bool = False) -> None:
        self.rows = rows
        self.ignore_cursor = ignore_cursor
        self.calls = 0

    async def fetch_next(self, query: QuerySpec, cursor: Optional[Cursor], limit: Optional[int] = None) -> RowPage:
        self.calls += 1
        after = None if cursor is None or self.ignore_cursor else cursor.last_seen_key[0]
        page = [dict(row) for row in self.rows if after is None or row["id"] > after][: limit or query.batch_size]
        if not page:
            return RowPage(rows=[], watermark=cursor.last_seen_key if cursor else None)
        return RowPage(rows=page, watermark=(page[-1]["id"],))


class MemoryCursorStore(CursorStore):
    def __init__(self) -> None:
        self.cursors: Dict[str, Cursor] = {}
        self.commits: List[tuple] = []

    async def load(self, query_id: str) -> Optional[Cursor]:
        return self.cursors.get(query_id)

    async def commit(self, query_id, base, watermark) -> Cursor:
        check_monotonic(query_id, base, watermark)
        current = self.cursors.get(query_id)
        if (current.last_seen_key if current else None) != (tuple(base) if base is not None else None):
            raise StaleCursor(f"{query_id} moved")
        cursor = Cursor(query_id=query_id, last_seen_key=tuple(watermark), last_seen_at=datetime.now(timezone.utc))
        self.cursors[query_id] = cursor
        self.commits.append((query_id, tuple(watermark)))
        return cursor

    async def reset(self, query_id: str) -> None:
        self.cursors.pop(query_id, None)


class RecordingSink(TagSink):
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.batches: List[Batch] = []
        self.on_submit = None

    async def submit_tags(self, batch: Batch):
        self.batches.append(batch)
        if self.on_submit is not None:
            self.on_submit()
        if self.responses:
            return self.responses.pop(0)
        return Ack(accepted_count=len(batch))

    def pushed_ids(self) -> List[List[str]]:
        return [[record.tag_id for record in batch.records] for batch in self.batches]


def _machine(query=None, prober=None, fetcher=None, store=None, sink=None, cache=None) -> QuerySyncMachine:
    return QuerySyncMachine(
        query or _query(),
        prober=prober or FakeProber(),
        fetcher=fetcher or FakeFetcher(_rows(1, 2, 3, 4, 5)),
        cursor_store=store or MemoryCursorStore(),
        sink=sink or RecordingSink(),
        schema_cache=cache if cache is not None else SchemaCache(),
        initial_backoff_seconds=0.01,
        max_backoff_seconds=0.05,
    )


@pytest.mark.asyncio
async def test_cycle_drains_every_row_once():
    store, sink, prober = MemoryCursorStore(), RecordingSink(), FakeProber()
    machine = _machine(prober=prober, store=store, sink=sink)

    assert await machine.run_cycle() is SyncState.IDLE

    assert sink.pushed_ids() == [["1", "2"], ["3", "4"], ["5"]]
    assert store.cursors["cases"].last_seen_key == (5,)
    assert [watermark for _, watermark in store.commits] == [(2,), (4,), (5,)]
    assert prober.calls == 1

    await machine.run_cycle()
    assert prober.calls == 1
    assert len(sink.batches) == 3


@pytest.mark.asyncio
async def test_retryable_push_keeps_cursor_and_resends_same_batch():
    store = MemoryCursorStore()
    sink = RecordingSink(PushError(message="busy", retryable=True, status_code=503))
    machine = _machine(store=store, sink=sink)

    for _ in range(3):
        await machine.step()
    assert machine.state is SyncState.PUSHING
    assert await machine.step() is SyncState.BACKOFF
    assert machine.resume_state is SyncState.PUSHING
    assert machine.attempt == 1
    assert await store.load("cases") is None
    assert machine.batch is not None

    await machine.run_cycle()

    assert sink.batches[0].records == sink.batches[1].records
    assert sink.batches[0].watermark == sink.batches[1].watermark
    assert store.cursors["cases"].last_seen_key == (5,)
    assert machine.attempt == 0


@pytest.mark.asyncio
async def test_rejected_push_disables_query_without_commit():
    store = MemoryCursorStore()
    machine = _machine(store=store, sink=RecordingSink(PushError(message="bad request", retryable=False, status_code=400)))

    assert await machine.run_cycle() is SyncState.DISABLED
    assert store.commits == []
    assert "bad request" in machine.last_error

    machine.reenable()
    assert machine.state is SyncState.IDLE


@pytest.mark.asyncio
async def test_stop_after_ack_redelivers_batch_on_restart():
    store = MemoryCursorStore()
    first_sink = RecordingSink()
    crashed = _machine(store=store, sink=first_sink)
    first_sink.on_submit = crashed.stop

    assert await crashed.run_cycle() is SyncState.COMMITTING
    assert store.commits == []

    second_sink = RecordingSink()
    restarted = _machine(store=store, sink=second_sink)
    await restarted.run_cycle()

    assert second_sink.batches[0].records == first_sink.batches[0].records
    assert second_sink.pushed_ids() == [["1", "2"], ["3", "4"], ["5"]]


class ExplodingPool:
    def __init__(self) -> None:
        self.used = False

    @contextmanager
    def acquire_connection(self, dialect):
        self.used = True
        raise AssertionError("database must not be touched")
        yield


@pytest.mark.asyncio
async def test_unsupported_sqlserver_shape_disables_without_querying():
    pool = ExplodingPool()
    fetcher = FakeFetcher(_rows(1))
    query = _query(dialect="SqlServer", sql="SELECT id, tag_name FROM #staged_cases")
    machine = _machine(query=query, prober=SchemaProber(pool), fetcher=fetcher)

    assert await machine.run_cycle() is SyncState.DISABLED

    assert machine.last_error.startswith("Temp tables")
    assert pool.used is False
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_edited_sql_forces_a_new_probe():
    cache, prober = SchemaCache(), FakeProber()
    await _machine(prober=prober, cache=cache).run_cycle()
    await _machine(prober=prober, cache=cache).run_cycle()
    assert prober.calls == 1

    edited = _query(sql="SELECT id, tag_name FROM cases WHERE open = 1")
    await _machine(query=edited, prober=prober, cache=cache).run_cycle()
    assert prober.calls == 2


@pytest.mark.asyncio
async def test_schema_mismatch_reprobes_once_then_disables():
    rows = [{"id": 1, "tag_name": "CASE-1", "client": "ACME"}]
    prober = FakeProber()
    machine = _machine(prober=prober, fetcher=FakeFetcher(rows))

    assert await machine.run_cycle() is SyncState.DISABLED
    assert prober.calls == 2


@pytest.mark.asyncio
async def test_schema_mismatch_recovers_after_reprobe():
    rows = [{"id": 1, "tag_name": "CASE-1", "client": "ACME"}]
    widened = SchemaDescriptor(columns=SCHEMA.columns + (ColumnDescriptor("client", "string"),))
    sink = RecordingSink()
    machine = _machine(prober=FakeProber(SCHEMA, widened), fetcher=FakeFetcher(rows), sink=sink)

    assert await machine.run_cycle() is SyncState.IDLE
    assert sink.pushed_ids() == [["1"]]


@pytest.mark.asyncio
async def test_stale_cursor_drops_batch_and_reloads():
    store = MemoryCursorStore()
    sink = RecordingSink()
    machine = _machine(store=store, sink=sink)
    for _ in range(4):
        await machine.step()
    assert machine.state is SyncState.COMMITTING

    await store.commit("cases", None, (2,))
    assert await machine.step() is SyncState.IDLE
    assert machine.last_event is SyncEvent.STALE_CURSOR
    assert machine.batch is None

    await machine.run_cycle()
    assert sink.pushed_ids() == [["1", "2"], ["3", "4"], ["5"]]
    assert store.cursors["cases"].last_seen_key == (5,)


@pytest.mark.asyncio
async def test_batch_that_does_not_advance_disables_query():
    store = MemoryCursorStore()
    machine = _machine(store=store, fetcher=FakeFetcher(_rows(1, 2), ignore_cursor=True))

    assert await machine.run_cycle() is SyncState.DISABLED
    assert store.commits == [("cases", (2,))]
    assert "does not move the watermark" in machine.last_error


@pytest.mark.asyncio
async def test_refresh_resends_from_a_separate_cursor():
    store, sink = MemoryCursorStore(), RecordingSink()
    machine = _machine(query=_query(refresh=True), fetcher=FakeFetcher(_rows(1, 2, 3)), store=store, sink=sink)

    await machine.run_cycle()
    assert sink.pushed_ids() == [["1", "2"], ["3"], ["1", "2"]]
    assert store.cursors["cases#refresh"].last_seen_key == (2,)

    await machine.run_cycle()
    assert sink.pushed_ids()[-1] == ["3"]

    await machine.run_cycle()
    assert "cases#refresh" not in store.cursors
    assert store.cursors["cases"].last_seen_key == (3,)


@pytest.mark.asyncio
async def test_machines_share_an_empty_schema_cache():
    cache = SchemaCache()
    query = _query()
    await _machine(query=query, cache=cache).run_cycle()
    assert len(cache) == 1
    assert cache.get(query) is SCHEMA


class FlakyFetcher(FakeFetcher):
    async def fetch_next(self, query, cursor, limit=None):
        if self.calls == 0:
            self.calls += 1
            raise TransientFetchError("Connection lost while fetching cases")
        return await super().fetch_next(query, cursor, limit)


class FlakyProber(FakeProber):
    async def probe(self, query):
        if self.calls == 0:
            self.calls += 1
            raise TransientFetchError("Timed out waiting for a pooled connection while probing cases")
        return await super().probe(query)


@pytest.mark.asyncio
async def test_transient_fetch_error_retries_the_fetch():
    sink = RecordingSink()
    machine = _machine(fetcher=FlakyFetcher(_rows(1, 2, 3)), sink=sink)

    await machine.step()
    await machine.step()
    assert await machine.step() is SyncState.BACKOFF
    assert machine.resume_state is SyncState.FETCHING
    assert machine.attempt == 1

    assert await machine.run_cycle() is SyncState.IDLE
    assert sink.pushed_ids() == [["1", "2"], ["3"]]
    assert machine.attempt == 0
    assert machine.resume_state is None


@pytest.mark.asyncio
async def test_transient_probe_error_retries_the_probe():
    prober, sink = FlakyProber(), RecordingSink()
    machine = _machine(prober=prober, fetcher=FakeFetcher(_rows(1)), sink=sink)

    await machine.step()
    assert await machine.step() is SyncState.BACKOFF
    assert machine.resume_state is SyncState.PROBING

    assert await machine.run_cycle() is SyncState.IDLE
    assert prober.calls == 2
    assert sink.pushed_ids() == [["1"]]
    assert machine.attempt == 0


@pytest.mark.asyncio
async def test_string_initial_marker_on_integer_keys():
    sink = RecordingSink()
    machine = _machine(query=_query(initial_watermark="0"), sink=sink)

    assert await machine.run_cycle() is SyncState.IDLE
    assert sink.pushed_ids() == [["1", "2"], ["3", "4"], ["5"]]


class CollatedFetcher(FakeFetcher):
    """Pages through rows in the order given, like a case-insensitive collation would."""

    async def fetch_next(self, query, cursor, limit=None):
        self.calls += 1
        start = 0 if cursor is None else [row["id"] for row in self.rows].index(cursor.last_seen_key[0]) + 1
        page = [dict(row) for row in self.rows[start : start + (limit or query.batch_size)]]
        if not page:
            return RowPage(rows=[], watermark=cursor.last_seen_key if cursor else None)
        return RowPage(rows=page, watermark=(page[-1]["id"],))


@pytest.mark.asyncio
async def test_case_insensitive_key_order_is_followed():
    rows = [{"id": tag_id, "tag_name": tag_id.upper()} for tag_id in ("a", "B", "c")]
    schema = SchemaDescriptor(columns=(ColumnDescriptor("id", "string"), ColumnDescriptor("tag_name", "string")))
    store, sink = MemoryCursorStore(), RecordingSink()
    machine = _machine(query=_query(batch_size=1), prober=FakeProber(schema), fetcher=CollatedFetcher(rows), store=store, sink=sink)

    assert await machine.run_cycle() is SyncState.IDLE
    assert sink.pushed_ids() == [["a"], ["B"], ["c"]]
    assert store.cursors["cases"].last_seen_key == ("c",)

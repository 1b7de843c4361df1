from datetime import datetime, timezone
from typing import List

import pytest
from sqlalchemy import create_engine, text

from apps.workers.sync_machine import QuerySyncMachine
from apps.workers.sync_state import SyncState
from connectors.base import Ack, TagSink
from connectors.sql.exceptions import MissingColumn, PermanentFetchError
from connectors.sql.fetcher import BatchFetcher
from connectors.sql.models import Batch, Cursor, QuerySpec
from connectors.sql.prober import SchemaCache, SchemaProber
from connectors.state_store import SqlCursorStore
from core.database import DatabasePool

TAGS = [
    ("P5", "FID5", "2024-01-02"),
    ("P1", "FID1", "2024-01-01"),
    ("P3", "FID3", "2024-01-01"),
    ("P2", "FID2", "2024-01-01"),
    ("P4", "FID4", "2024-01-02"),
]


@pytest.fixture
def pool(tmp_path):
    # SQLite understands MySQL backtick quoting and LIMIT, so it stands in for the mysql endpoint
    engine = create_engine(f"sqlite:///{tmp_path / 'source.db'}")
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE cases (id TEXT PRIMARY KEY, tag_name TEXT, changed_on TEXT, number INTEGER)"))
        for position, (tag_id, tag_name, changed_on) in enumerate(TAGS, start=1):
            connection.execute(
                text("INSERT INTO cases VALUES (:id, :tag_name, :changed_on, :number)"),
                {"id": tag_id, "tag_name": tag_name, "changed_on": changed_on, "number": position},
            )
    database_pool = DatabasePool(engines={"mysql": engine})
    yield database_pool
    database_pool.dispose()


def _query(**overrides) -> QuerySpec:
    fields = {
        "name": "cases",
        "dialect": "mysql",
        "sql": "SELECT id, tag_name, changed_on FROM cases",
        "key_columns": ["changed_on"],
        "batch_size": 2,
    }
    fields.update(overrides)
    return QuerySpec(**fields)


def _drain(fetcher: BatchFetcher, query: QuerySpec) -> List[List[str]]:
    pages, cursor = [], None
    while True:
        page = fetcher.fetch_next_sync(query, cursor)
        if page.is_empty:
            return pages
        pages.append([row["id"] for row in page.rows])
        cursor = _cursor(query, page.watermark)


def _cursor(query: QuerySpec, watermark) -> Cursor:
    return Cursor(query_id=query.name, last_seen_key=watermark, last_seen_at=datetime.now(timezone.utc))


def test_pages_break_ties_on_id(pool):
    assert _drain(BatchFetcher(pool), _query()) == [["P1", "P2"], ["P3", "P4"], ["P5"]]


def test_watermark_holds_every_order_column(pool):
    page = BatchFetcher(pool).fetch_next_sync(_query(), None)
    assert page.watermark == ("2024-01-01", "P2")


def test_integer_keys_page_in_order(pool):
    query = _query(sql="SELECT id, number FROM cases", key_columns=["number"])
    assert _drain(BatchFetcher(pool), query) == [["P5", "P1"], ["P3", "P2"], ["P4"]]


def test_skipped_ids_are_filtered(pool):
    query = _query(skipped_ids=["P2", "P4"])
    assert _drain(BatchFetcher(pool), query) == [["P1", "P3"], ["P5"]]


def test_initial_watermark_starts_mid_stream(pool):
    query = _query(initial_watermark=["2024-01-01", "P3"])
    assert _drain(BatchFetcher(pool), query) == [["P4", "P5"]]


def test_colon_literals_are_not_parameters(pool):
    query = _query(sql="SELECT id, tag_name, changed_on, ':literal' AS note FROM cases")
    page = BatchFetcher(pool).fetch_next_sync(query, None)
    assert [row["note"] for row in page.rows] == [":literal", ":literal"]


def test_mismatched_watermark_length_is_permanent(pool):
    with pytest.raises(PermanentFetchError):
        BatchFetcher(pool).fetch_next_sync(_query(), _cursor(_query(), ("2024-01-01",)))


def test_probe_reads_columns_without_rows(pool):
    schema = SchemaProber(pool).probe_sync(_query(sql="SELECT id, tag_name, changed_on FROM cases ORDER BY id"))
    assert schema.names == ["id", "tag_name", "changed_on"]
    assert {column.type for column in schema.columns} == {"unknown"}


def test_probe_requires_order_columns(pool):
    with pytest.raises(MissingColumn):
        SchemaProber(pool).probe_sync(_query(sql="SELECT id, tag_name FROM cases"))


def test_probe_of_missing_table_is_permanent(pool):
    with pytest.raises(PermanentFetchError):
        SchemaProber(pool).probe_sync(_query(sql="SELECT id, changed_on FROM nowhere"))


class CollectingSink(TagSink):
    def __init__(self) -> None:
        self.batches: List[Batch] = []

    async def submit_tags(self, batch: Batch):
        self.batches.append(batch)
        return Ack(accepted_count=len(batch))


@pytest.mark.asyncio
async def test_sync_delivers_every_row_once_across_restarts(pool, tmp_path):
    store = SqlCursorStore(f"sqlite:///{tmp_path / 'state' / 'cursors.db'}")
    sink = CollectingSink()
    cache = SchemaCache()

    def machine():
        return QuerySyncMachine(
            _query(),
            prober=SchemaProber(pool),
            fetcher=BatchFetcher(pool),
            cursor_store=store,
            sink=sink,
            schema_cache=cache,
            initial_backoff_seconds=0.01,
        )

    first = machine()
    for _ in range(5):
        await first.step()
    assert first.state is SyncState.IDLE

    with pool.engine("mysql").begin() as connection:
        connection.execute(text("INSERT INTO cases VALUES ('P6', 'FID6', '2024-01-03', 6)"))

    assert await machine().run_cycle() is SyncState.IDLE

    pushed = [record.tag_id for batch in sink.batches for record in batch.records]
    assert pushed == ["P1", "P2", "P3", "P4", "P5", "P6"]
    cursor = await store.load("cases")
    assert cursor.last_seen_key == ("2024-01-03", "P6")
    await store.close()


async def _sync(pool, tmp_path, query: QuerySpec):
    store = SqlCursorStore(f"sqlite:///{tmp_path / 'cursors.db'}")
    sink = CollectingSink()
    machine = QuerySyncMachine(
        query,
        prober=SchemaProber(pool),
        fetcher=BatchFetcher(pool),
        cursor_store=store,
        sink=sink,
        initial_backoff_seconds=0.01,
    )
    state = await machine.run_cycle()
    await store.close()
    return state, [record.tag_id for batch in sink.batches for record in batch.records]


@pytest.mark.asyncio
async def test_string_initial_marker_on_integer_keys(pool, tmp_path):
    with pool.engine("mysql").begin() as connection:
        connection.execute(text("CREATE TABLE counters (id INTEGER PRIMARY KEY, tag_name TEXT)"))
        connection.execute(text("INSERT INTO counters VALUES (1, 'one'), (2, 'two'), (3, 'three')"))
    query = _query(name="counters", sql="SELECT id, tag_name FROM counters", key_columns=["id"], initial_watermark="0")

    state, pushed = await _sync(pool, tmp_path, query)

    assert state is SyncState.IDLE
    assert pushed == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_case_insensitive_collation_drains_every_key(pool, tmp_path):
    with pool.engine("mysql").begin() as connection:
        connection.execute(text("CREATE TABLE labels (id TEXT COLLATE NOCASE PRIMARY KEY, tag_name TEXT)"))
        connection.execute(text("INSERT INTO labels VALUES ('a', 'A'), ('B', 'B'), ('c', 'C')"))
    query = _query(name="labels", sql="SELECT id, tag_name FROM labels", key_columns=["id"], batch_size=1)

    state, pushed = await _sync(pool, tmp_path, query)

    assert state is SyncState.IDLE
    assert pushed == ["a", "B", "c"]

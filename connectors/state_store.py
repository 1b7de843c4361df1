from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, create_engine, insert, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError

from connectors.base import CursorStore
from connectors.sql.exceptions import CursorRegression, StaleCursor
from connectors.sql.models import Cursor, Watermark, decode_watermark, encode_watermark
from core.cache.valkey_client import ValkeyClient
from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)

metadata = MetaData()

cursors_table = Table(
    "tag_sync_cursors",
    metadata,
    Column("query_id", String(255), primary_key=True),
    Column("watermark", Text, nullable=False),
    Column("last_seen_at", DateTime(timezone=True), nullable=False),
)


def _orderable(previous: Any, current: Any) -> bool:
    """Whether Python ordering of two key values matches every supported database."""
    if isinstance(previous, bool) or isinstance(current, bool):
        return False
    if isinstance(previous, (int, float, Decimal)) and isinstance(current, (int, float, Decimal)):
        return True
    if isinstance(previous, datetime) and isinstance(current, datetime):
        return (previous.tzinfo is None) == (current.tzinfo is None)
    return type(previous) is date and type(current) is date


def check_monotonic(query_id: str, base: Optional[Watermark], watermark: Watermark) -> None:
    """Refuse a watermark that sorts before ``base``.

    Strings and mixed-type pairs belong to the source collation and are never
    ordered here. The first differing position decides.
    """
    if base is None:
        return
    for previous, current in zip(base, watermark):
        if previous == current:
            continue
        if _orderable(previous, current) and current < previous:
            raise CursorRegression(f"Watermark for {query_id} would move backwards from {base!r} to {watermark!r}")
        return


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqlCursorStore(CursorStore):
    """Cursors kept as rows of ``tag_sync_cursors`` in a side database."""

    def __init__(self, url: str = settings.cursor_database_url, engine: Optional[Engine] = None) -> None:
        if engine is None:
            parsed = make_url(url)
            if parsed.drivername.startswith("sqlite") and parsed.database not in (None, "", ":memory:"):
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(url, pool_pre_ping=True)
        self._engine = engine
        metadata.create_all(self._engine)

    async def load(self, query_id: str) -> Optional[Cursor]:
        return await asyncio.to_thread(self._load, query_id)

    async def commit(self, query_id: str, base: Optional[Watermark], watermark: Watermark) -> Cursor:
        check_monotonic(query_id, base, watermark)
        return await asyncio.to_thread(self._commit, query_id, base, watermark)

    async def reset(self, query_id: str) -> None:
        await asyncio.to_thread(self._reset, query_id)

    async def close(self) -> None:
        self._engine.dispose()

    def _load(self, query_id: str) -> Optional[Cursor]:
        with self._engine.connect() as connection:
            row = connection.execute(
                select(cursors_table.c.watermark, cursors_table.c.last_seen_at).where(cursors_table.c.query_id == query_id)
            ).first()
        if row is None:
            return None
        last_seen_at = row.last_seen_at if row.last_seen_at.tzinfo else row.last_seen_at.replace(tzinfo=timezone.utc)
        return Cursor(query_id=query_id, last_seen_key=decode_watermark(row.watermark) or (), last_seen_at=last_seen_at)

    def _commit(self, query_id: str, base: Optional[Watermark], watermark: Watermark) -> Cursor:
        committed_at = _now()
        encoded = encode_watermark(watermark)
        try:
            with self._engine.begin() as connection:
                if base is None:
                    connection.execute(insert(cursors_table).values(query_id=query_id, watermark=encoded, last_seen_at=committed_at))
                else:
                    result = connection.execute(
                        update(cursors_table)
                        .where(cursors_table.c.query_id == query_id)
                        .where(cursors_table.c.watermark == encode_watermark(base))
                        .values(watermark=encoded, last_seen_at=committed_at)
                    )
                    if result.rowcount != 1:
                        raise StaleCursor(f"Cursor for {query_id} moved since {base!r} was loaded")
        except IntegrityError as exc:
            raise StaleCursor(f"Cursor for {query_id} was created by another worker") from exc
        log_event(logger, "cursor.committed", query=query_id, watermark=encoded)
        return Cursor(query_id=query_id, last_seen_key=tuple(watermark), last_seen_at=committed_at)

    def _reset(self, query_id: str) -> None:
        with self._engine.begin() as connection:
            connection.execute(cursors_table.delete().where(cursors_table.c.query_id == query_id))
        log_event(logger, "cursor.reset", query=query_id)


class ValkeyCursorStore(CursorStore):
    """Cursors kept as one Valkey hash per query, swapped by a server-side script."""

    def __init__(self, client: Optional[ValkeyClient] = None, prefix: str = "tagsync:cursor") -> None:
        self._client = client or ValkeyClient()
        self._prefix = prefix

    def _key(self, query_id: str) -> str:
        return f"{self._prefix}:{query_id}"

    async def load(self, query_id: str) -> Optional[Cursor]:
        state = await self._client.get_hash(self._key(query_id))
        if not state or not state.get("watermark"):
            return None
        return Cursor(
            query_id=query_id,
            last_seen_key=decode_watermark(state["watermark"]) or (),
            last_seen_at=datetime.fromisoformat(state["last_seen_at"]),
        )

    async def commit(self, query_id: str, base: Optional[Watermark], watermark: Watermark) -> Cursor:
        check_monotonic(query_id, base, watermark)
        committed_at = _now()
        encoded = encode_watermark(watermark)
        swapped, current = await self._client.compare_and_set(
            self._key(query_id), encode_watermark(base), encoded, committed_at.isoformat()
        )
        if not swapped:
            raise StaleCursor(f"Cursor for {query_id} is {current or 'unset'}, expected {encode_watermark(base) or 'unset'}")
        log_event(logger, "cursor.committed", query=query_id, watermark=encoded)
        return Cursor(query_id=query_id, last_seen_key=tuple(watermark), last_seen_at=committed_at)

    async def reset(self, query_id: str) -> None:
        await self._client.delete(self._key(query_id))

    async def close(self) -> None:
        await self._client.close()


def build_cursor_store() -> CursorStore:
    if settings.cursor_backend == "valkey":
        return ValkeyCursorStore()
    return SqlCursorStore()

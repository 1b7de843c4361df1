from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from connectors.sql.dialects import DialectDescriptor, Pagination, describe
from connectors.sql.exceptions import FetchError, PermanentFetchError, from_database_error
from connectors.sql.models import Cursor, QuerySpec, RowPage, Watermark, lookup
from connectors.sql.statements import analyze, escape_binds
from core.database import DatabasePool
from core.logging import log_event

logger = logging.getLogger(__name__)

SOURCE_ALIAS = "src"
LIMIT_PARAM = "tagsync_limit"
SKIPPED_PARAM = "tagsync_skipped"


def _watermark_param(index: int) -> str:
    return f"tagsync_w{index}"


def keyset_predicate(columns: List[str], descriptor: DialectDescriptor) -> str:
    """``(a > :w0) OR (a = :w0 AND b > :w1) OR ...``, i.e. ``(a, b, ...) > (:w0, :w1, ...)``."""
    terms: List[str] = []
    for position, column in enumerate(columns):
        parts = [f"{descriptor.quote(columns[index])} = :{_watermark_param(index)}" for index in range(position)]
        parts.append(f"{descriptor.quote(column)} > :{_watermark_param(position)}")
        terms.append("(" + " AND ".join(parts) + ")")
    return "(" + " OR ".join(terms) + ")"


def build_fetch_sql(query: QuerySpec, watermark: Optional[Watermark]) -> str:
    descriptor = describe(query.dialect)
    parsed = analyze(query.sql, query.dialect)
    columns = query.order_columns

    conditions = [f"{descriptor.quote(column)} IS NOT NULL" for column in columns]
    if watermark is not None:
        conditions.append(keyset_predicate(columns, descriptor))
    if query.skipped_ids:
        conditions.append(f"{descriptor.quote(query.id_column)} NOT IN :{SKIPPED_PARAM}")
    order_by = ", ".join(f"{descriptor.quote(column)} ASC" for column in columns)

    rest = (
        f"FROM ({escape_binds(parsed.body)}) AS {descriptor.quote(SOURCE_ALIAS)} "
        f"WHERE {' AND '.join(conditions)} ORDER BY {order_by}"
    )
    statement = descriptor.paginate("*", rest, LIMIT_PARAM)
    if descriptor.pagination is Pagination.TOP and parsed.cte:
        return f"{escape_binds(parsed.cte)} {statement}"
    return statement


class BatchFetcher:
    """Keyset pagination over an operator query.

    Rows are ordered by the key columns and then the tag id column, and the
    returned watermark holds the values of all of those columns for the last
    row, so consecutive pages neither skip nor repeat rows that share a key.
    """

    def __init__(self, pool: DatabasePool) -> None:
        self._pool = pool

    async def fetch_next(self, query: QuerySpec, cursor: Optional[Cursor], limit: Optional[int] = None) -> RowPage:
        return await asyncio.to_thread(self.fetch_next_sync, query, cursor, limit)

    def fetch_next_sync(self, query: QuerySpec, cursor: Optional[Cursor], limit: Optional[int] = None) -> RowPage:
        watermark = cursor.last_seen_key if cursor is not None else query.initial_key()
        columns = query.order_columns
        if watermark is not None and len(watermark) != len(columns):
            raise PermanentFetchError(
                f"Stored watermark for {query.name} has {len(watermark)} value(s) but the query orders by "
                f"{', '.join(columns)}; reset the cursor after changing key columns"
            )

        statement, params = self._statement(query, watermark, limit or query.batch_size)
        try:
            with self._pool.acquire_connection(query.dialect) as connection:
                result = connection.execute(statement, params)
                rows: List[Dict[str, Any]] = [dict(row._mapping) for row in result]
                connection.rollback()
        except FetchError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise from_database_error(exc, f"fetching {query.name}") from exc

        if not rows:
            log_event(logger, "fetch.caught_up", query=query.name)
            return RowPage(rows=[], watermark=watermark)
        try:
            last_key: Watermark = tuple(lookup(rows[-1], column) for column in columns)
        except KeyError as exc:
            raise PermanentFetchError(f"Query {query.name} no longer returns column {exc.args[0]}") from exc
        log_event(logger, "fetch.page", query=query.name, rows=len(rows))
        return RowPage(rows=rows, watermark=last_key)

    def _statement(self, query: QuerySpec, watermark: Optional[Watermark], limit: int) -> Tuple[Any, Dict[str, Any]]:
        statement = text(build_fetch_sql(query, watermark))
        params: Dict[str, Any] = {LIMIT_PARAM: limit}
        if watermark is not None:
            params.update({_watermark_param(index): value for index, value in enumerate(watermark)})
        if query.skipped_ids:
            statement = statement.bindparams(bindparam(SKIPPED_PARAM, expanding=True))
            params[SKIPPED_PARAM] = list(query.skipped_ids)
        return statement, params

from __future__ import annotations

import asyncio
import datetime as dt
import decimal
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from connectors.sql.dialects import DialectDescriptor, DialectId, ProbeStrategy, describe
from connectors.sql.exceptions import FetchError, MissingColumn, from_database_error
from connectors.sql.models import ColumnDescriptor, QuerySpec, SchemaDescriptor
from connectors.sql.statements import ParsedSelect, analyze, escape_binds
from core.database import DatabasePool
from core.logging import log_event

logger = logging.getLogger(__name__)

PROBE_ALIAS = "_probe"

# pyodbc reports Python types as type codes
_PYTHON_TYPES: Sequence[Tuple[type, str]] = (
    (bool, "boolean"),
    (int, "integer"),
    (decimal.Decimal, "decimal"),
    (float, "decimal"),
    (str, "string"),
    (dt.datetime, "datetime"),
    (dt.date, "date"),
    (bytes, "binary"),
    (bytearray, "binary"),
)

# psycopg2 reports pg_type OIDs
_POSTGRES_OIDS: Dict[int, str] = {
    16: "boolean",
    17: "binary",
    18: "string",
    19: "string",
    20: "integer",
    21: "integer",
    23: "integer",
    25: "string",
    26: "integer",
    700: "decimal",
    701: "decimal",
    1042: "string",
    1043: "string",
    1082: "date",
    1114: "datetime",
    1184: "datetime",
    1700: "decimal",
    2950: "string",
}

# PyMySQL reports FIELD_TYPE constants; BLOB types also carry TEXT columns so they stay unknown
_MYSQL_FIELD_TYPES: Dict[int, str] = {
    0: "decimal",
    1: "integer",
    2: "integer",
    3: "integer",
    4: "decimal",
    5: "decimal",
    7: "datetime",
    8: "integer",
    9: "integer",
    10: "date",
    12: "datetime",
    13: "integer",
    14: "date",
    15: "string",
    246: "decimal",
    247: "string",
    253: "string",
    254: "string",
}


def infer_type(type_code: Any, dialect: DialectId) -> str:
    """Coarse type category for a DBAPI ``cursor.description`` type code."""
    if isinstance(type_code, type):
        for python_type, category in _PYTHON_TYPES:
            if issubclass(type_code, python_type):
                return category
        return "unknown"
    if isinstance(type_code, int) and not isinstance(type_code, bool):
        table = _MYSQL_FIELD_TYPES if dialect is DialectId.MYSQL else _POSTGRES_OIDS
        return table.get(type_code, "unknown")
    return "unknown"


def build_probe_sql(parsed: ParsedSelect, descriptor: DialectDescriptor) -> str:
    """Zero-row form of a parsed statement.

    ``REWRITE`` dialects wrap the statement body in a derived table bounded by
    ``TOP 0`` with the CTE list hoisted in front. The server's format-only mode
    is never used.
    """
    source = f"FROM ({parsed.body}) AS {descriptor.quote(PROBE_ALIAS)}"
    probe = descriptor.zero_rows("*", source)
    if descriptor.probe_strategy is ProbeStrategy.REWRITE and parsed.cte:
        return f"{parsed.cte} {probe}"
    return probe


class SchemaProber:
    def __init__(self, pool: DatabasePool) -> None:
        self._pool = pool

    async def probe(self, query: QuerySpec) -> SchemaDescriptor:
        return await asyncio.to_thread(self.probe_sync, query)

    def probe_sync(self, query: QuerySpec) -> SchemaDescriptor:
        descriptor = describe(query.dialect)
        # Rejections happen here, before any statement reaches the database
        parsed = analyze(query.sql, query.dialect)
        statement = build_probe_sql(parsed, descriptor)
        try:
            with self._pool.acquire_connection(query.dialect) as connection:
                result = connection.execute(text(escape_binds(statement)))
                description = result.cursor.description if result.cursor is not None else None
                names = list(result.keys())
                result.close()
                connection.rollback()
        except FetchError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise from_database_error(exc, f"probing {query.name}") from exc

        type_codes: List[Any] = [entry[1] for entry in description] if description else [None] * len(names)
        schema = SchemaDescriptor(
            columns=tuple(ColumnDescriptor(name=name, type=infer_type(code, query.dialect)) for name, code in zip(names, type_codes))
        )
        validate_schema(query, schema)
        log_event(logger, "schema.probed", query=query.name, columns=schema.names)
        return schema


def validate_schema(query: QuerySpec, schema: SchemaDescriptor) -> None:
    missing = [column for column in query.order_columns if schema.find(column) is None]
    if missing:
        raise MissingColumn(f"Query {query.name} does not return column(s) {', '.join(missing)}; found {', '.join(schema.names)}")


class SchemaCache:
    """Schemas keyed by query name and invalidated when the query fingerprint changes."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[str, SchemaDescriptor]] = {}
        self._lock = threading.Lock()

    def get(self, query: QuerySpec) -> Optional[SchemaDescriptor]:
        with self._lock:
            entry = self._entries.get(query.name)
        if entry is None or entry[0] != query.fingerprint:
            return None
        return entry[1]

    def put(self, query: QuerySpec, schema: SchemaDescriptor) -> None:
        with self._lock:
            self._entries[query.name] = (query.fingerprint, schema)

    def invalidate(self, name: str) -> None:
        with self._lock:
            self._entries.pop(name, None)

    def __len__(self) -> int:
        return len(self._entries)

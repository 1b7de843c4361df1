"""Static capability table for the supported databases.

Each dialect is a plain descriptor value looked up by id; behaviour differences
(quoting, pagination, schema probing) are data on the descriptor rather than
subclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from connectors.sql.exceptions import UnsupportedDialect


class DialectId(str, Enum):
    SQLSERVER = "sqlserver"
    MYSQL = "mysql"
    POSTGRES = "postgres"


class ProbeStrategy(str, Enum):
    REWRITE = "rewrite"
    NATIVE_FLAG = "native_flag"


class Pagination(str, Enum):
    TOP = "top"
    LIMIT = "limit"


_ALIASES: Dict[str, DialectId] = {
    "sqlserver": DialectId.SQLSERVER,
    "mssql": DialectId.SQLSERVER,
    "tsql": DialectId.SQLSERVER,
    "mysql": DialectId.MYSQL,
    "mariadb": DialectId.MYSQL,
    "postgres": DialectId.POSTGRES,
    "postgresql": DialectId.POSTGRES,
}


@dataclass(frozen=True)
class DialectDescriptor:
    id: DialectId
    quote_open: str
    quote_close: str
    pagination: Pagination
    probe_strategy: ProbeStrategy

    def quote(self, identifier: str) -> str:
        escaped = identifier.replace(self.quote_close, self.quote_close * 2)
        return f"{self.quote_open}{escaped}{self.quote_close}"

    def paginate(self, projection: str, rest: str, limit_param: str) -> str:
        """Bound ``SELECT <projection> <rest>`` to ``:limit_param`` rows."""
        if self.pagination is Pagination.TOP:
            return f"SELECT TOP (:{limit_param}) {projection} {rest}"
        return f"SELECT {projection} {rest} LIMIT :{limit_param}"

    def zero_rows(self, projection: str, rest: str) -> str:
        if self.pagination is Pagination.TOP:
            return f"SELECT TOP 0 {projection} {rest}"
        return f"SELECT {projection} {rest} LIMIT 0"


_DIALECTS: Dict[DialectId, DialectDescriptor] = {
    DialectId.SQLSERVER: DialectDescriptor(
        id=DialectId.SQLSERVER,
        quote_open="[",
        quote_close="]",
        pagination=Pagination.TOP,
        probe_strategy=ProbeStrategy.REWRITE,
    ),
    DialectId.MYSQL: DialectDescriptor(
        id=DialectId.MYSQL,
        quote_open="`",
        quote_close="`",
        pagination=Pagination.LIMIT,
        probe_strategy=ProbeStrategy.NATIVE_FLAG,
    ),
    DialectId.POSTGRES: DialectDescriptor(
        id=DialectId.POSTGRES,
        quote_open='"',
        quote_close='"',
        pagination=Pagination.LIMIT,
        probe_strategy=ProbeStrategy.NATIVE_FLAG,
    ),
}


def parse_dialect_id(value: Any) -> DialectId:
    if isinstance(value, DialectId):
        return value
    key = str(value or "").strip().lower().replace("_", "").replace("-", "").replace(" ", "")
    try:
        return _ALIASES[key]
    except KeyError:
        raise UnsupportedDialect(f"Unsupported dialect: {value!r}") from None


def describe(dialect_id: Any) -> DialectDescriptor:
    return _DIALECTS[parse_dialect_id(dialect_id)]

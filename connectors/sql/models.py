from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, validator

from connectors.sql.dialects import DialectId, parse_dialect_id

Watermark = Tuple[Any, ...]


class QuerySpec(BaseModel):
    """One operator-configured tag query."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    dialect: DialectId
    sql: str = Field(..., min_length=1)
    key_columns: List[str] = Field(..., min_length=1)
    batch_size: int = Field(default=500, gt=0)
    poll_interval_seconds: int = Field(default=60, gt=0)
    id_column: str = Field(default="id", min_length=1)
    initial_watermark: Optional[List[Any]] = None
    skipped_ids: List[str] = Field(default_factory=list)
    refresh: bool = Field(default=False)

    @validator("dialect", pre=True)
    def coerce_dialect(cls, value: Any) -> DialectId:
        return parse_dialect_id(value)

    @validator("sql")
    def strip_sql(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("SQL is required for tag SQL query")
        return value

    @validator("key_columns")
    def check_key_columns(cls, value: List[str]) -> List[str]:
        cleaned = [column.strip() for column in value if column and column.strip()]
        if not cleaned:
            raise ValueError("at least one key column is required")
        if len({column.lower() for column in cleaned}) != len(cleaned):
            raise ValueError("key columns must be unique")
        return cleaned

    @validator("initial_watermark", pre=True)
    def wrap_scalar_watermark(cls, value: Any) -> Any:
        if value is None or isinstance(value, (list, tuple)):
            return value
        return [value]

    @validator("skipped_ids", pre=True)
    def stringify_skipped(cls, value: Any) -> List[str]:
        if value is None:
            return []
        return [str(item) for item in value if str(item)]

    @property
    def order_columns(self) -> List[str]:
        """Key columns followed by the id column, which breaks ties between equal keys."""
        lowered = {column.lower() for column in self.key_columns}
        if self.id_column.lower() in lowered:
            return list(self.key_columns)
        return [*self.key_columns, self.id_column]

    @property
    def fingerprint(self) -> str:
        payload = json.dumps(
            {
                "dialect": self.dialect.value,
                "sql": self.sql,
                "keys": self.key_columns,
                "id": self.id_column,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def initial_key(self) -> Optional[Watermark]:
        if self.initial_watermark is None:
            return None
        if len(self.initial_watermark) != len(self.order_columns):
            raise ValueError(
                f"initial_watermark for {self.name} needs {len(self.order_columns)} values ({', '.join(self.order_columns)})"
            )
        return tuple(self.initial_watermark)


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: str


@dataclass(frozen=True)
class SchemaDescriptor:
    columns: Tuple[ColumnDescriptor, ...]

    @property
    def names(self) -> List[str]:
        return [column.name for column in self.columns]

    def find(self, name: str) -> Optional[ColumnDescriptor]:
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None


@dataclass(frozen=True)
class Cursor:
    query_id: str
    last_seen_key: Watermark
    last_seen_at: datetime


@dataclass
class RowPage:
    """Raw rows from one paginated fetch, in ascending key order."""

    rows: List[Dict[str, Any]]
    watermark: Optional[Watermark]

    @property
    def is_empty(self) -> bool:
        return not self.rows


@dataclass(frozen=True)
class TagRecord:
    tag_id: str
    tag_name: str
    additional_keyword: str
    description: Optional[str]
    metadata: Dict[str, str]
    source_timestamp: Optional[datetime]
    checksum: str
    key: Watermark


@dataclass
class Batch:
    """Mapped tag records plus the watermark the cursor moves to once upstream accepts them."""

    records: List[TagRecord] = field(default_factory=list)
    watermark: Optional[Watermark] = None

    def __len__(self) -> int:
        return len(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records


def lookup(row: Mapping[str, Any], column: str) -> Any:
    if column in row:
        return row[column]
    lowered = column.lower()
    for key, value in row.items():
        if key.lower() == lowered:
            return value
    raise KeyError(column)


def _encode_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    if isinstance(value, Decimal):
        return {"$decimal": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Unsupported watermark value type: {type(value).__name__}")


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if "$datetime" in value:
            return datetime.fromisoformat(value["$datetime"])
        if "$date" in value:
            return date.fromisoformat(value["$date"])
        if "$decimal" in value:
            return Decimal(value["$decimal"])
        if "$bytes" in value:
            return base64.b64decode(value["$bytes"])
        raise ValueError(f"Unknown watermark value encoding: {value}")
    return value


def encode_watermark(watermark: Optional[Sequence[Any]]) -> str:
    """Canonical JSON so stored watermarks can be compared as plain strings."""
    if watermark is None:
        return ""
    return json.dumps([_encode_value(value) for value in watermark], sort_keys=True, separators=(",", ":"))


def decode_watermark(text: Optional[str]) -> Optional[Watermark]:
    if not text:
        return None
    return tuple(_decode_value(value) for value in json.loads(text))

from __future__ import annotations

import hashlib
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from connectors.sql.exceptions import SchemaMismatch
from connectors.sql.models import QuerySpec, SchemaDescriptor, TagRecord, lookup
from core.logging import summarize_pairs

logger = logging.getLogger(__name__)

TAG_NAME_COLUMN = "tag_name"
KEYWORD_COLUMN = "additional_keyword"
DESCRIPTION_COLUMN = "tag_description"
METADATA_COLUMN = "tag_metadata"
TIMESTAMP_COLUMN = "source_timestamp"

_ACCEPTED_TYPES: Dict[str, Tuple[type, ...]] = {
    "integer": (int,),
    "decimal": (Decimal, float, int),
    "string": (str,),
    "datetime": (datetime,),
    "date": (date,),
    "boolean": (bool, int),
    "binary": (bytes, bytearray, memoryview),
}


def _canonical(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def row_checksum(values: Sequence[Any]) -> str:
    payload = json.dumps([_canonical(value) for value in values], sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _optional(row: Mapping[str, Any], column: str) -> Any:
    try:
        return lookup(row, column)
    except KeyError:
        return None


class TagMapper:
    """Turns fetched rows into tag records using the column naming conventions of tag queries.

    Rows must carry the tag id column; ``tag_name``, ``additional_keyword``,
    ``tag_description``, ``tag_metadata`` and ``source_timestamp`` are optional.
    """

    def __init__(self, query: QuerySpec) -> None:
        self._query = query

    def map(self, rows: Iterable[Mapping[str, Any]], schema: SchemaDescriptor) -> List[TagRecord]:
        names = [name.lower() for name in schema.names]
        return [self._map_row(position, row, schema, names) for position, row in enumerate(rows, start=1)]

    def _map_row(self, position: int, row: Mapping[str, Any], schema: SchemaDescriptor, names: List[str]) -> TagRecord:
        if [key.lower() for key in row.keys()] != names:
            raise SchemaMismatch(
                f"Row {position} of {self._query.name} has columns {', '.join(row.keys())}, expected {', '.join(schema.names)}"
            )
        for column, value in zip(schema.columns, row.values()):
            accepted = _ACCEPTED_TYPES.get(column.type)
            if value is None or accepted is None:
                continue
            if not isinstance(value, accepted):
                raise SchemaMismatch(
                    f"Column {column.name} of {self._query.name} was probed as {column.type} but row {position} holds {type(value).__name__}"
                )

        tag_id = str(lookup(row, self._query.id_column))
        tag_name = _optional(row, TAG_NAME_COLUMN)
        tag_name = str(tag_name) if tag_name is not None else tag_id
        keyword = _optional(row, KEYWORD_COLUMN)
        description = _optional(row, DESCRIPTION_COLUMN)
        return TagRecord(
            tag_id=tag_id,
            tag_name=tag_name,
            additional_keyword=str(keyword) if keyword is not None else tag_name,
            description=str(description) if description not in (None, "") else None,
            metadata=self._metadata(tag_id, _optional(row, METADATA_COLUMN)),
            source_timestamp=self._timestamp(row),
            checksum=row_checksum(list(row.values())),
            key=tuple(lookup(row, column) for column in self._query.order_columns),
        )

    def _metadata(self, tag_id: str, raw: Any) -> Dict[str, str]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, Mapping):
            return {str(key): str(value) for key, value in raw.items()}
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            parsed = None
        if not isinstance(parsed, dict):
            logger.warning("Ignoring tag metadata that is not a JSON object", extra={"query": self._query.name, "tag_id": tag_id})
            return {}
        return {str(key): "" if value is None else str(value) for key, value in parsed.items()}

    def _timestamp(self, row: Mapping[str, Any]) -> Optional[datetime]:
        value = _optional(row, TIMESTAMP_COLUMN)
        if isinstance(value, datetime):
            return value
        for column in self._query.key_columns:
            value = lookup(row, column)
            if isinstance(value, datetime):
                return value
        return None


def summarize(records: Sequence[TagRecord]) -> str:
    return summarize_pairs((record.tag_name, record.additional_keyword) for record in records)

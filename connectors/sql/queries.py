from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from connectors.sql.exceptions import SyncError, UnsupportedDialect
from connectors.sql.models import QuerySpec
from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_LEGACY_KEYS = {"initial_sync_marker": "initial_watermark", "sync_interval_seconds": "poll_interval_seconds"}


class QueryFileError(SyncError):
    """Raised when the tag query file cannot be parsed into valid queries."""


def _normalize_keys(document: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in document.items():
        snake = _CAMEL_BOUNDARY.sub("_", str(key)).lower()
        normalized[_LEGACY_KEYS.get(snake, snake)] = value
    return normalized


def parse_queries(contents: str, source: str = "<string>") -> List[QuerySpec]:
    """Parse a multi-document YAML file with one tag query per document."""
    try:
        documents = [document for document in yaml.safe_load_all(contents) if document is not None]
    except yaml.YAMLError as exc:
        raise QueryFileError(f"{source} is not valid YAML: {exc}") from exc

    queries: List[QuerySpec] = []
    for position, document in enumerate(documents, start=1):
        if not isinstance(document, dict):
            raise QueryFileError(f"Document {position} in {source} must be a mapping")
        try:
            query = QuerySpec(**_normalize_keys(document))
            query.initial_key()
            queries.append(query)
        except (ValidationError, UnsupportedDialect, ValueError) as exc:
            raise QueryFileError(f"Invalid tag query {document.get('name', position)!r} in {source}: {exc}") from exc

    names = [query.name for query in queries]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise QueryFileError(f"Tag query names must be unique, duplicated: {', '.join(duplicates)}")
    return queries


class TagQueryFile:
    """Tag queries from a YAML file, re-read whenever its contents change.

    A deleted file yields no queries. A file that fails to parse on reload
    keeps the last good set of queries.
    """

    def __init__(self, path: str = settings.tag_sql_file) -> None:
        self._path = Path(path)
        self._digest: Optional[str] = None
        self._queries: List[QuerySpec] = []

    @property
    def path(self) -> Path:
        return self._path

    @property
    def queries(self) -> List[QuerySpec]:
        return list(self._queries)

    def load(self) -> List[QuerySpec]:
        contents = self._read()
        self._queries = parse_queries(contents, str(self._path)) if contents is not None else []
        self._digest = self._hash(contents)
        log_event(logger, "queries.loaded", path=str(self._path), queries=[query.name for query in self._queries])
        return self.queries

    def reload_if_changed(self) -> Optional[List[QuerySpec]]:
        """Return the new queries when the file changed since the last load, else ``None``."""
        contents = self._read()
        digest = self._hash(contents)
        if digest == self._digest:
            return None
        try:
            queries = parse_queries(contents, str(self._path)) if contents is not None else []
        except QueryFileError:
            logger.exception("Keeping previous tag queries, reload failed", extra={"path": str(self._path)})
            self._digest = digest
            return None
        self._queries = queries
        self._digest = digest
        log_event(logger, "queries.reloaded", path=str(self._path), queries=[query.name for query in queries])
        return self.queries

    def _read(self) -> Optional[str]:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _hash(contents: Optional[str]) -> str:
        return hashlib.sha256(contents.encode("utf-8")).hexdigest() if contents is not None else ""

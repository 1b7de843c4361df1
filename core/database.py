from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from core.config import settings

logger = logging.getLogger(__name__)


class DatabasePool:
    """One size-bounded SQLAlchemy engine per configured database endpoint.

    Engines are created lazily and keyed by dialect id. A worker that finds the
    pool exhausted blocks for up to ``timeout_seconds`` before SQLAlchemy raises
    ``sqlalchemy.exc.TimeoutError``.
    """

    def __init__(
        self,
        urls: Optional[Mapping[str, str]] = None,
        pool_size: int = settings.connection_pool_size,
        timeout_seconds: float = settings.connection_timeout_seconds,
        engines: Optional[Mapping[str, Engine]] = None,
    ) -> None:
        self._urls: Dict[str, str] = {key.lower(): url for key, url in (urls if urls is not None else settings.database_urls).items()}
        self._pool_size = pool_size
        self._timeout_seconds = timeout_seconds
        self._engines: Dict[str, Engine] = {key.lower(): engine for key, engine in (engines or {}).items()}
        self._lock = threading.Lock()

    @property
    def endpoints(self) -> list[str]:
        return sorted(set(self._urls) | set(self._engines))

    def engine(self, dialect: Any) -> Engine:
        key = _key(dialect)
        with self._lock:
            engine = self._engines.get(key)
            if engine is not None:
                return engine
            url = self._urls.get(key)
            if not url:
                raise KeyError(f"No database URL configured for {key}")
            engine = create_engine(
                url,
                pool_size=self._pool_size,
                max_overflow=0,
                pool_timeout=self._timeout_seconds,
                pool_pre_ping=True,
            )
            self._engines[key] = engine
            logger.info("Created connection pool", extra={"dialect": key, "pool_size": self._pool_size})
            return engine

    @contextmanager
    def acquire_connection(self, dialect: Any) -> Iterator[Connection]:
        """Pooled connection, rolled back and returned to the pool on every exit path."""
        with self.engine(dialect).connect() as connection:
            try:
                yield connection
            finally:
                if connection.in_transaction():
                    connection.rollback()

    def is_available(self, dialect: Any) -> bool:
        try:
            with self.acquire_connection(dialect) as connection:
                return connection.execute(text("SELECT 1")).scalar() == 1
        except Exception as exc:
            logger.warning("Database availability check failed", extra={"dialect": _key(dialect)}, exc_info=exc)
            return False

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()


def _key(dialect: Any) -> str:
    return str(getattr(dialect, "value", dialect)).lower()

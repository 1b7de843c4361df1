from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Iterable, List, Tuple

from pythonjsonlogger import jsonlogger

query_name_ctx_var: ContextVar[str] = ContextVar("query_name", default="-")


class QueryNameFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.query_name = query_name_ctx_var.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    log_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(query_name)s %(message)s")
    log_handler.setFormatter(formatter)
    log_handler.addFilter(QueryNameFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(log_handler)


def set_query_name(value: str) -> str:
    query_name_ctx_var.set(value)
    return value


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, default=str))


def summarize_pairs(pairs: Iterable[Tuple[str, str]]) -> str:
    """Operator friendly one-liner for a synced batch, e.g. ``Synced 2 tag|keyword pairs a|a, b|b``."""
    items: List[str] = [f"{name}|{keyword}" for name, keyword in pairs]
    noun = "pair" if len(items) == 1 else "pairs"
    return f"Synced {len(items)} tag|keyword {noun} {_ellipsize(items)}".strip()


def _ellipsize(items: List[str]) -> str:
    if not items:
        return ""
    if len(items) < 6:
        return ", ".join(items)
    return f"{items[0]}, ... , {items[-1]}"

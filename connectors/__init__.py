from .base import Ack, CursorStore, PushError, TagSink
from .state_store import SqlCursorStore, ValkeyCursorStore, build_cursor_store
from .upstream import HttpTagSink

__all__ = [
    "Ack",
    "CursorStore",
    "HttpTagSink",
    "PushError",
    "SqlCursorStore",
    "TagSink",
    "ValkeyCursorStore",
    "build_cursor_store",
]

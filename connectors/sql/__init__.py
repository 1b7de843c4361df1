from .dialects import DialectDescriptor, DialectId, describe
from .fetcher import BatchFetcher
from .mapper import TagMapper
from .models import Batch, Cursor, QuerySpec, SchemaDescriptor, TagRecord
from .prober import SchemaCache, SchemaProber
from .queries import TagQueryFile

__all__ = [
    "Batch",
    "BatchFetcher",
    "Cursor",
    "DialectDescriptor",
    "DialectId",
    "QuerySpec",
    "SchemaCache",
    "SchemaDescriptor",
    "SchemaProber",
    "TagMapper",
    "TagQueryFile",
    "TagRecord",
    "describe",
]

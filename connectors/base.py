from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Optional, Union

from connectors.sql.models import Batch, Cursor, Watermark


@dataclass(frozen=True)
class Ack:
    accepted_count: int


@dataclass(frozen=True)
class PushError:
    message: str
    retryable: bool
    status_code: Optional[int] = None


PushResult = Union[Ack, PushError]


class TagSink(abc.ABC):
    @abc.abstractmethod
    async def submit_tags(self, batch: Batch) -> PushResult:
        """Push a whole batch upstream; never partially."""

    async def close(self) -> None:
        return None


class CursorStore(abc.ABC):
    """Durable watermark per query, advanced with compare-and-set semantics."""

    @abc.abstractmethod
    async def load(self, query_id: str) -> Optional[Cursor]:
        """Return the committed cursor, or ``None`` before the first commit."""

    @abc.abstractmethod
    async def commit(self, query_id: str, base: Optional[Watermark], watermark: Watermark) -> Cursor:
        """Move the cursor from ``base`` to ``watermark``.

        Raises ``StaleCursor`` when the stored watermark is not ``base`` and
        ``CursorRegression`` when ``watermark`` sorts before ``base``.
        """

    @abc.abstractmethod
    async def reset(self, query_id: str) -> None:
        """Forget the cursor entirely."""

    async def close(self) -> None:
        return None

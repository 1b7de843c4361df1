from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from connectors.base import Ack, PushError, PushResult, TagSink
from connectors.sql.models import Batch, TagRecord
from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)

UPSERT_BATCH_ENDPOINT = "/tag/upsert/batch"
RETRYABLE_STATUS_CODES = {408, 429}


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def build_tag_request(record: TagRecord, path: str) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "name": record.tag_name,
        "additionalKeywords": [record.additional_keyword],
        "metadata": dict(record.metadata),
        "excludeTagNameKeyword": True,
        "path": path,
    }
    if record.description:
        # only overwrite an existing description when a new one is given
        request["description"] = record.description
    return request


class HttpTagSink(TagSink):
    def __init__(
        self,
        base_url: str = settings.upstream_base_url,
        api_key: Optional[str] = settings.upstream_api_key,
        tag_path: str = settings.tag_upsert_path,
        timeout: float = settings.upstream_timeout_seconds,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not tag_path.startswith("/"):
            raise ValueError("tag path should start with /")
        headers = {"x-api-key": api_key} if api_key else {}
        self._tag_path = tag_path
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport)

    async def submit_tags(self, batch: Batch) -> PushResult:
        if batch.is_empty:
            return Ack(accepted_count=0)
        tags: List[Dict[str, Any]] = [build_tag_request(record, self._tag_path) for record in batch.records]
        try:
            response = await self._client.post(UPSERT_BATCH_ENDPOINT, json={"tags": tags})
        except httpx.TransportError as exc:
            log_event(logger, "upstream.transport_error", error=str(exc), tags=len(tags))
            return PushError(message=f"Upstream unreachable: {exc}", retryable=True)

        if response.is_success:
            log_event(logger, "upstream.accepted", tags=len(tags))
            return Ack(accepted_count=len(tags))
        retryable = is_retryable_status(response.status_code)
        log_event(logger, "upstream.rejected", status=response.status_code, retryable=retryable, tags=len(tags))
        return PushError(
            message=f"Upstream rejected batch with HTTP {response.status_code}: {response.text[:200]}",
            retryable=retryable,
            status_code=response.status_code,
        )

    async def close(self) -> None:
        await self._client.aclose()

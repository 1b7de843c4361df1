from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from redis.asyncio import Redis

from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)

# KEYS[1] cursor hash; ARGV: expected watermark ("" when absent), new watermark, committed-at
COMPARE_AND_SET_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'watermark') or ''
if current ~= ARGV[1] then
  return {0, current}
end
redis.call('HSET', KEYS[1], 'watermark', ARGV[2], 'last_seen_at', ARGV[3])
return {1, current}
"""


class ValkeyClient:
    def __init__(self, client: Optional[Redis] = None) -> None:
        self._client = client or Redis(host=settings.valkey_host, port=settings.valkey_port, decode_responses=True)

    async def close(self) -> None:
        await self._client.aclose()

    async def ping(self) -> bool:
        response = await self._client.ping()
        return bool(response)

    async def get_hash(self, key: str) -> Optional[Dict[str, str]]:
        value = await self._client.hgetall(key)
        if value:
            log_event(logger, "cache.hit", key=key)
            return dict(value)
        log_event(logger, "cache.miss", key=key)
        return None

    async def compare_and_set(self, key: str, expected: str, watermark: str, committed_at: str) -> tuple[bool, str]:
        """Atomically replace the hash's watermark if it still equals ``expected``."""
        result: List[Any] = await self._client.eval(COMPARE_AND_SET_SCRIPT, 1, key, expected, watermark, committed_at)
        swapped, current = int(result[0]) == 1, result[1]
        log_event(logger, "cache.compare_and_set", key=key, swapped=swapped)
        return swapped, current if isinstance(current, str) else current.decode("utf-8")

    async def delete(self, key: str) -> None:
        await self._client.delete(key)
        log_event(logger, "cache.delete", key=key)

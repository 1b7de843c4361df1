from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from connectors.sql.queries import QueryFileError, TagQueryFile
from core.cache.valkey_client import ValkeyClient
from core.config import settings
from core.database import DatabasePool


async def check_queries(query_file: TagQueryFile) -> Dict[str, Any]:
    try:
        queries = query_file.load()
    except QueryFileError as exc:
        return {"healthy": False, "error": str(exc), "queries": []}
    return {"healthy": bool(queries), "queries": [query.name for query in queries]}


async def check_databases(pool: DatabasePool) -> Dict[str, bool]:
    endpoints = pool.endpoints
    results = await asyncio.gather(*(asyncio.to_thread(pool.is_available, endpoint) for endpoint in endpoints))
    return dict(zip(endpoints, results))


async def check_valkey(client: Optional[ValkeyClient] = None) -> Optional[bool]:
    if settings.cursor_backend != "valkey":
        return None
    client = client or ValkeyClient()
    try:
        return await client.ping()
    except (RedisError, OSError):
        return False
    finally:
        await client.close()


async def collect(query_file: Optional[TagQueryFile] = None, pool: Optional[DatabasePool] = None) -> Dict[str, Any]:
    pool = pool or DatabasePool()
    try:
        queries = await check_queries(query_file or TagQueryFile())
        databases = await check_databases(pool)
        valkey = await check_valkey()
    finally:
        pool.dispose()
    healthy = queries["healthy"] and bool(databases) and all(databases.values()) and valkey is not False
    return {"healthy": healthy, "queries": queries, "databases": databases, "valkey": valkey}


async def main() -> int:
    result = await collect()
    print(json.dumps(result, indent=2))
    return 0 if result["healthy"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

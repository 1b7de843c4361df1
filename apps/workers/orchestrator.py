from __future__ import annotations

import asyncio
import logging
import signal
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.workers.metrics import start_metrics_server
from apps.workers.schedulers.jobs import add_interval_job, configure_scheduler, remove_job
from apps.workers.sync_machine import QuerySyncMachine
from connectors.base import CursorStore, TagSink
from connectors.sql.fetcher import BatchFetcher
from connectors.sql.models import QuerySpec
from connectors.sql.prober import SchemaCache, SchemaProber
from connectors.sql.queries import TagQueryFile
from connectors.state_store import build_cursor_store
from connectors.upstream import HttpTagSink
from core.config import settings
from core.database import DatabasePool
from core.logging import configure_logging

logger = logging.getLogger("tagsync.worker")

RELOAD_JOB_ID = "queries:reload"


def _job_id(name: str) -> str:
    return f"query:{name}"


class WorkerOrchestrator:
    """Schedules one sync machine per tag query.

    Every query owns a single interval job with ``max_instances=1`` and at most
    one running cycle, so a cursor only ever has one writer. A semaphore bounds
    how many queries touch the database or upstream at the same time.
    """

    def __init__(
        self,
        query_file: Optional[TagQueryFile] = None,
        pool: Optional[DatabasePool] = None,
        cursor_store: Optional[CursorStore] = None,
        sink: Optional[TagSink] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        max_workers: int = settings.max_workers,
        shutdown_grace_seconds: float = settings.shutdown_grace_seconds,
    ) -> None:
        self._query_file = query_file or TagQueryFile()
        self._pool = pool or DatabasePool()
        self._cursor_store = cursor_store or build_cursor_store()
        self._sink = sink or HttpTagSink()
        self._scheduler = scheduler or configure_scheduler()
        self._prober = SchemaProber(self._pool)
        self._fetcher = BatchFetcher(self._pool)
        self._schema_cache = SchemaCache()
        self._semaphore = asyncio.Semaphore(max_workers)
        self._grace = shutdown_grace_seconds
        self._stop_event = asyncio.Event()
        self._shutting_down = False
        self._machines: Dict[str, QuerySyncMachine] = {}
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def machines(self) -> Dict[str, QuerySyncMachine]:
        return dict(self._machines)

    def status(self) -> List[Dict[str, object]]:
        return [machine.status() for machine in self._machines.values()]

    async def start(self) -> None:
        for query in self._query_file.load():
            self._add(query)
        if not self._machines:
            logger.warning("No tag queries configured", extra={"path": str(self._query_file.path)})
        add_interval_job(self._scheduler, self.reload_queries, settings.query_reload_seconds, RELOAD_JOB_ID)
        self._scheduler.start()
        for name in list(self._machines):
            self._spawn(name)
        await self._stop_event.wait()

    def _add(self, query: QuerySpec) -> None:
        self._machines[query.name] = QuerySyncMachine(
            query,
            prober=self._prober,
            fetcher=self._fetcher,
            cursor_store=self._cursor_store,
            sink=self._sink,
            schema_cache=self._schema_cache,
            slot=lambda: self._semaphore,
        )
        add_interval_job(self._scheduler, self.run_query, query.poll_interval_seconds, _job_id(query.name), args=[query.name])
        logger.info("Scheduled tag query", extra={"query": query.name, "interval": query.poll_interval_seconds})

    def _spawn(self, name: str) -> None:
        asyncio.create_task(self.run_query(name))

    async def run_query(self, name: str) -> None:
        machine = self._machines.get(name)
        if machine is None or self._shutting_down:
            return
        running = self._running.get(name)
        if running is not None and not running.done():
            logger.info("Previous cycle still running, skipping", extra={"query": name})
            return
        task = asyncio.current_task()
        if task is not None:
            self._running[name] = task
        try:
            await machine.run_cycle()
        finally:
            if self._running.get(name) is task:
                self._running.pop(name, None)

    async def reload_queries(self) -> None:
        queries = self._query_file.reload_if_changed()
        if queries is None:
            return
        incoming = {query.name: query for query in queries}
        for name in list(self._machines):
            if name not in incoming:
                await self._retire(name)
                logger.info("Removed tag query", extra={"query": name})
        for name, query in incoming.items():
            current = self._machines.get(name)
            if current is not None and current.query == query:
                continue
            if current is not None:
                await self._retire(name)
                self._schema_cache.invalidate(name)
                logger.info("Tag query changed, restarting", extra={"query": name})
            self._add(query)
            self._spawn(name)

    def reenable(self, name: str) -> bool:
        machine = self._machines.get(name)
        if machine is None:
            return False
        machine.reenable()
        return True

    async def _retire(self, name: str) -> None:
        remove_job(self._scheduler, _job_id(name))
        machine = self._machines.pop(name)
        machine.stop()
        task = self._running.get(name)
        if task is not None and not task.done() and task is not asyncio.current_task():
            _, pending = await asyncio.wait({task}, timeout=self._grace)
            for leftover in pending:
                leftover.cancel()

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down worker orchestrator")
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        for machine in self._machines.values():
            machine.stop()
        tasks = [task for task in self._running.values() if not task.done() and task is not asyncio.current_task()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._grace)
            for task in pending:
                logger.warning("Cancelling sync cycle after grace period", extra={"task": task.get_name()})
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        await self._sink.close()
        await self._cursor_store.close()
        self._pool.dispose()
        self._stop_event.set()


async def _serve() -> None:
    orchestrator = WorkerOrchestrator()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, lambda: asyncio.create_task(orchestrator.shutdown()))
    await orchestrator.start()


def main() -> None:
    configure_logging(settings.log_level)
    start_metrics_server(settings.prometheus_port)
    asyncio.run(_serve())


if __name__ == "__main__":
    main()

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

registry = CollectorRegistry()
TAGS_PUSHED = Counter("tagsync_tags_pushed", "Tags accepted upstream", ["query"], registry=registry)
BATCHES_COMMITTED = Counter("tagsync_batches_committed", "Batches whose cursor was committed", ["query"], registry=registry)
SYNC_FAILURES = Counter("tagsync_failures", "Sync failures by kind", ["query", "kind"], registry=registry)
QUERY_DISABLED = Gauge("tagsync_query_disabled", "1 while a query is disabled", ["query"], registry=registry)
CYCLE_LATENCY = Histogram("tagsync_cycle_seconds", "Duration of one sync cycle", ["query"], registry=registry)


def start_metrics_server(port: int) -> bool:
    if port <= 0:
        return False
    start_http_server(port, registry=registry)
    return True

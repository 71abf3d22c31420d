from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

registry = CollectorRegistry()
REQUEST_COUNT = Counter("sync_request_count", "Total API requests", ["method", "endpoint"], registry=registry)
REQUEST_LATENCY = Histogram("sync_request_latency_ms", "Request latency in milliseconds", ["endpoint"], registry=registry)
HEALTH_STATUS = Gauge("sync_health_status", "Overall system health", registry=registry)

SYNC_BATCHES = Counter("sync_batches_total", "Batch invocations completed", ["connector"], registry=registry)
SYNC_ITEMS = Counter("sync_items_total", "Items examined during batch sync", ["connector", "outcome"], registry=registry)
SYNC_CURSOR_RESETS = Counter("sync_cursor_resets_total", "Full resyncs triggered by expired cursors", ["connector"], registry=registry)
WEBHOOKS = Counter("webhooks_total", "Inbound webhook deliveries", ["connector", "outcome"], registry=registry)
TASKS = Counter("tasks_total", "Scheduled task executions", ["outcome"], registry=registry)

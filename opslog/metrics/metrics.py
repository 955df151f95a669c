"""Prometheus metrics for monitoring collection, classification, persistence and search."""

import prometheus_client as _prom

Counter = _prom.Counter
Gauge = _prom.Gauge
Histogram = _prom.Histogram


# External API metrics (Slack, Notion, completion endpoint)
API_LATENCY = Histogram(
    "opslog_api_latency_seconds",
    "External API latency in seconds by service, source_id, method and status",
    ["service", "source_id", "method", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")),
)
API_CALLS = Counter(
    "opslog_api_calls_total",
    "External API call count by service, source_id, method and status",
    ["service", "source_id", "method", "status"],
)

# Pipeline operation metrics
OP_LATENCY = Histogram(
    "opslog_operation_latency_seconds",
    "Total latency of pipeline operations by stage and operation",
    ["stage", "operation"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 900.0, float("inf")),
)
OP_ITEMS = Histogram(
    "opslog_operation_items",
    "Number of items produced by pipeline operations",
    ["stage", "operation"],
    buckets=(0, 1, 5, 10, 20, 50, 100, 200, 500, 1000, 5000, float("inf")),
)

# Collector
USER_CACHE_HITS = Counter(
    "opslog_user_cache_hits_total",
    "Slack user display-name cache hits",
)
USER_CACHE_MISSES = Counter(
    "opslog_user_cache_misses_total",
    "Slack user display-name cache misses",
)
RATE_LIMIT_HITS = Counter(
    "opslog_rate_limit_hits_total",
    "Rate-limit signals observed by the delay controller, by request kind",
    ["kind"],
)
CURRENT_DELAY = Gauge(
    "opslog_current_delay_seconds",
    "Current inter-request delay applied by the delay controller, by request kind",
    ["kind"],
)

# Classifier / writer / search
CLASSIFICATIONS = Counter(
    "opslog_classifications_total",
    "Classified messages by status (success or fallback)",
    ["status"],
)
RECORDS_WRITTEN = Counter(
    "opslog_records_written_total",
    "Destination rows written by status (ok or failed)",
    ["status"],
)
SEARCH_REQUESTS = Counter(
    "opslog_search_requests_total",
    "Search requests by outcome (answered or no_results)",
    ["outcome"],
)

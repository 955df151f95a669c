"""Metrics module for Prometheus monitoring."""

from .metrics import (
    API_CALLS,
    API_LATENCY,
    CLASSIFICATIONS,
    CURRENT_DELAY,
    OP_ITEMS,
    OP_LATENCY,
    RATE_LIMIT_HITS,
    RECORDS_WRITTEN,
    SEARCH_REQUESTS,
    USER_CACHE_HITS,
    USER_CACHE_MISSES,
)

__all__ = [
    "API_CALLS",
    "API_LATENCY",
    "CLASSIFICATIONS",
    "CURRENT_DELAY",
    "OP_ITEMS",
    "OP_LATENCY",
    "RATE_LIMIT_HITS",
    "RECORDS_WRITTEN",
    "SEARCH_REQUESTS",
    "USER_CACHE_HITS",
    "USER_CACHE_MISSES",
]

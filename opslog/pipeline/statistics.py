"""Run statistics over classified messages. Pure functions, no I/O."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from opslog.models.records import ClassifiedMessage

UNKNOWN = "unknown"


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def _sorted_counts(counter: Counter) -> Dict[str, int]:
    return dict(sorted(counter.items(), key=lambda kv: (-kv[1], kv[0])))


@dataclass
class Statistics:
    total_messages: int = 0
    issue_count: int = 0
    category_counts: Dict[str, int] = field(default_factory=dict)
    urgency_counts: Dict[str, int] = field(default_factory=dict)
    resolution_status_counts: Dict[str, int] = field(default_factory=dict)
    keyword_counts: Dict[str, int] = field(default_factory=dict)
    system_component_counts: Dict[str, int] = field(default_factory=dict)
    resolver_counts: Dict[str, int] = field(default_factory=dict)
    resource_minutes_by_category: Dict[str, int] = field(default_factory=dict)
    average_minutes_by_category: Dict[str, float] = field(default_factory=dict)
    total_resource_minutes: int = 0
    average_resource_minutes: float = 0.0
    messages_with_threads: int = 0
    thread_percentage: float = 0.0
    total_replies: int = 0
    daily_counts: Dict[str, int] = field(default_factory=dict)
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    def top_keywords(self, n: int = 10) -> List[Tuple[str, int]]:
        return list(self.keyword_counts.items())[:n]

    def category_percentage(self, category: str) -> float:
        return _ratio(self.category_counts.get(category, 0), self.total_messages) * 100.0


def _to_datetime(ts: str) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def aggregate(items: Sequence[ClassifiedMessage]) -> Statistics:
    """Reduce classified messages to frequency tables, rollups and ratios."""
    categories: Counter = Counter()
    urgencies: Counter = Counter()
    statuses: Counter = Counter()
    keywords: Counter = Counter()
    components: Counter = Counter()
    resolvers: Counter = Counter()
    minutes: Counter = Counter()
    daily: Counter = Counter()
    issue_count = 0
    with_threads = 0
    total_replies = 0
    times: List[datetime] = []

    for item in items:
        result = item.classification
        categories[result.category] += 1
        urgencies[result.urgency.value] += 1
        statuses[result.resolution_status.value] += 1
        keywords.update(k.lower() for k in result.keywords)
        components.update(result.system_components)
        if result.resolver and result.resolver != UNKNOWN:
            resolvers[result.resolver] += 1
        minutes[result.category] += result.resource_estimate_minutes
        if result.is_issue:
            issue_count += 1
        if item.message.has_thread:
            with_threads += 1
            total_replies += len(item.message.replies)
        when = _to_datetime(item.timestamp)
        if when is not None:
            times.append(when)
            daily[when.date().isoformat()] += 1

    total = len(items)
    total_minutes = sum(minutes.values())
    return Statistics(
        total_messages=total,
        issue_count=issue_count,
        category_counts=_sorted_counts(categories),
        urgency_counts=_sorted_counts(urgencies),
        resolution_status_counts=_sorted_counts(statuses),
        keyword_counts=_sorted_counts(keywords),
        system_component_counts=_sorted_counts(components),
        resolver_counts=_sorted_counts(resolvers),
        resource_minutes_by_category=_sorted_counts(minutes),
        average_minutes_by_category={cat: _ratio(minutes[cat], count) for cat, count in categories.items()},
        total_resource_minutes=total_minutes,
        average_resource_minutes=_ratio(total_minutes, total),
        messages_with_threads=with_threads,
        thread_percentage=_ratio(with_threads, total) * 100.0,
        total_replies=total_replies,
        daily_counts=dict(sorted(daily.items())),
        first_message_at=min(times) if times else None,
        last_message_at=max(times) if times else None,
    )

from datetime import datetime, timezone

from opslog.models.records import ClassificationResult, ClassifiedMessage, ResolutionStatus, Urgency
from opslog.pipeline.statistics import aggregate


def _item(make_message, ts, replies=(), **classification):
    return ClassifiedMessage.create(make_message(ts, replies=replies), ClassificationResult(**classification))


def test_empty_input_has_zero_ratios():
    stats = aggregate([])
    assert stats.total_messages == 0
    assert stats.average_resource_minutes == 0.0
    assert stats.thread_percentage == 0.0
    assert stats.category_percentage("etc") == 0.0
    assert stats.first_message_at is None
    assert stats.top_keywords() == []


def test_aggregate(make_message):
    items = [
        _item(
            make_message,
            "1700000000.0",
            replies=["Restarted the pods", "Confirmed healthy"],
            category="incident_response",
            is_issue=True,
            urgency="high",
            keywords=["Redis", "oom"],
            system_components=["redis"],
            resolver="bob",
            resolution_status="resolved",
            resource_estimate_minutes=60,
        ),
        _item(
            make_message,
            "1700003600.0",
            category="incident_response",
            is_issue=True,
            keywords=["redis"],
            system_components=["redis", "api"],
            resource_estimate_minutes=30,
        ),
        _item(make_message, "1700090000.0", category="meeting_discussion", urgency="low"),
    ]

    stats = aggregate(items)

    assert stats.total_messages == 3
    assert stats.issue_count == 2
    assert stats.category_counts == {"incident_response": 2, "meeting_discussion": 1}
    assert stats.urgency_counts == {Urgency.HIGH.value: 1, Urgency.LOW.value: 1, Urgency.MEDIUM.value: 1}
    assert stats.resolution_status_counts[ResolutionStatus.UNRESOLVED.value] == 2
    assert stats.top_keywords(1) == [("redis", 2)]
    assert stats.system_component_counts == {"redis": 2, "api": 1}
    assert stats.resolver_counts == {"bob": 1}
    assert stats.resource_minutes_by_category["incident_response"] == 90
    assert stats.average_minutes_by_category["incident_response"] == 45.0
    assert stats.average_minutes_by_category["meeting_discussion"] == 0.0
    assert stats.total_resource_minutes == 90
    assert stats.average_resource_minutes == 30.0
    assert stats.messages_with_threads == 1
    assert stats.total_replies == 2
    assert round(stats.thread_percentage, 2) == 33.33
    assert round(stats.category_percentage("incident_response"), 2) == 66.67
    assert stats.daily_counts == {"2023-11-14": 2, "2023-11-15": 1}
    assert stats.first_message_at == datetime.fromtimestamp(1700000000.0, tz=timezone.utc)
    assert stats.last_message_at == datetime.fromtimestamp(1700090000.0, tz=timezone.utc)

import asyncio
import os

import pytest

from opslog.errors import NotFoundError, PermanentRequestError
from opslog.stores.base import RICH_TEXT_LIMIT, DestinationSchema, FieldKind, FieldSpec, RecordFilter
from opslog.stores.local import LocalDocumentStore

SCHEMA = DestinationSchema(
    title="Ops issues - #ops",
    description="test schema",
    fields=(
        FieldSpec(name="Title", kind=FieldKind.TITLE),
        FieldSpec(name="Category", kind=FieldKind.SELECT, options=("monitoring", "deployment")),
        FieldSpec(name="Keywords", kind=FieldKind.MULTI_SELECT),
        FieldSpec(name="Issue", kind=FieldKind.CHECKBOX),
        FieldSpec(name="Summary", kind=FieldKind.TEXT),
    ),
)


@pytest.fixture
def store(temp_dir):
    return LocalDocumentStore(os.path.join(temp_dir, "store.json"))


def test_create_and_query(store):
    async def scenario():
        handle = await store.create_schema(SCHEMA)
        await store.create_record(
            handle.id,
            {"Title": "Redis OOM", "Category": "monitoring", "Keywords": ["redis"], "Issue": True},
            body="Redis ran out of memory",
        )
        await store.create_record(
            handle.id, {"Title": "Weekly deploy", "Category": "deployment", "Keywords": ["deploy"], "Issue": False}
        )
        hits = await store.query_records(
            handle.id, RecordFilter(contains_any=["REDIS"], fields=["Title", "Keywords"], equals={"Issue": True})
        )
        misses = await store.query_records(
            handle.id, RecordFilter(contains_any=["redis"], fields=["Title"], equals={"Issue": False})
        )
        return handle, hits, misses

    handle, hits, misses = asyncio.run(scenario())

    assert handle.url.endswith(f"#{handle.id}")
    assert [r.fields["Title"] for r in hits] == ["Redis OOM"]
    assert misses == []
    assert asyncio.run(store.get_full_text(hits[0].id)) == "Redis ran out of memory"


def test_records_survive_reopen(store, temp_dir):
    async def scenario():
        handle = await store.create_schema(SCHEMA)
        await store.create_record(handle.id, {"Title": "Disk full", "Category": "monitoring"})
        return handle

    handle = asyncio.run(scenario())
    reopened = LocalDocumentStore(os.path.join(temp_dir, "store.json"))
    records = asyncio.run(reopened.query_records(handle.id, RecordFilter()))
    assert [r.fields["Title"] for r in records] == ["Disk full"]


def test_query_newest_first_and_limited(store):
    handle = asyncio.run(store.create_schema(SCHEMA))
    for i in range(3):
        asyncio.run(store.create_record(handle.id, {"Title": f"Issue {i}"}))
    for i, entry in enumerate(store._records.values()):
        entry["created_time"] = f"2024-01-0{i + 1}T00:00:00+00:00"

    records = asyncio.run(store.query_records(handle.id, RecordFilter(limit=2)))

    assert [r.fields["Title"] for r in records] == ["Issue 2", "Issue 1"]


def test_text_is_truncated(store):
    handle = asyncio.run(store.create_schema(SCHEMA))
    asyncio.run(store.create_record(handle.id, {"Title": "x", "Summary": "a" * 5000}))
    record = asyncio.run(store.query_records(handle.id, RecordFilter()))[0]
    assert len(record.fields["Summary"]) == RICH_TEXT_LIMIT


def test_invalid_fields_are_rejected(store):
    handle = asyncio.run(store.create_schema(SCHEMA))
    with pytest.raises(PermanentRequestError):
        asyncio.run(store.create_record(handle.id, {"Nope": 1}))
    with pytest.raises(PermanentRequestError):
        asyncio.run(store.create_record(handle.id, {"Category": "weather"}))
    with pytest.raises(NotFoundError):
        asyncio.run(store.create_record("missing", {"Title": "x"}))


def test_latest_schema_id(store):
    assert asyncio.run(store.latest_schema_id()) is None
    first = asyncio.run(store.create_schema(SCHEMA))
    second = asyncio.run(store.create_schema(SCHEMA.model_copy(update={"title": "Other board"})))
    store._schemas[first.id]["created_time"] = "2024-01-01T00:00:00+00:00"
    store._schemas[second.id]["created_time"] = "2024-02-01T00:00:00+00:00"

    assert asyncio.run(store.latest_schema_id()) == second.id
    assert asyncio.run(store.latest_schema_id("Ops issues")) == first.id

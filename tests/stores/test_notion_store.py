"""Tests for the Notion document store."""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import httpx
from notion_client import APIResponseError

from opslog.errors import ConfigurationError, NotFoundError, PermanentRequestError, TransientExternalError
from opslog.stores.base import DestinationSchema, FieldKind, FieldSpec, RecordFilter
from opslog.stores.notion import NotionDocumentStore, property_to_python, property_value


def _api_error(status: int, code: str) -> APIResponseError:
    err = APIResponseError.__new__(APIResponseError)
    err.status = status
    err.code = code
    return err


class _RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


SCHEMA = DestinationSchema(
    title="Ops issues - #ops",
    description="classified messages",
    fields=(
        FieldSpec(name="Title", kind=FieldKind.TITLE),
        FieldSpec(name="Category", kind=FieldKind.SELECT, options=("monitoring", "etc")),
        FieldSpec(name="Keywords", kind=FieldKind.MULTI_SELECT),
        FieldSpec(name="Issue", kind=FieldKind.CHECKBOX),
        FieldSpec(name="Summary", kind=FieldKind.TEXT),
    ),
)


class TestPropertyConversion(unittest.TestCase):
    def test_property_value(self):
        self.assertEqual(property_value(FieldKind.SELECT, "etc"), {"select": {"name": "etc"}})
        self.assertEqual(property_value(FieldKind.CHECKBOX, 1), {"checkbox": True})
        self.assertIsNone(property_value(FieldKind.TEXT, None))
        multi = property_value(FieldKind.MULTI_SELECT, ["redis", "a,b", "redis", " "])
        self.assertEqual(multi, {"multi_select": [{"name": "redis"}, {"name": "a b"}]})
        title = property_value(FieldKind.TITLE, "x" * 3000)
        self.assertEqual(len(title["title"][0]["text"]["content"]), 2000)

    def test_property_to_python(self):
        self.assertEqual(
            property_to_python({"type": "title", "title": [{"plain_text": "Redis "}, {"plain_text": "OOM"}]}),
            "Redis OOM",
        )
        self.assertEqual(property_to_python({"type": "select", "select": None}), None)
        self.assertEqual(
            property_to_python({"type": "multi_select", "multi_select": [{"name": "kafka"}]}), ["kafka"]
        )
        self.assertEqual(property_to_python({"type": "checkbox", "checkbox": True}), True)


class TestNotionDocumentStore(unittest.TestCase):
    """Test cases for NotionDocumentStore."""

    def setUp(self):
        self.client = MagicMock()
        self.sleep = _RecordingSleep()
        self.store = NotionDocumentStore(
            parent_page_id="1234-abcd", client=self.client, api_retries=2, sleep=self.sleep
        )

    def test_requires_token(self):
        with self.assertRaises(ConfigurationError):
            NotionDocumentStore(token=None)

    def test_create_schema_and_record(self):
        self.client.databases.create = AsyncMock(return_value={"id": "db1", "url": "https://notion.so/db1"})
        self.client.pages.create = AsyncMock(return_value={"id": "p1", "url": "https://notion.so/p1"})

        async def scenario():
            handle = await self.store.create_schema(SCHEMA)
            record = await self.store.create_record(
                handle.id,
                {"Title": "Redis OOM", "Category": "monitoring", "Summary": None},
                body="line one\n\nline two",
            )
            return handle, record

        handle, record = asyncio.run(scenario())

        self.assertEqual(handle.id, "db1")
        self.assertEqual(record.url, "https://notion.so/p1")
        create_kwargs = self.client.databases.create.call_args.kwargs
        self.assertEqual(create_kwargs["parent"], {"type": "page_id", "page_id": "1234abcd"})
        self.assertEqual(
            create_kwargs["properties"]["Category"], {"select": {"options": [{"name": "monitoring"}, {"name": "etc"}]}}
        )
        page_kwargs = self.client.pages.create.call_args.kwargs
        self.assertNotIn("Summary", page_kwargs["properties"])
        self.assertEqual(len(page_kwargs["children"]), 2)
        self.client.databases.retrieve.assert_not_called()

    def test_create_schema_without_parent(self):
        store = NotionDocumentStore(client=self.client)
        with self.assertRaises(ConfigurationError):
            asyncio.run(store.create_schema(SCHEMA))

    def test_unknown_property_is_rejected(self):
        self.client.databases.retrieve = AsyncMock(
            return_value={"properties": {"Title": {"type": "title"}, "Owner": {"type": "people"}}}
        )
        with self.assertRaises(PermanentRequestError):
            asyncio.run(self.store.create_record("db1", {"Owner": "U1"}))

    def test_rate_limit_is_retried(self):
        self.client.pages.create = AsyncMock(side_effect=[_api_error(429, "rate_limited"), {"id": "p1"}])
        self.store._kinds["db1"] = {"Title": FieldKind.TITLE}

        handle = asyncio.run(self.store.create_record("db1", {"Title": "x"}))

        self.assertEqual(handle.id, "p1")
        self.assertEqual(self.sleep.calls, [2])

    def test_server_errors_exhaust_retries(self):
        self.client.pages.create = AsyncMock(side_effect=_api_error(502, "service_unavailable"))
        self.store._kinds["db1"] = {"Title": FieldKind.TITLE}

        with self.assertRaises(TransientExternalError):
            asyncio.run(self.store.create_record("db1", {"Title": "x"}))

        self.assertEqual(self.client.pages.create.await_count, 3)
        self.assertEqual(self.sleep.calls, [2, 4])

    def test_transport_errors_are_retried(self):
        self.client.pages.create = AsyncMock(side_effect=[httpx.ConnectError("connection reset"), {"id": "p1"}])
        self.store._kinds["db1"] = {"Title": FieldKind.TITLE}

        handle = asyncio.run(self.store.create_record("db1", {"Title": "x"}))

        self.assertEqual(handle.id, "p1")
        self.assertEqual(self.sleep.calls, [2])

    def test_transport_errors_exhaust_as_transient(self):
        self.client.pages.create = AsyncMock(side_effect=httpx.ReadError("stream closed"))
        self.store._kinds["db1"] = {"Title": FieldKind.TITLE}

        with self.assertRaises(TransientExternalError):
            asyncio.run(self.store.create_record("db1", {"Title": "x"}))

        self.assertEqual(self.client.pages.create.await_count, 3)

    def test_error_mapping(self):
        cases = [
            (401, "unauthorized", ConfigurationError),
            (404, "object_not_found", NotFoundError),
            (400, "validation_error", PermanentRequestError),
        ]
        for status, code, expected in cases:
            with self.subTest(status=status):
                self.client.databases.retrieve = AsyncMock(side_effect=_api_error(status, code))
                with self.assertRaises(expected):
                    asyncio.run(self.store.query_records("db-x", RecordFilter()))
        self.assertEqual(self.sleep.calls, [])

    def test_query_builds_filter(self):
        self.store._kinds["db1"] = {
            "Title": FieldKind.TITLE,
            "Keywords": FieldKind.MULTI_SELECT,
            "Issue": FieldKind.CHECKBOX,
        }
        self.client.databases.query = AsyncMock(
            return_value={
                "results": [
                    {
                        "id": "p1",
                        "url": "https://notion.so/p1",
                        "created_time": "2024-05-01T00:00:00.000Z",
                        "properties": {"Title": {"type": "title", "title": [{"plain_text": "Redis OOM"}]}},
                    }
                ]
            }
        )
        record_filter = RecordFilter(
            contains_any=["redis", "oom"], fields=["Title", "Keywords"], equals={"Issue": True}, limit=5
        )

        records = asyncio.run(self.store.query_records("db1", record_filter))

        self.assertEqual(records[0].fields["Title"], "Redis OOM")
        kwargs = self.client.databases.query.call_args.kwargs
        self.assertEqual(kwargs["page_size"], 5)
        self.assertEqual(kwargs["sorts"], [{"timestamp": "created_time", "direction": "descending"}])
        issue_clause, or_clause = kwargs["filter"]["and"]
        self.assertEqual(issue_clause, {"property": "Issue", "checkbox": {"equals": True}})
        self.assertEqual(len(or_clause["or"]), 4)
        self.assertIn({"property": "Title", "title": {"contains": "redis"}}, or_clause["or"])
        self.assertIn({"property": "Keywords", "multi_select": {"contains": "oom"}}, or_clause["or"])

    def test_get_full_text_paginates(self):
        self.client.blocks.children.list = AsyncMock(
            side_effect=[
                {
                    "results": [{"type": "paragraph", "paragraph": {"rich_text": [{"plain_text": "first"}]}}],
                    "has_more": True,
                    "next_cursor": "c2",
                },
                {
                    "results": [
                        {"type": "image", "image": {}},
                        {"type": "quote", "quote": {"rich_text": [{"plain_text": "second"}]}},
                    ],
                    "has_more": False,
                },
            ]
        )

        text = asyncio.run(self.store.get_full_text("p1"))

        self.assertEqual(text, "first\nsecond")
        self.assertEqual(self.client.blocks.children.list.call_args_list[1].kwargs["start_cursor"], "c2")

    def test_latest_schema_id_filters_by_prefix(self):
        self.client.search = AsyncMock(
            return_value={
                "results": [
                    {"id": "db9", "title": [{"plain_text": "Team notes"}]},
                    {"id": "db2", "title": [{"plain_text": "Ops issues - #ops"}]},
                ]
            }
        )
        self.assertEqual(asyncio.run(self.store.latest_schema_id("Ops issues")), "db2")


if __name__ == "__main__":
    unittest.main()

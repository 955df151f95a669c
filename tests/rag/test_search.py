import asyncio
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from opslog.errors import ConfigurationError, StaleConnectionError
from opslog.models.config import SearchConfig
from opslog.models.records import CategoryTaxonomy, RelevanceScoredPage
from opslog.pipeline.writer import IssueField, build_issue_schema
from opslog.rag.search import (
    NO_RESULTS_MESSAGE,
    TRUNCATION_MARKER,
    LengthWeightedTermFrequency,
    SearchService,
    SearchState,
    assemble_context,
    record_to_page,
)
from opslog.stores.base import StoredRecord
from opslog.stores.local import LocalDocumentStore


def _page(title, body):
    return RelevanceScoredPage(id=title, title=title, body=body)


def _record(record_id, title, cause="", thread_link=None):
    return StoredRecord(
        id=record_id,
        url=f"https://notion.so/{record_id}",
        fields={
            IssueField.TITLE: title,
            IssueField.CAUSE: cause,
            IssueField.KEYWORDS: ["infra"],
            IssueField.THREAD_LINK: thread_link,
        },
    )


def test_scorer_weights_by_token_length():
    scorer = LengthWeightedTermFrequency()
    assert scorer.score("redis db", "Redis restarted; redis healthy; db ok") == 10.0
    assert scorer.score("kafka", "nothing relevant") == 0.0


def test_context_fits_everything():
    pages = [_page("A", "x" * 10), _page("B", "y" * 10)]
    context = assemble_context(pages, 1000)
    assert context.startswith("[1] A\n")
    assert "[2] B\n" in context
    assert not context.endswith(TRUNCATION_MARKER)


@pytest.mark.parametrize("budget", [20, 60, 100, 4])
def test_context_truncation_respects_budget(budget):
    pages = [_page("A", "x" * 50), _page("B", "y" * 50)]
    context = assemble_context(pages, budget)
    assert len(context) <= budget
    assert context.endswith(TRUNCATION_MARKER)


def test_context_cuts_second_page():
    pages = [_page("A", "x" * 50), _page("B", "y" * 50)]
    context = assemble_context(pages, 100)
    assert len(context) == 100
    assert "[2] B" in context


def test_context_tiny_budget():
    assert assemble_context([_page("A", "body")], 2) == ".."
    assert assemble_context([], 2) == ""


def test_record_to_page():
    page = record_to_page(_record("r1", "Redis OOM", cause="maxmemory too low", thread_link="https://x/p1"))
    assert page.title == "Redis OOM"
    assert "Cause: maxmemory too low" in page.body
    assert page.thread_link == "https://x/p1"


class TestSearchService:
    def _service(self, scripted_completion, records, responses=("The pool was exhausted [1].",), **config):
        store = MagicMock()
        store.latest_schema_id = AsyncMock(return_value="db-latest")
        store.query_records = AsyncMock(return_value=records)
        store.get_full_text = AsyncMock(return_value="")
        completion = scripted_completion(list(responses))
        settings = SearchConfig(**{"top_n": 2, "context_budget_chars": 400, **config})
        return SearchService(store, completion, settings, schema_title_prefix="Ops issues"), store, completion

    def test_no_candidates_skips_completion(self, scripted_completion):
        service, store, completion = self._service(scripted_completion, [])

        result = asyncio.run(service.search("redis timeout"))

        assert not result.found
        assert result.message == NO_RESULTS_MESSAGE
        assert result.state == SearchState.NO_RESULTS
        assert completion.prompts == []
        assert result.trace == [
            SearchState.RECEIVED,
            SearchState.KEYWORDS_EXTRACTED,
            SearchState.CANDIDATES_FETCHED,
            SearchState.NO_RESULTS,
        ]

    def test_query_without_keywords_skips_store(self, scripted_completion):
        service, store, completion = self._service(scripted_completion, [])
        result = asyncio.run(service.search("?? !"))
        assert not result.found
        store.query_records.assert_not_awaited()

    def test_ranked_answer(self, scripted_completion):
        records = [
            _record("r1", "Kafka lag on orders"),
            _record("r2", "Redis timeout on checkout", cause="redis maxmemory reached, redis evicted keys"),
            _record("r3", "Redis failover drill"),
        ]
        service, store, completion = self._service(scripted_completion, records)

        result = asyncio.run(service.search("redis timeout"))

        assert result.found
        assert result.answer == "The pool was exhausted [1]."
        assert [p.id for p in result.sources] == ["r2", "r3"]
        assert result.sources[0].score >= result.sources[1].score
        assert len(completion.prompts) == 1
        assert "[1] Redis timeout on checkout" in completion.prompts[0]
        assert "Kafka lag" not in completion.prompts[0]
        assert result.trace[-2:] == [SearchState.CONTEXT_BUILT, SearchState.ANSWER_SYNTHESIZED]

        record_filter = store.query_records.call_args.args[1]
        assert store.query_records.call_args.args[0] == "db-latest"
        assert record_filter.equals == {IssueField.IS_ISSUE: True}
        assert "redis" in [k.lower() for k in record_filter.contains_any]
        store.latest_schema_id.assert_awaited_once_with("Ops issues")

    def test_configured_database_and_all_rows(self, scripted_completion):
        service, store, _ = self._service(
            scripted_completion, [_record("r1", "Redis OOM")], database_id="db-fixed", issues_only=False
        )
        asyncio.run(service.search("redis"))
        assert store.query_records.call_args.args[0] == "db-fixed"
        assert store.query_records.call_args.args[1].equals == {}
        store.latest_schema_id.assert_not_awaited()

    def test_page_content_is_appended(self, scripted_completion):
        service, store, completion = self._service(scripted_completion, [_record("r1", "Redis OOM")])
        store.get_full_text = AsyncMock(return_value="Thread: flushed keys and raised maxmemory")
        asyncio.run(service.search("redis"))
        assert "flushed keys" in completion.prompts[0]

    def test_missing_database(self, scripted_completion):
        service, store, _ = self._service(scripted_completion, [])
        store.latest_schema_id = AsyncMock(return_value=None)
        with pytest.raises(ConfigurationError):
            asyncio.run(service.search("redis"))

    def test_stale_completion_reconnects_once(self, scripted_completion):
        service, _, completion = self._service(
            scripted_completion,
            [_record("r1", "Redis OOM")],
            responses=(StaleConnectionError("timed out"), "Answer after reconnect"),
        )
        result = asyncio.run(service.search("redis"))
        assert result.answer == "Answer after reconnect"
        assert completion.reconnects == 1


def test_search_over_local_store(scripted_completion, temp_dir):
    store = LocalDocumentStore(os.path.join(temp_dir, "store.json"))

    async def seed():
        schema = await store.create_schema(build_issue_schema("ops", CategoryTaxonomy(), 2))
        await store.create_record(
            schema.id,
            {IssueField.TITLE: "Nginx 502 on gateway", IssueField.IS_ISSUE: True, IssueField.CAUSE: "upstream down"},
            body="Nginx returned 502 for 10 minutes",
        )
        await store.create_record(
            schema.id, {IssueField.TITLE: "Team lunch", IssueField.IS_ISSUE: False}, body="nginx themed lunch"
        )

    asyncio.run(seed())
    completion = scripted_completion(["Upstream was down [1]."])
    service = SearchService(store, completion, SearchConfig(), schema_title_prefix="Ops issues")

    result = asyncio.run(service.search("nginx 502"))

    assert result.found
    assert [p.title for p in result.sources] == ["Nginx 502 on gateway"]
    assert "Nginx returned 502" in completion.prompts[0]

"""Retrieval-augmented search over the classified issue store.

A query moves through a fixed sequence of states::

    RECEIVED -> KEYWORDS_EXTRACTED -> CANDIDATES_FETCHED -> NO_RESULTS
                                                         -> CONTEXT_BUILT -> ANSWER_SYNTHESIZED

Candidates come from a recall-oriented ``contains`` filter, are ranked by a
``RelevanceScorer`` and the best ones are packed into a bounded context for a single
grounded completion call. When no candidate is found the completion endpoint is
never called.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from opslog.errors import ConfigurationError, NotFoundError, PermanentRequestError, StaleConnectionError
from opslog.metrics.metrics import SEARCH_REQUESTS
from opslog.models.config import SearchConfig
from opslog.models.records import RelevanceScoredPage
from opslog.pipeline.writer import SEARCHABLE_FIELDS, IssueField
from opslog.rag.engine import CompletionClient
from opslog.rag.keywords import extract_keywords, tokenize
from opslog.stores.base import DocumentStore, RecordFilter, StoredRecord

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."
CONTEXT_SEPARATOR = "\n\n---\n\n"
NO_RESULTS_MESSAGE = "No similar issue found."


class SearchState(str, Enum):
    RECEIVED = "received"
    KEYWORDS_EXTRACTED = "keywords_extracted"
    CANDIDATES_FETCHED = "candidates_fetched"
    NO_RESULTS = "no_results"
    CONTEXT_BUILT = "context_built"
    ANSWER_SYNTHESIZED = "answer_synthesized"


class RelevanceScorer(ABC):
    """Scores a candidate text against a query; higher is more relevant."""

    @abstractmethod
    def score(self, query: str, text: str) -> float:
        """Return the relevance of `text` to `query`."""


class LengthWeightedTermFrequency(RelevanceScorer):
    """Sum over query tokens longer than two characters of ``occurrences * len(token)``."""

    min_token_length = 3

    def score(self, query: str, text: str) -> float:
        haystack = text.lower()
        total = 0
        for token in dict.fromkeys(tokenize(query)):
            if len(token) < self.min_token_length:
                continue
            total += len(re.findall(re.escape(token), haystack)) * len(token)
        return float(total)


def assemble_context(pages: List[RelevanceScoredPage], budget: int, marker: str = TRUNCATION_MARKER) -> str:
    """Concatenate pages in order into at most `budget` characters.

    The first page that does not fit is cut and closed with `marker` instead of being
    dropped; pages after it are left out.
    """
    if budget <= len(marker):
        return marker[:budget] if pages else ""
    parts: List[str] = []
    length = 0
    for index, page in enumerate(pages, start=1):
        piece = f"[{index}] {page.title}\n{page.body}"
        if parts:
            piece = CONTEXT_SEPARATOR + piece
        remaining = budget - length
        if len(piece) <= remaining:
            parts.append(piece)
            length += len(piece)
            continue
        min_room = len(CONTEXT_SEPARATOR) + 1 if parts else 1
        if remaining - len(marker) >= min_room:
            parts.append(piece[: remaining - len(marker)] + marker)
            return "".join(parts)
        # no room for this page: close the existing context instead
        context = "".join(parts)
        return context[: budget - len(marker)] + marker
    return "".join(parts)


def build_answer_prompt(query: str, context: str) -> str:
    return (
        "You are an operations assistant answering questions from past incident records.\n"
        "Answer the question using ONLY the context below. If the context does not contain "
        "the answer, say explicitly that the records do not cover it; do not guess.\n"
        "Write the answer in the same language as the question. Mention the record numbers "
        "([1], [2], ...) you relied on.\n\n"
        f"Context:\n{context}\n\n"
        f"Question: {query}\n\n"
        "Answer:"
    )


def record_to_page(record: StoredRecord, body: Optional[str] = None) -> RelevanceScoredPage:
    """Project a stored issue row onto a searchable page."""
    values = record.fields
    if body is None:
        lines = []
        for name in SEARCHABLE_FIELDS:
            if name == IssueField.TITLE:
                continue
            value = values.get(name)
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            if value:
                lines.append(f"{name}: {value}")
        body = "\n".join(lines)
    return RelevanceScoredPage(
        id=record.id,
        title=str(values.get(IssueField.TITLE) or ""),
        body=body,
        url=record.url,
        thread_link=values.get(IssueField.THREAD_LINK) or None,
    )


@dataclass
class SearchResult:
    """Outcome of one query."""

    found: bool
    state: SearchState
    keywords: List[str] = field(default_factory=list)
    answer: Optional[str] = None
    message: Optional[str] = None
    sources: List[RelevanceScoredPage] = field(default_factory=list)
    trace: List[SearchState] = field(default_factory=list)


class SearchService:
    """Keyword retrieval, relevance ranking and grounded answer synthesis.

    Args:
        store: Document store holding the issue rows.
        completion: Completion endpoint used for the answer.
        config: Search settings.
        scorer: Relevance strategy; length-weighted term frequency by default.
        schema_title_prefix: Used to find the latest issue schema when no database id is configured.
    """

    def __init__(
        self,
        store: DocumentStore,
        completion: CompletionClient,
        config: Optional[SearchConfig] = None,
        scorer: Optional[RelevanceScorer] = None,
        schema_title_prefix: Optional[str] = None,
    ):
        self.store = store
        self.completion = completion
        self.config = config or SearchConfig()
        self.scorer = scorer or LengthWeightedTermFrequency()
        self.schema_title_prefix = schema_title_prefix

    async def _schema_id(self) -> str:
        if self.config.database_id:
            return self.config.database_id
        schema_id = await self.store.latest_schema_id(self.schema_title_prefix)
        if not schema_id:
            raise ConfigurationError("No issue database found. Run 'opslog analyze' first or set search.database_id.")
        logger.info(f"Using latest issue database {schema_id}")
        return schema_id

    async def _page_for(self, record: StoredRecord) -> RelevanceScoredPage:
        page = record_to_page(record)
        if not self.config.include_page_content:
            return page
        try:
            content = await self.store.get_full_text(record.id)
        except (NotFoundError, PermanentRequestError) as e:
            logger.warning(f"Could not read content of {record.id}: {e}")
            return page
        if content:
            page = page.model_copy(update={"body": f"{page.body}\n{content}" if page.body else content})
        return page

    def rank(self, query: str, pages: List[RelevanceScoredPage]) -> List[RelevanceScoredPage]:
        """Score pages against `query` and sort by non-increasing score."""
        scored = [p.model_copy(update={"score": self.scorer.score(query, f"{p.title}\n{p.body}")}) for p in pages]
        return sorted(scored, key=lambda p: p.score, reverse=True)

    async def search(self, query: str) -> SearchResult:
        trace = [SearchState.RECEIVED]

        keywords = extract_keywords(query)[: self.config.max_keywords]
        trace.append(SearchState.KEYWORDS_EXTRACTED)
        logger.info(f"Search '{query}': keywords={keywords}")

        records: List[StoredRecord] = []
        if keywords:
            record_filter = RecordFilter(
                contains_any=keywords,
                fields=list(SEARCHABLE_FIELDS),
                equals={IssueField.IS_ISSUE: True} if self.config.issues_only else {},
                limit=self.config.candidate_limit,
            )
            records = await self.store.query_records(await self._schema_id(), record_filter)
        trace.append(SearchState.CANDIDATES_FETCHED)

        if not records:
            trace.append(SearchState.NO_RESULTS)
            SEARCH_REQUESTS.labels(outcome="no_results").inc()
            logger.info(f"Search '{query}': no candidates")
            return SearchResult(
                found=False, state=SearchState.NO_RESULTS, keywords=keywords, message=NO_RESULTS_MESSAGE, trace=trace
            )

        pages = [await self._page_for(record) for record in records]
        ranked = self.rank(query, pages)
        top = ranked[: self.config.top_n]
        context = assemble_context(top, self.config.context_budget_chars)
        trace.append(SearchState.CONTEXT_BUILT)
        logger.debug(f"Context built from {len(top)} of {len(ranked)} candidates ({len(context)} chars)")

        prompt = build_answer_prompt(query, context)
        try:
            answer = await self.completion.complete(prompt)
        except StaleConnectionError as e:
            logger.warning(f"Completion connection stale ({e}); reconnecting once")
            await self.completion.reconnect()
            answer = await self.completion.complete(prompt)
        trace.append(SearchState.ANSWER_SYNTHESIZED)
        SEARCH_REQUESTS.labels(outcome="answered").inc()

        return SearchResult(
            found=True,
            state=SearchState.ANSWER_SYNTHESIZED,
            keywords=keywords,
            answer=answer.strip(),
            sources=top,
            trace=trace,
        )

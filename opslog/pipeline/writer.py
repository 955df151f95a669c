"""Bulk persistence of classified messages into the document store.

One schema is created per run; every classified message then becomes one record.
Rows are written in small paced batches. A failed row is counted and logged, and
the run carries on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from opslog.errors import DataIntegrityError, PermanentRequestError, TransientExternalError
from opslog.metrics.metrics import OP_ITEMS, OP_LATENCY, RECORDS_WRITTEN
from opslog.models.config import WriterConfig
from opslog.models.records import (
    CategoryTaxonomy,
    ChannelHandle,
    ClassifiedMessage,
    ResolutionStatus,
    Urgency,
)
from opslog.sources.slack import SleepFn
from opslog.stores.base import DestinationSchema, DocumentStore, FieldKind, FieldSpec, StoreHandle

logger = logging.getLogger(__name__)


class IssueField:
    """Field names of the issue schema."""

    TITLE = "Title"
    CATEGORY = "Category"
    URGENCY = "Urgency"
    STATUS = "Status"
    IS_ISSUE = "Issue"
    ISSUE_TYPE = "Issue Type"
    SYSTEM_COMPONENTS = "System Components"
    CAUSE = "Cause"
    RESOLUTION = "Resolution"
    REPORTER = "Reporter"
    RESOLVER = "Resolver"
    RESOLUTION_STATUS = "Resolution Status"
    ESTIMATED_MINUTES = "Estimated Minutes"
    OCCURRED_AT = "Occurred At"
    KEYWORDS = "Keywords"
    ORIGINAL_MESSAGE = "Original Message"
    THREAD_CONTENT = "Thread Content"
    REPLY_COUNT = "Reply Count"
    THREAD_LINK = "Thread Link"
    SUMMARY = "Summary"


SEARCHABLE_FIELDS: Tuple[str, ...] = (
    IssueField.TITLE,
    IssueField.ISSUE_TYPE,
    IssueField.CAUSE,
    IssueField.RESOLUTION,
    IssueField.ORIGINAL_MESSAGE,
    IssueField.THREAD_CONTENT,
    IssueField.SUMMARY,
)

WORKFLOW_STATUSES: Tuple[str, ...] = ("new", "in_progress", "waiting", "done", "cancelled")
INITIAL_STATUS = "new"


def build_issue_schema(
    channel_name: str, taxonomy: CategoryTaxonomy, message_count: int, title_prefix: str = "Ops issues"
) -> DestinationSchema:
    """Issue schema for one run; category options come from the taxonomy."""
    created = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return DestinationSchema(
        title=f"{title_prefix}: #{channel_name} ({message_count} messages)",
        description=(
            f"Slack #{channel_name}: {message_count} messages classified on {created}. "
            f"Category taxonomy {taxonomy.version}."
        ),
        fields=(
            FieldSpec(name=IssueField.TITLE, kind=FieldKind.TITLE),
            FieldSpec(name=IssueField.CATEGORY, kind=FieldKind.SELECT, options=tuple(taxonomy.categories)),
            FieldSpec(name=IssueField.URGENCY, kind=FieldKind.SELECT, options=tuple(u.value for u in Urgency)),
            FieldSpec(name=IssueField.STATUS, kind=FieldKind.SELECT, options=WORKFLOW_STATUSES),
            FieldSpec(name=IssueField.IS_ISSUE, kind=FieldKind.CHECKBOX),
            FieldSpec(name=IssueField.ISSUE_TYPE, kind=FieldKind.TEXT),
            FieldSpec(name=IssueField.SYSTEM_COMPONENTS, kind=FieldKind.MULTI_SELECT),
            FieldSpec(name=IssueField.CAUSE, kind=FieldKind.TEXT),
            FieldSpec(name=IssueField.RESOLUTION, kind=FieldKind.TEXT),
            FieldSpec(name=IssueField.REPORTER, kind=FieldKind.TEXT),
            FieldSpec(name=IssueField.RESOLVER, kind=FieldKind.TEXT),
            FieldSpec(
                name=IssueField.RESOLUTION_STATUS,
                kind=FieldKind.SELECT,
                options=tuple(s.value for s in ResolutionStatus),
            ),
            FieldSpec(name=IssueField.ESTIMATED_MINUTES, kind=FieldKind.NUMBER),
            FieldSpec(name=IssueField.OCCURRED_AT, kind=FieldKind.DATE),
            FieldSpec(name=IssueField.KEYWORDS, kind=FieldKind.MULTI_SELECT),
            FieldSpec(name=IssueField.ORIGINAL_MESSAGE, kind=FieldKind.TEXT),
            FieldSpec(name=IssueField.THREAD_CONTENT, kind=FieldKind.TEXT),
            FieldSpec(name=IssueField.REPLY_COUNT, kind=FieldKind.NUMBER),
            FieldSpec(name=IssueField.THREAD_LINK, kind=FieldKind.URL),
            FieldSpec(name=IssueField.SUMMARY, kind=FieldKind.TEXT),
        ),
    )


def build_permalink(workspace_url: str, channel_id: str, ts: str) -> str:
    """Slack archive link for a message: ``{workspace}/archives/{channel}/p{ts without dot}``."""
    return f"{workspace_url.rstrip('/')}/archives/{channel_id}/p{ts.replace('.', '')}"


def _occurred_at(ts: str) -> Optional[str]:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()
    except (TypeError, ValueError):
        return None


def build_record_fields(item: ClassifiedMessage, channel: ChannelHandle, workspace_url: str) -> Dict[str, Any]:
    """Map one classified message onto the issue schema."""
    message = item.message
    result = item.classification
    thread_text = "\n".join(f"[{r.author}] {r.text}" for r in message.replies)
    return {
        IssueField.TITLE: result.summary,
        IssueField.CATEGORY: result.category,
        IssueField.URGENCY: result.urgency.value,
        IssueField.STATUS: INITIAL_STATUS,
        IssueField.IS_ISSUE: result.is_issue,
        IssueField.ISSUE_TYPE: result.issue_type,
        IssueField.SYSTEM_COMPONENTS: list(result.system_components),
        IssueField.CAUSE: result.cause,
        IssueField.RESOLUTION: result.resolution,
        IssueField.REPORTER: result.reporter,
        IssueField.RESOLVER: result.resolver,
        IssueField.RESOLUTION_STATUS: result.resolution_status.value,
        IssueField.ESTIMATED_MINUTES: result.resource_estimate_minutes,
        IssueField.OCCURRED_AT: _occurred_at(message.ts),
        IssueField.KEYWORDS: list(result.keywords),
        IssueField.ORIGINAL_MESSAGE: message.message.text,
        IssueField.THREAD_CONTENT: thread_text,
        IssueField.REPLY_COUNT: len(message.replies),
        IssueField.THREAD_LINK: build_permalink(workspace_url, channel.id, message.ts),
        IssueField.SUMMARY: result.thread_summary or result.summary,
    }


@dataclass
class WriteFailure:
    timestamp: str
    error: str


@dataclass
class PersistResult:
    """Tally of one ``persist`` call."""

    written_count: int = 0
    failures: List[WriteFailure] = field(default_factory=list)
    handles: List[StoreHandle] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def success_rate(self) -> float:
        total = self.written_count + self.failed_count
        return (self.written_count / total * 100.0) if total else 0.0


class BulkWriter:
    """Creates the issue schema and writes classified messages in paced batches.

    Args:
        store: Destination document store.
        config: Writer settings (batch size and pacing).
        sleep: Awaitable sleep used for pacing.
    """

    def __init__(self, store: DocumentStore, config: Optional[WriterConfig] = None, sleep: SleepFn = asyncio.sleep):
        self.store = store
        self.config = config or WriterConfig()
        self._sleep = sleep

    async def create_schema(self, schema: DestinationSchema) -> StoreHandle:
        """Create the run's schema. Any failure here is fatal for the run."""
        try:
            handle = await self.store.create_schema(schema)
        except Exception as e:
            logger.error(f"Schema creation failed for '{schema.title}': {e}")
            raise
        logger.info(f"Schema ready: {schema.title} ({handle.url or handle.id})")
        return handle

    async def persist(
        self,
        schema: StoreHandle,
        items: Sequence[ClassifiedMessage],
        channel: ChannelHandle,
        workspace_url: str,
    ) -> PersistResult:
        """Write every item as one record; individual failures are tallied, not raised."""
        result = PersistResult()
        op_start = perf_counter()
        batch_size = self.config.batch_size
        total_batches = (len(items) + batch_size - 1) // batch_size

        for start in range(0, len(items), batch_size):
            batch = items[start : start + batch_size]
            batch_num = start // batch_size + 1
            logger.info(
                f"Writing batch {batch_num}/{total_batches} ({start + 1}-{start + len(batch)}/{len(items)})"
            )
            for item in batch:
                try:
                    fields = build_record_fields(item, channel, workspace_url)
                    handle = await self.store.create_record(schema.id, fields, body=item.message.combined_text)
                    result.written_count += 1
                    result.handles.append(handle)
                    RECORDS_WRITTEN.labels(status="ok").inc()
                    logger.debug(f"Saved {item.timestamp}: {item.classification.summary}")
                except (TransientExternalError, PermanentRequestError, DataIntegrityError) as e:
                    result.failures.append(WriteFailure(timestamp=item.timestamp, error=str(e)))
                    RECORDS_WRITTEN.labels(status="failed").inc()
                    logger.warning(f"Failed to save {item.timestamp}: {e}")
                await self._sleep(self.config.delay_between_writes_seconds)

            logger.info(f"Saved {result.written_count}/{len(items)} ({result.failed_count} failed)")
            if batch_num < total_batches:
                await self._sleep(self.config.delay_between_batches_seconds)

        OP_LATENCY.labels(stage="persist", operation="persist").observe(perf_counter() - op_start)
        OP_ITEMS.labels(stage="persist", operation="persist").observe(result.written_count)
        return result

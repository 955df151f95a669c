"""End-to-end bulk analysis: collect, classify, persist, aggregate."""

import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import List, Optional

from opslog.metrics.metrics import OP_LATENCY
from opslog.models.config import OpsLogConfig
from opslog.models.records import ChannelHandle, ClassifiedMessage
from opslog.pipeline.classifier import BatchClassifier
from opslog.pipeline.statistics import Statistics, aggregate
from opslog.pipeline.writer import BulkWriter, WriteFailure, build_issue_schema
from opslog.sources.checkpoint import CheckpointStore
from opslog.sources.collector import MessageCollector
from opslog.stores.base import StoreHandle

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Tally of one pipeline run."""

    channel: ChannelHandle
    collected: int = 0
    analyzed: int = 0
    fallbacks: int = 0
    written: int = 0
    write_failures: List[WriteFailure] = field(default_factory=list)
    schema: Optional[StoreHandle] = None
    statistics: Statistics = field(default_factory=Statistics)
    results: List[ClassifiedMessage] = field(default_factory=list)
    checkpoint_deleted: bool = False

    @property
    def success_rate(self) -> float:
        """Percentage of collected messages that ended up written to the store."""
        return self.written / self.collected * 100.0 if self.collected else 0.0


class BulkAnalysisPipeline:
    """Runs the write path for one channel and owns checkpoint deletion.

    Args:
        collector: Message collector.
        classifier: Batch classifier.
        writer: Bulk writer.
        checkpoint_store: Classification checkpoint for this channel.
        config: Application configuration (taxonomy, workspace URL, schema title).
    """

    def __init__(
        self,
        collector: MessageCollector,
        classifier: BatchClassifier,
        writer: BulkWriter,
        checkpoint_store: CheckpointStore,
        config: OpsLogConfig,
    ):
        self.collector = collector
        self.classifier = classifier
        self.writer = writer
        self.checkpoint_store = checkpoint_store
        self.config = config

    async def run(self, channel_selector: str, days_back: int, limit: Optional[int] = None) -> RunReport:
        """Collect, classify, persist and aggregate one channel.

        The checkpoint is deleted only when every stage completed and every row was
        written; otherwise it is kept so a rerun skips classification work already done.
        """
        run_start = perf_counter()
        channel, messages = await self.collector.collect(channel_selector, days_back)
        if limit is not None:
            messages = messages[:limit]
        report = RunReport(channel=channel, collected=len(messages))

        if not messages:
            logger.info(f"No messages to analyze in #{channel.name} for the last {days_back} days")
            report.statistics = aggregate([])
            return report

        results = await self.classifier.classify(messages, self.checkpoint_store)
        progress = self.classifier.progress
        report.results = results
        report.fallbacks = sum(1 for r in results if r.classification.is_fallback)
        report.analyzed = len(results) - report.fallbacks
        if progress is not None:
            logger.debug(f"Classifier counters this run: {progress.analyzed} ok, {progress.errors} fallbacks")

        schema = build_issue_schema(
            channel.name, self.config.taxonomy, len(results), title_prefix=self.config.writer.schema_title_prefix
        )
        report.schema = await self.writer.create_schema(schema)
        persisted = await self.writer.persist(report.schema, results, channel, self.config.slack.workspace_url)
        report.written = persisted.written_count
        report.write_failures = persisted.failures

        report.statistics = aggregate(results)

        if not persisted.failures:
            self.checkpoint_store.delete()
            report.checkpoint_deleted = True
        else:
            logger.warning(
                f"{persisted.failed_count} rows failed to save; keeping checkpoint {self.checkpoint_store.path}"
            )

        OP_LATENCY.labels(stage="pipeline", operation="run").observe(perf_counter() - run_start)
        logger.info(
            f"Run complete for #{channel.name}: {report.written}/{report.collected} written "
            f"({report.success_rate:.0f}%), {report.fallbacks} fallback classifications"
        )
        return report

"""Checkpointed batch classification of threaded messages.

Every message is sent to the completion endpoint with a structured-output prompt.
Failures are retried with linear backoff (``attempt * retry_base_delay_seconds``);
once retries are exhausted a fallback classification is recorded instead, so the
output always has exactly one entry per input message.

Progress is persisted through a ``CheckpointStore`` every ``checkpoint_interval``
batches and once more at the end. A later run resumes at ``len(checkpoint)``.
Deleting the checkpoint is left to the caller, once the whole run has succeeded.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from opslog.errors import DataIntegrityError, PermanentRequestError, StaleConnectionError, TransientExternalError
from opslog.metrics.metrics import CLASSIFICATIONS, OP_ITEMS, OP_LATENCY
from opslog.models.config import ClassifierConfig
from opslog.models.records import CategoryTaxonomy, ClassificationResult, ClassifiedMessage, ThreadedMessage
from opslog.rag.engine import CompletionClient
from opslog.sources.checkpoint import CheckpointStore
from opslog.sources.slack import SleepFn
from opslog.utils.structured_output import parse_json_object

logger = logging.getLogger(__name__)


def build_classification_prompt(message: ThreadedMessage, taxonomy: CategoryTaxonomy) -> str:
    """Prompt asking for one JSON object describing the message and its thread."""
    categories = "|".join(taxonomy.categories)
    thread_hint = (
        "The message has a reply thread; use it to determine cause, resolution, resolver and status."
        if message.has_thread
        else "The message has no replies."
    )
    return f"""Analyze the following Slack message from an operations channel and classify it.
{thread_hint}

Author: {message.author_name}
Message:
\"\"\"
{message.combined_text}
\"\"\"

Respond with a single JSON object and nothing else:
{{
  "category": "{categories}",
  "is_issue": true or false,
  "issue_type": "specific kind of operational issue or task",
  "urgency": "high|medium|low",
  "system_components": ["affected systems"],
  "keywords": ["key", "terms"],
  "cause": "root cause, or unknown",
  "resolution": "how it was resolved, or unknown",
  "reporter": "who raised it",
  "resolver": "who resolved it, or unknown",
  "resolution_status": "resolved|in_progress|unresolved",
  "resource_estimate_minutes": estimated effort in minutes as an integer,
  "summary": "one-line summary",
  "thread_summary": "one-paragraph summary of the thread, or empty"
}}

Use "{taxonomy.fallback}" for casual conversation that is not operational work."""


@dataclass
class ClassificationProgress:
    """Running counters of one ``classify`` call."""

    total: int
    start_index: int = 0
    analyzed: int = 0
    errors: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def processed(self) -> int:
        return self.analyzed + self.errors

    def elapsed(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.started_at

    def throughput(self, now: Optional[float] = None) -> float:
        """Messages per minute in this run."""
        elapsed = self.elapsed(now)
        return self.processed / elapsed * 60.0 if elapsed > 0 else 0.0

    def eta_seconds(self, now: Optional[float] = None) -> Optional[float]:
        """Estimated seconds left, or None before the first message is done."""
        if self.processed == 0:
            return None
        remaining = self.total - self.start_index - self.processed
        return max(0.0, remaining * self.elapsed(now) / self.processed)


ProgressCallback = Callable[[ClassificationProgress], None]


class BatchClassifier:
    """Classifies messages in batches with bounded retries and checkpointing.

    Args:
        completion: Completion endpoint.
        config: Classifier settings.
        taxonomy: Category taxonomy fixed for the run.
        sleep: Awaitable sleep used for pacing and backoff.
        on_progress: Called after every message with the running counters.
    """

    def __init__(
        self,
        completion: CompletionClient,
        config: Optional[ClassifierConfig] = None,
        taxonomy: Optional[CategoryTaxonomy] = None,
        sleep: SleepFn = asyncio.sleep,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.completion = completion
        self.config = config or ClassifierConfig()
        self.taxonomy = taxonomy or CategoryTaxonomy()
        self._sleep = sleep
        self._on_progress = on_progress
        self._needs_reconnect = False
        self.progress: Optional[ClassificationProgress] = None

    def _resume(
        self, messages: Sequence[ThreadedMessage], checkpoint_store: Optional[CheckpointStore]
    ) -> List[ClassifiedMessage]:
        if checkpoint_store is None or not self.config.resume or not checkpoint_store.exists():
            return []
        try:
            saved = checkpoint_store.load()
        except DataIntegrityError as e:
            logger.warning(f"Ignoring unreadable checkpoint: {e}")
            checkpoint_store.delete()
            return []

        prefix = 0
        for entry, message in zip(saved, messages):
            if entry.timestamp != message.ts:
                break
            prefix += 1
        if prefix < len(saved):
            logger.warning(
                f"Checkpoint has {len(saved)} entries but only the first {prefix} match the collected messages; "
                f"resuming from {prefix}"
            )
            checkpoint_store.delete()
        else:
            logger.info(f"Resuming: {prefix} messages already classified")
        return list(saved[:prefix])

    async def classify_message(self, message: ThreadedMessage) -> Tuple[ClassificationResult, bool]:
        """Classify one message.

        Returns:
            The result and whether it came from the model (False for a fallback).
        """
        prompt = build_classification_prompt(message, self.taxonomy)
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                if self._needs_reconnect:
                    await self.completion.reconnect()
                    self._needs_reconnect = False
                raw = await self.completion.complete(prompt)
                payload = parse_json_object(raw)
                return ClassificationResult.from_payload(payload, message, self.taxonomy), True
            except StaleConnectionError as e:
                self._needs_reconnect = True
                logger.warning(f"Attempt {attempt}/{attempts} for {message.ts}: stale connection ({e})")
            except (TransientExternalError, DataIntegrityError) as e:
                logger.warning(f"Attempt {attempt}/{attempts} for {message.ts} failed: {e}")
            except PermanentRequestError as e:
                logger.warning(f"Not retrying {message.ts}: {e}")
                break
            if attempt < attempts:
                await self._sleep(attempt * self.config.retry_base_delay_seconds)

        logger.error(f"Analysis failed for {message.ts}; recording fallback classification")
        return ClassificationResult.fallback(message, self.taxonomy), False

    async def classify(
        self, messages: Sequence[ThreadedMessage], checkpoint_store: Optional[CheckpointStore] = None
    ) -> List[ClassifiedMessage]:
        """Classify `messages` in order, resuming from `checkpoint_store` when enabled."""
        results = self._resume(messages, checkpoint_store)
        start_index = len(results)
        progress = ClassificationProgress(total=len(messages), start_index=start_index)
        self.progress = progress
        op_start = time.perf_counter()

        batch_size = self.config.batch_size
        total_batches = (len(messages) - start_index + batch_size - 1) // batch_size
        logger.info(
            f"Classifying {len(messages) - start_index} of {len(messages)} messages "
            f"in {total_batches} batches of {batch_size}"
        )

        batches_done = 0
        for batch_start in range(start_index, len(messages), batch_size):
            batch = messages[batch_start : batch_start + batch_size]
            batches_done += 1
            logger.info(
                f"Batch {batches_done}/{total_batches} "
                f"({batch_start + 1}-{batch_start + len(batch)}/{len(messages)})"
            )
            for message in batch:
                classification, ok = await self.classify_message(message)
                results.append(ClassifiedMessage.create(message, classification))
                if ok:
                    progress.analyzed += 1
                    CLASSIFICATIONS.labels(status="success").inc()
                else:
                    progress.errors += 1
                    CLASSIFICATIONS.labels(status="fallback").inc()
                logger.debug(
                    f"{message.ts}: {classification.category} | {classification.urgency.value} | "
                    f"{classification.resource_estimate_minutes}m"
                )
                if self._on_progress:
                    self._on_progress(progress)
                await self._sleep(self.config.delay_between_requests_seconds)

            if checkpoint_store is not None and batches_done % self.config.checkpoint_interval == 0:
                checkpoint_store.save(results)
                logger.info(f"Checkpoint: {len(results)} results saved")

            eta = progress.eta_seconds()
            eta_str = f"{int(eta // 60)}m {int(eta % 60)}s" if eta is not None else "unknown"
            logger.info(
                f"Progress {len(results)}/{len(messages)}: {progress.throughput():.1f} msg/min, ETA {eta_str}"
            )
            if batches_done < total_batches:
                await self._sleep(self.config.delay_between_batches_seconds)

        if checkpoint_store is not None:
            checkpoint_store.save(results)

        total = progress.analyzed + progress.errors
        rate = progress.analyzed / total * 100.0 if total else 0.0
        logger.info(f"Classification done: {progress.analyzed} analyzed, {progress.errors} fallbacks ({rate:.0f}% ok)")
        OP_LATENCY.labels(stage="classify", operation="classify").observe(time.perf_counter() - op_start)
        OP_ITEMS.labels(stage="classify", operation="classify").observe(len(results))
        return results

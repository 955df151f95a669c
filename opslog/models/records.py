"""Records flowing through the ingestion pipeline and the search service.

Messages are immutable once collected. Classification results are tolerant on
input: every field has a non-null fallback, so a partial or malformed AI payload
still produces a complete record.
"""

import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)

from opslog.errors import DataIntegrityError

THREAD_DELIMITER = "\n\n--- Thread replies ---\n"
"""Separator between the root message and its replies in ``combined_text``."""

FALLBACK_CATEGORY = "etc"
ANALYSIS_FAILED = "analysis failed"
ANALYSIS_FAILED_KEYWORD = "analysis_failed"

DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "incident_response",
    "maintenance",
    "monitoring",
    "deployment",
    "user_support",
    "performance",
    "security",
    "documentation",
    "meeting_discussion",
    "feature_request",
    "bug_report",
    "feature_inquiry",
    FALLBACK_CATEGORY,
)


class Urgency(str, Enum):
    """Urgency levels assigned by the classifier."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionStatus(str, Enum):
    """Whether the thread shows the issue as resolved."""

    RESOLVED = "resolved"
    IN_PROGRESS = "in_progress"
    UNRESOLVED = "unresolved"


class CategoryTaxonomy(BaseModel):
    """Versioned, closed set of categories.

    A taxonomy is fixed before the destination schema is created and never changes
    for the rest of the run, since select options cannot be altered afterwards.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(default="v3", description="Taxonomy version written into the schema description")
    categories: Tuple[str, ...] = Field(default=DEFAULT_CATEGORIES, description="Allowed category identifiers")
    fallback: str = Field(default=FALLBACK_CATEGORY, description="Category used for unknown values")

    @model_validator(mode="after")
    def _check_fallback(self) -> "CategoryTaxonomy":
        if not self.categories:
            raise ValueError("taxonomy must define at least one category")
        if self.fallback not in self.categories:
            raise ValueError(f"fallback category '{self.fallback}' is not part of the taxonomy")
        return self

    def normalize(self, value: Any) -> str:
        """Map an arbitrary AI-provided category onto the taxonomy."""
        if not isinstance(value, str):
            return self.fallback
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        if key == "other":
            key = self.fallback
        return key if key in self.categories else self.fallback


class ChannelHandle(BaseModel):
    """A resolved conversation: id for API calls and permalinks, name for display."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class RawMessage(BaseModel):
    """One unit of chat history as returned by ``conversations.history``."""

    model_config = ConfigDict(frozen=True)

    ts: str
    text: str = ""
    user: Optional[str] = None
    thread_ts: Optional[str] = None
    reply_count: int = 0
    bot_id: Optional[str] = None
    subtype: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RawMessage":
        """Build a message from a Slack API payload, ignoring unknown keys."""
        return cls(
            ts=str(payload.get("ts", "0")),
            text=payload.get("text") or "",
            user=payload.get("user"),
            thread_ts=payload.get("thread_ts"),
            reply_count=int(payload.get("reply_count") or 0),
            bot_id=payload.get("bot_id"),
            subtype=payload.get("subtype"),
        )

    @property
    def ts_float(self) -> float:
        try:
            return float(self.ts)
        except ValueError:
            return 0.0

    @property
    def is_automated(self) -> bool:
        return bool(self.bot_id) or self.subtype == "bot_message"


class ReplyMessage(BaseModel):
    """A thread reply with its author display name resolved."""

    model_config = ConfigDict(frozen=True)

    ts: str
    text: str
    author: str
    user: Optional[str] = None


def build_combined_text(text: str, replies: Tuple[ReplyMessage, ...]) -> str:
    """Concatenate a root message with its replies in arrival order."""
    if not replies:
        return text
    lines = [f"[{reply.author}] {reply.text}" for reply in replies]
    return text + THREAD_DELIMITER + "\n".join(lines)


class ThreadedMessage(BaseModel):
    """A root message plus its (filtered) thread replies."""

    model_config = ConfigDict(frozen=True)

    message: RawMessage
    author_name: str = "unknown"
    replies: Tuple[ReplyMessage, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def combined_text(self) -> str:
        return build_combined_text(self.message.text, self.replies)

    @property
    def ts(self) -> str:
        return self.message.ts

    @property
    def has_thread(self) -> bool:
        return len(self.replies) > 0


_INT_RE = re.compile(r"-?\d+")


class ClassificationResult(BaseModel):
    """Structured AI output for one ``ThreadedMessage``.

    Validators coerce missing, null or wrongly typed values to the field default so
    that a result can always be built from whatever the model returned.
    """

    category: str = FALLBACK_CATEGORY
    is_issue: bool = False
    issue_type: str = "unclassified"
    urgency: Urgency = Urgency.MEDIUM
    system_components: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    cause: str = "unknown"
    resolution: str = "unknown"
    reporter: str = "unknown"
    resolver: str = "unknown"
    resolution_status: ResolutionStatus = ResolutionStatus.UNRESOLVED
    resource_estimate_minutes: int = 0
    summary: str = ""
    thread_summary: str = ""

    @field_validator(
        "category",
        "issue_type",
        "cause",
        "resolution",
        "reporter",
        "resolver",
        "summary",
        "thread_summary",
        mode="before",
    )
    @classmethod
    def _text_or_default(cls, value: Any, info: ValidationInfo) -> Any:
        default = cls.model_fields[info.field_name].default
        if value is None:
            return default
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            return default
        value = value.strip()
        return value or default

    @field_validator("system_components", "keywords", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple, set)):
            return []
        items = [str(v).strip() for v in value if v is not None]
        return [item for item in items if item]

    @field_validator("urgency", mode="before")
    @classmethod
    def _urgency(cls, value: Any) -> Urgency:
        if isinstance(value, Urgency):
            return value
        try:
            return Urgency(str(value).strip().lower())
        except ValueError:
            return Urgency.MEDIUM

    @field_validator("resolution_status", mode="before")
    @classmethod
    def _resolution_status(cls, value: Any) -> ResolutionStatus:
        if isinstance(value, ResolutionStatus):
            return value
        try:
            return ResolutionStatus(str(value).strip().lower().replace(" ", "_"))
        except ValueError:
            return ResolutionStatus.UNRESOLVED

    @field_validator("is_issue", mode="before")
    @classmethod
    def _is_issue(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in {"true", "yes", "y", "1", "issue"}
        if isinstance(value, (int, float)):
            return value != 0
        return False

    @field_validator("resource_estimate_minutes", mode="before")
    @classmethod
    def _minutes(cls, value: Any) -> int:
        if isinstance(value, bool) or value is None:
            return 0
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        if isinstance(value, (int, float)):
            return max(0, int(value))
        match = _INT_RE.search(str(value))
        return max(0, int(match.group())) if match else 0

    @classmethod
    def from_payload(
        cls, payload: Dict[str, Any], message: ThreadedMessage, taxonomy: CategoryTaxonomy
    ) -> "ClassificationResult":
        """Build a result from a parsed AI payload, filling gaps from the message.

        Raises:
            DataIntegrityError: If the payload cannot be coerced into a result.
        """
        data = dict(payload)
        # older prompt versions used resource_estimate
        if "resource_estimate_minutes" not in data and "resource_estimate" in data:
            data["resource_estimate_minutes"] = data["resource_estimate"]
        data["category"] = taxonomy.normalize(data.get("category"))
        known = {k: v for k, v in data.items() if k in cls.model_fields}
        try:
            result = cls.model_validate(known)
        except (ValidationError, OverflowError, TypeError, ValueError) as e:
            raise DataIntegrityError(f"unusable classification payload: {e}") from e
        updates: Dict[str, Any] = {}
        if not result.summary:
            updates["summary"] = summarize_text(message.message.text)
        if result.reporter == "unknown" and message.author_name:
            updates["reporter"] = message.author_name
        return result.model_copy(update=updates) if updates else result

    @classmethod
    def fallback(cls, message: ThreadedMessage, taxonomy: CategoryTaxonomy) -> "ClassificationResult":
        """Synthetic result used after all AI attempts have failed."""
        return cls(
            category=taxonomy.fallback,
            issue_type=ANALYSIS_FAILED,
            urgency=Urgency.LOW,
            keywords=[ANALYSIS_FAILED_KEYWORD],
            cause=ANALYSIS_FAILED,
            resolution=ANALYSIS_FAILED,
            reporter=message.author_name or "unknown",
            summary=summarize_text(message.message.text),
        )

    @property
    def is_fallback(self) -> bool:
        return self.issue_type == ANALYSIS_FAILED and ANALYSIS_FAILED_KEYWORD in self.keywords


def summarize_text(text: str, limit: int = 80) -> str:
    """One-line summary derived from the original message."""
    line = " ".join((text or "").split())
    if not line:
        return "(empty message)"
    return line if len(line) <= limit else line[: limit - 3] + "..."


class ClassifiedMessage(BaseModel):
    """One checkpoint entry: a message, its classification and processing time."""

    message: ThreadedMessage
    classification: ClassificationResult
    timestamp: str
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, message: ThreadedMessage, classification: ClassificationResult) -> "ClassifiedMessage":
        return cls(message=message, classification=classification, timestamp=message.ts)


class RelevanceScoredPage(BaseModel):
    """Search-time projection of a stored record."""

    id: str
    title: str
    body: str
    url: Optional[str] = None
    thread_link: Optional[str] = None
    score: float = 0.0

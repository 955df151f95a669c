"""Document-store interface used by the bulk writer and the search service.

A store holds schemas (a Notion database, a table) and records (one page/row per
classified message). Field values passed to ``create_record`` are plain Python
values keyed by field name; each backend converts them according to the
``FieldKind`` declared in the schema.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

RICH_TEXT_LIMIT = 2000
"""Maximum characters stored in a single text value."""


class FieldKind(str, Enum):
    TITLE = "title"
    TEXT = "rich_text"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    DATE = "date"
    URL = "url"


TEXTUAL_KINDS = (FieldKind.TITLE, FieldKind.TEXT)


class FieldSpec(BaseModel):
    """One column of a destination schema."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: FieldKind
    options: Tuple[str, ...] = ()


class DestinationSchema(BaseModel):
    """A schema definition; select options are fixed once created."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    fields: Tuple[FieldSpec, ...]

    def field(self, name: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


class StoreHandle(BaseModel):
    """Identifier and (when available) URL of a created schema or record."""

    id: str
    url: Optional[str] = None


class StoredRecord(BaseModel):
    """A record as read back from the store."""

    id: str
    url: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    created_time: Optional[str] = None


class RecordFilter(BaseModel):
    """Recall-oriented record filter.

    A record matches when ANY of ``contains_any`` occurs (case-insensitive) in ANY
    of ``fields``, and every ``equals`` entry holds.
    """

    contains_any: List[str] = Field(default_factory=list)
    fields: List[str] = Field(default_factory=list)
    equals: Dict[str, Any] = Field(default_factory=dict)
    limit: int = 10

    def matches(self, values: Dict[str, Any]) -> bool:
        for name, expected in self.equals.items():
            if values.get(name) != expected:
                return False
        if not self.contains_any:
            return True
        haystacks = [_as_text(values.get(name)).lower() for name in self.fields]
        return any(keyword.lower() in hay for keyword in self.contains_any for hay in haystacks)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    return str(value)


def truncate_text(value: str, limit: int = RICH_TEXT_LIMIT) -> str:
    """Cut `value` to `limit` characters, marking the cut with an ellipsis."""
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


class DocumentStore(ABC):
    """Abstract async document store."""

    @abstractmethod
    async def create_schema(self, schema: DestinationSchema) -> StoreHandle:
        """Create a schema and return its handle."""

    @abstractmethod
    async def create_record(self, schema_id: str, fields: Dict[str, Any], body: Optional[str] = None) -> StoreHandle:
        """Create one record in `schema_id`; `body` is free text stored as page content."""

    @abstractmethod
    async def query_records(self, schema_id: str, record_filter: RecordFilter) -> List[StoredRecord]:
        """Return up to ``record_filter.limit`` matching records, newest first."""

    @abstractmethod
    async def get_full_text(self, record_id: str) -> str:
        """Return the page content of a record."""

    @abstractmethod
    async def latest_schema_id(self, title_prefix: Optional[str] = None) -> Optional[str]:
        """Return the most recently created schema id, optionally filtered by title prefix."""

"""JSON-file document store for offline runs and tests."""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from opslog.errors import NotFoundError, PermanentRequestError
from opslog.stores.base import (
    DestinationSchema,
    DocumentStore,
    FieldKind,
    RecordFilter,
    StoredRecord,
    StoreHandle,
    TEXTUAL_KINDS,
    truncate_text,
)
from opslog.utils.atomic_json import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class LocalDocumentStore(DocumentStore):
    """Persists schemas and records to a single JSON file.

    File layout::

        {"schemas": {id: {"schema": {...}, "created_time": iso}},
         "records": {id: {"schema_id": id, "fields": {...}, "body": str, "created_time": iso}}}
    """

    def __init__(self, path: Union[str, Path] = "data/opslog_store.json"):
        """Initialize the store with a storage path.

        Args:
            path: Path to the JSON file where schemas and records are persisted.
        """
        self.path = Path(path).expanduser().resolve()
        data = read_json(str(self.path), default=None) or {}
        self._schemas: Dict[str, Dict[str, Any]] = data.get("schemas", {})
        self._records: Dict[str, Dict[str, Any]] = data.get("records", {})

    def _save(self) -> None:
        write_json_atomic(str(self.path), {"schemas": self._schemas, "records": self._records})

    def _schema(self, schema_id: str) -> DestinationSchema:
        entry = self._schemas.get(schema_id)
        if entry is None:
            raise NotFoundError(f"Schema not found: {schema_id}")
        return DestinationSchema.model_validate(entry["schema"])

    async def create_schema(self, schema: DestinationSchema) -> StoreHandle:
        schema_id = str(uuid.uuid4())
        self._schemas[schema_id] = {
            "schema": schema.model_dump(mode="json"),
            "created_time": datetime.now(timezone.utc).isoformat(),
        }
        self._save()
        logger.info(f"Created local schema '{schema.title}' ({schema_id})")
        return StoreHandle(id=schema_id, url=f"{self.path.as_uri()}#{schema_id}")

    async def create_record(self, schema_id: str, fields: Dict[str, Any], body: Optional[str] = None) -> StoreHandle:
        schema = self._schema(schema_id)
        stored: Dict[str, Any] = {}
        for name, value in fields.items():
            spec = schema.field(name)
            if spec is None:
                raise PermanentRequestError(f"Unknown field '{name}' for schema {schema_id}")
            if spec.kind == FieldKind.SELECT and value is not None and spec.options and value not in spec.options:
                raise PermanentRequestError(f"'{value}' is not an option of select field '{name}'")
            if spec.kind in TEXTUAL_KINDS and value is not None:
                value = truncate_text(str(value))
            stored[name] = value
        record_id = str(uuid.uuid4())
        self._records[record_id] = {
            "schema_id": schema_id,
            "fields": stored,
            "body": body or "",
            "created_time": datetime.now(timezone.utc).isoformat(),
        }
        self._save()
        return StoreHandle(id=record_id, url=f"{self.path.as_uri()}#{record_id}")

    async def query_records(self, schema_id: str, record_filter: RecordFilter) -> List[StoredRecord]:
        self._schema(schema_id)
        matches = [
            StoredRecord(
                id=record_id,
                url=f"{self.path.as_uri()}#{record_id}",
                fields=entry["fields"],
                created_time=entry.get("created_time"),
            )
            for record_id, entry in self._records.items()
            if entry["schema_id"] == schema_id and record_filter.matches(entry["fields"])
        ]
        matches.sort(key=lambda r: r.created_time or "", reverse=True)
        return matches[: record_filter.limit]

    async def get_full_text(self, record_id: str) -> str:
        entry = self._records.get(record_id)
        if entry is None:
            raise NotFoundError(f"Record not found: {record_id}")
        return entry.get("body", "")

    async def latest_schema_id(self, title_prefix: Optional[str] = None) -> Optional[str]:
        candidates = [
            (entry["created_time"], schema_id)
            for schema_id, entry in self._schemas.items()
            if title_prefix is None or entry["schema"]["title"].startswith(title_prefix)
        ]
        if not candidates:
            return None
        return max(candidates)[1]

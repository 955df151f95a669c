"""Notion document store built on ``notion_client.AsyncClient``.

Schemas map to Notion databases and records to database pages. Field values are
converted to Notion property payloads according to the ``FieldKind`` of each
field; kinds for databases not created in this process are read back with
``databases.retrieve``.
"""

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from notion_client import APIResponseError, AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError

from opslog.errors import (
    ConfigurationError,
    NotFoundError,
    OpsLogError,
    PermanentRequestError,
    TransientExternalError,
)
from opslog.metrics.metrics import API_CALLS, API_LATENCY
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

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_MAX_FILTER_CONDITIONS = 100
_TEXT_BLOCK_TYPES = (
    "paragraph",
    "heading_1",
    "heading_2",
    "heading_3",
    "bulleted_list_item",
    "numbered_list_item",
    "quote",
    "callout",
    "to_do",
    "code",
)


def _rich_text(value: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": truncate_text(value)}}]


def _plain_text(items: Optional[List[Dict[str, Any]]]) -> str:
    return "".join(item.get("plain_text", "") for item in items or [])


def property_schema(kind: FieldKind, options: tuple = ()) -> Dict[str, Any]:
    """Notion property definition for ``databases.create``."""
    if kind in (FieldKind.SELECT, FieldKind.MULTI_SELECT):
        return {kind.value: {"options": [{"name": name} for name in options]}}
    if kind == FieldKind.NUMBER:
        return {"number": {"format": "number"}}
    return {kind.value: {}}


def property_value(kind: FieldKind, value: Any) -> Optional[Dict[str, Any]]:
    """Notion property value for ``pages.create``; None when the value is empty."""
    if value is None:
        return None
    if kind == FieldKind.TITLE:
        return {"title": _rich_text(str(value))}
    if kind == FieldKind.TEXT:
        return {"rich_text": _rich_text(str(value))}
    if kind == FieldKind.SELECT:
        return {"select": {"name": str(value)}}
    if kind == FieldKind.MULTI_SELECT:
        # option names may not contain commas
        names = [str(v).replace(",", " ")[:100] for v in value if str(v).strip()]
        return {"multi_select": [{"name": name} for name in dict.fromkeys(names)]}
    if kind == FieldKind.NUMBER:
        return {"number": value}
    if kind == FieldKind.CHECKBOX:
        return {"checkbox": bool(value)}
    if kind == FieldKind.DATE:
        return {"date": {"start": str(value)}}
    if kind == FieldKind.URL:
        return {"url": str(value) or None}
    return None


def property_to_python(prop: Dict[str, Any]) -> Any:
    """Convert a Notion page property back to a plain Python value."""
    kind = prop.get("type")
    if kind == "title":
        return _plain_text(prop.get("title"))
    if kind == "rich_text":
        return _plain_text(prop.get("rich_text"))
    if kind == "select":
        return (prop.get("select") or {}).get("name")
    if kind == "multi_select":
        return [item.get("name") for item in prop.get("multi_select") or []]
    if kind == "date":
        return (prop.get("date") or {}).get("start")
    if kind in ("number", "checkbox", "url"):
        return prop.get(kind)
    return None


def _body_blocks(body: str) -> List[Dict[str, Any]]:
    blocks = []
    for paragraph in [p for p in body.split("\n\n") if p.strip()][:100]:
        blocks.append({"object": "block", "type": "paragraph", "paragraph": {"rich_text": _rich_text(paragraph)}})
    return blocks


class NotionDocumentStore(DocumentStore):
    """Document store backed by Notion databases.

    Args:
        token: Notion integration token.
        parent_page_id: Page under which databases are created.
        client: Optional pre-built ``AsyncClient`` (tests inject mocks here).
        api_retries: Retries for rate limits and server errors.
        sleep: Awaitable sleep used for retry backoff.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        parent_page_id: Optional[str] = None,
        client: Optional[AsyncClient] = None,
        api_retries: int = 3,
        timeout_seconds: int = 60,
        sleep: SleepFn = asyncio.sleep,
    ):
        if client is None:
            if not token:
                raise ConfigurationError("Notion token is not set (NOTION_TOKEN)")
            client = AsyncClient(auth=token, timeout_ms=timeout_seconds * 1000)
        self.client = client
        self.parent_page_id = parent_page_id.replace("-", "") if parent_page_id else None
        self.api_retries = api_retries
        self._sleep = sleep
        self._kinds: Dict[str, Dict[str, FieldKind]] = {}

    async def _call(self, method: str, func: Callable[..., Awaitable[Any]], **kwargs: Any) -> Any:
        """Execute a Notion API call with retries, error mapping and metrics."""
        consecutive_errors = 0
        while True:
            call_start = perf_counter()
            try:
                resp = await func(**kwargs)
                API_CALLS.labels(service="notion", source_id="notion", method=method, status="200").inc()
                API_LATENCY.labels(service="notion", source_id="notion", method=method, status="200").observe(
                    perf_counter() - call_start
                )
                return resp
            except (APIResponseError, HTTPResponseError, RequestTimeoutError) as e:
                status = getattr(e, "status", None) or 408
                mapped = self._map_error(method, e, status)
                error: Exception = e
            except httpx.HTTPError as e:
                # transport failures notion-client does not wrap (connect/read resets)
                status = 503
                mapped = TransientExternalError(f"Notion {method} failed ({type(e).__name__}): {e}")
                error = e
            API_CALLS.labels(service="notion", source_id="notion", method=method, status=str(status)).inc()
            API_LATENCY.labels(service="notion", source_id="notion", method=method, status=str(status)).observe(
                perf_counter() - call_start
            )
            if isinstance(mapped, TransientExternalError) and consecutive_errors < self.api_retries:
                consecutive_errors += 1
                wait_seconds = 2**consecutive_errors
                logger.warning(
                    f"Notion {method} failed with {status} "
                    f"(attempt {consecutive_errors}/{self.api_retries}). Retrying in {wait_seconds}s..."
                )
                await self._sleep(wait_seconds)
                continue
            raise mapped from error

    @staticmethod
    def _map_error(method: str, err: Exception, status: int) -> OpsLogError:
        code = str(getattr(err, "code", "") or "")
        message = f"Notion {method} failed ({status} {code}): {err}"
        if status in (401, 403) or code in ("unauthorized", "restricted_resource"):
            return ConfigurationError(message)
        if status == 404 or code == "object_not_found":
            return NotFoundError(message)
        if status in (408, 409, 429) or status >= 500:
            return TransientExternalError(message)
        return PermanentRequestError(message)

    async def _field_kinds(self, schema_id: str) -> Dict[str, FieldKind]:
        kinds = self._kinds.get(schema_id)
        if kinds is None:
            database = await self._call("databases.retrieve", self.client.databases.retrieve, database_id=schema_id)
            kinds = {}
            for name, prop in (database.get("properties") or {}).items():
                try:
                    kinds[name] = FieldKind(prop.get("type"))
                except ValueError:
                    logger.debug(f"Ignoring unsupported property '{name}' of type {prop.get('type')}")
            self._kinds[schema_id] = kinds
        return kinds

    async def create_schema(self, schema: DestinationSchema) -> StoreHandle:
        if not self.parent_page_id:
            raise ConfigurationError("Notion parent page is not set (NOTION_PARENT_PAGE_ID)")
        properties = {spec.name: property_schema(spec.kind, spec.options) for spec in schema.fields}
        database = await self._call(
            "databases.create",
            self.client.databases.create,
            parent={"type": "page_id", "page_id": self.parent_page_id},
            title=_rich_text(schema.title),
            description=_rich_text(schema.description),
            properties=properties,
        )
        self._kinds[database["id"]] = {spec.name: spec.kind for spec in schema.fields}
        logger.info(f"Created Notion database '{schema.title}' ({database['id']})")
        return StoreHandle(id=database["id"], url=database.get("url"))

    async def create_record(self, schema_id: str, fields: Dict[str, Any], body: Optional[str] = None) -> StoreHandle:
        kinds = await self._field_kinds(schema_id)
        properties: Dict[str, Any] = {}
        for name, value in fields.items():
            kind = kinds.get(name)
            if kind is None:
                raise PermanentRequestError(f"Unknown property '{name}' for database {schema_id}")
            payload = property_value(kind, value)
            if payload is not None:
                properties[name] = payload
        kwargs: Dict[str, Any] = {"parent": {"database_id": schema_id}, "properties": properties}
        if body:
            kwargs["children"] = _body_blocks(body)
        page = await self._call("pages.create", self.client.pages.create, **kwargs)
        return StoreHandle(id=page["id"], url=page.get("url"))

    def _build_filter(self, kinds: Dict[str, FieldKind], record_filter: RecordFilter) -> Optional[Dict[str, Any]]:
        conditions: List[Dict[str, Any]] = []
        for keyword in record_filter.contains_any:
            for name in record_filter.fields:
                kind = kinds.get(name)
                if kind in TEXTUAL_KINDS:
                    conditions.append({"property": name, kind.value: {"contains": keyword}})
                elif kind == FieldKind.MULTI_SELECT:
                    conditions.append({"property": name, "multi_select": {"contains": keyword}})
        conditions = conditions[:_MAX_FILTER_CONDITIONS]

        equals: List[Dict[str, Any]] = []
        for name, expected in record_filter.equals.items():
            kind = kinds.get(name)
            if kind is None:
                continue
            equals.append({"property": name, kind.value: {"equals": expected}})

        or_group = {"or": conditions} if conditions else None
        if equals:
            parts = equals + ([or_group] if or_group else [])
            return parts[0] if len(parts) == 1 else {"and": parts}
        return or_group

    async def query_records(self, schema_id: str, record_filter: RecordFilter) -> List[StoredRecord]:
        kinds = await self._field_kinds(schema_id)
        kwargs: Dict[str, Any] = {
            "database_id": schema_id,
            "sorts": [{"timestamp": "created_time", "direction": "descending"}],
            "page_size": min(record_filter.limit, 100),
        }
        notion_filter = self._build_filter(kinds, record_filter)
        if notion_filter:
            kwargs["filter"] = notion_filter
        resp = await self._call("databases.query", self.client.databases.query, **kwargs)
        records = []
        for page in resp.get("results", []):
            values = {name: property_to_python(prop) for name, prop in (page.get("properties") or {}).items()}
            records.append(
                StoredRecord(id=page["id"], url=page.get("url"), fields=values, created_time=page.get("created_time"))
            )
        logger.debug(f"databases.query returned {len(records)} records")
        return records[: record_filter.limit]

    async def get_full_text(self, record_id: str) -> str:
        parts: List[str] = []
        cursor: Optional[str] = None
        while True:
            kwargs: Dict[str, Any] = {"block_id": record_id, "page_size": 100}
            if cursor:
                kwargs["start_cursor"] = cursor
            resp = await self._call("blocks.children.list", self.client.blocks.children.list, **kwargs)
            for block in resp.get("results", []):
                block_type = block.get("type")
                if block_type in _TEXT_BLOCK_TYPES:
                    text = _plain_text((block.get(block_type) or {}).get("rich_text"))
                    if text:
                        parts.append(text)
            if not resp.get("has_more"):
                break
            cursor = resp.get("next_cursor")
        return "\n".join(parts)

    async def latest_schema_id(self, title_prefix: Optional[str] = None) -> Optional[str]:
        resp = await self._call(
            "search",
            self.client.search,
            query=title_prefix or "",
            filter={"property": "object", "value": "database"},
            sort={"direction": "descending", "timestamp": "last_edited_time"},
            page_size=10,
        )
        for database in resp.get("results", []):
            title = _plain_text(database.get("title"))
            if title_prefix is None or title.startswith(title_prefix):
                return database["id"]
        return None

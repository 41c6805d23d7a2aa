"""Remote store interface and the in-memory backend.

The engine treats the remote store as an opaque fetch/mutate/subscribe
service. Two backends implement RemoteStore:
- InMemoryRemoteStore: local development and tests (no network)
- PostgrestRemoteStore (services.postgrest): PostgREST over httpx, with
  realtime change events over a websocket (services.realtime)

Filters are a dict of column -> value (equality), column -> list (membership)
or column -> (operator, value) with operator in eq/neq/gt/gte/lt/lte/in.
Order is PostgREST style: "created_at.desc".
"""

import asyncio
import inspect
import operator
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from constants import INCREMENT_STORY_VIEWS
from core.errors import ConflictError, TransientNetworkError, ValidationError
from core.logging import get_logger
from core.timers import AsyncioClock, BackgroundTasks, Clock

logger = get_logger(__name__)

Row = Dict[str, Any]
Filters = Dict[str, Any]
EventCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
Procedure = Callable[["InMemoryRemoteStore", Dict[str, Any]], Any]

FILTER_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "in": lambda value, options: value in options,
}


class Subscription:
    """Handle returned by subscribe(); close() stops event delivery."""

    def __init__(self, resource: str, on_close: Callable[[], Union[None, Awaitable[None]]]):
        self.resource = resource
        self._on_close = on_close
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        result = self._on_close()
        if inspect.isawaitable(result):
            await result


class RemoteStore(Protocol):
    """What the engine consumes from the remote store collaborator."""

    async def fetch_many(self, resource: str, filters: Optional[Filters] = None,
                         order: Optional[str] = None, limit: Optional[int] = None) -> List[Row]:
        ...

    async def fetch_one(self, resource: str, id: str) -> Optional[Row]:
        ...

    async def insert_many(self, resource: str, rows: Sequence[Row]) -> List[Row]:
        ...

    async def invoke_procedure(self, name: str, args: Dict[str, Any]) -> Any:
        ...

    async def subscribe(self, resource: str, filters: Optional[Filters],
                        on_event: EventCallback) -> Subscription:
        ...

    async def close(self) -> None:
        ...


def normalize_filter(value: Any) -> Tuple[str, Any]:
    """Turn a filter value into (operator, operand)."""
    if isinstance(value, tuple) and len(value) == 2 and value[0] in FILTER_OPERATORS:
        return value
    if isinstance(value, (list, set, frozenset)):
        return "in", list(value)
    return "eq", value


def row_matches(row: Row, filters: Optional[Filters]) -> bool:
    for column, raw in (filters or {}).items():
        op, operand = normalize_filter(raw)
        value = row.get(column)
        if value is None:
            return False
        try:
            if not FILTER_OPERATORS[op](value, operand):
                return False
        except TypeError:
            return False
    return True


def increment_story_views(store: "InMemoryRemoteStore", args: Dict[str, Any]) -> Dict[str, Any]:
    """Atomic views_count + 1 on a story (mirrors the SQL function of the same name)."""
    story_id = args.get("story_uuid")
    story = store.tables.get("stories", {}).get(str(story_id))
    if story is None:
        raise ValidationError(f"Story not found: {story_id}", details={"story_uuid": story_id})
    views = int(story.get("views_count") or 0)
    return store.update("stories", str(story_id), {"views_count": views + 1})


DEFAULT_PROCEDURES: Dict[str, Procedure] = {
    INCREMENT_STORY_VIEWS: increment_story_views,
}


class InMemoryRemoteStore:
    """Dictionary-backed remote store with change events.

    Every insert/update/delete emits a change event in the realtime wire shape
    to subscribers of that resource. Events are delivered on a later loop
    iteration, never inline with the write.
    """

    def __init__(self, clock: Optional[Clock] = None,
                 procedures: Optional[Dict[str, Procedure]] = None,
                 unique: Optional[Dict[str, Sequence[str]]] = None):
        self.clock = clock or AsyncioClock()
        self.tables: Dict[str, Dict[str, Row]] = {}
        self.procedures: Dict[str, Procedure] = dict(DEFAULT_PROCEDURES)
        self.procedures.update(procedures or {})
        self.unique: Dict[str, Tuple[str, ...]] = {
            "story_views": ("story_id", "viewer_id"),
        }
        self.unique.update({k: tuple(v) for k, v in (unique or {}).items()})
        self.available = True
        self.calls: List[Tuple[str, str, Any]] = []
        self.tasks = BackgroundTasks("remote-events")
        self._subscribers: Dict[str, Dict[str, Tuple[Optional[Filters], EventCallback]]] = {}

    # =========================================================================
    # RemoteStore interface
    # =========================================================================

    async def fetch_many(self, resource: str, filters: Optional[Filters] = None,
                         order: Optional[str] = None, limit: Optional[int] = None) -> List[Row]:
        self._check_available("fetch_many", resource, filters)
        rows = [dict(r) for r in self.tables.get(resource, {}).values() if row_matches(r, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)),
                      reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def fetch_one(self, resource: str, id: str) -> Optional[Row]:
        self._check_available("fetch_one", resource, id)
        row = self.tables.get(resource, {}).get(str(id))
        return dict(row) if row else None

    async def insert_many(self, resource: str, rows: Sequence[Row]) -> List[Row]:
        self._check_available("insert_many", resource, list(rows))
        table = self.tables.setdefault(resource, {})
        keys = self.unique.get(resource)

        # Validate the whole batch before writing anything
        prepared = []
        seen = set()
        for row in rows:
            if not isinstance(row, dict):
                raise ValidationError(f"Row must be an object, got {type(row).__name__}")
            if keys:
                natural_key = tuple(row.get(k) for k in keys)
                exists = any(tuple(r.get(k) for k in keys) == natural_key for r in table.values())
                if exists or natural_key in seen:
                    raise ConflictError(f"Duplicate {resource} row for {dict(zip(keys, natural_key))}")
                seen.add(natural_key)
            stored = dict(row)
            stored.setdefault("id", str(uuid.uuid4()))
            stored.setdefault("created_at", self._timestamp())
            prepared.append(stored)

        for stored in prepared:
            table[str(stored["id"])] = stored
            self._emit(resource, "INSERT", stored, {})
        return [dict(r) for r in prepared]

    async def invoke_procedure(self, name: str, args: Dict[str, Any]) -> Any:
        self._check_available("invoke_procedure", name, args)
        procedure = self.procedures.get(name)
        if procedure is None:
            raise ValidationError(f"Unknown procedure: {name}")
        result = procedure(self, args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def subscribe(self, resource: str, filters: Optional[Filters],
                        on_event: EventCallback) -> Subscription:
        token = str(uuid.uuid4())
        self._subscribers.setdefault(resource, {})[token] = (filters, on_event)
        logger.debug("Subscribed to changes", resource=resource, token=token)

        def _remove():
            self._subscribers.get(resource, {}).pop(token, None)

        return Subscription(resource, _remove)

    async def close(self) -> None:
        self._subscribers.clear()

    # =========================================================================
    # Direct table manipulation (server-side changes)
    # =========================================================================

    def seed(self, resource: str, rows: Sequence[Row]) -> None:
        """Load rows without emitting events."""
        table = self.tables.setdefault(resource, {})
        for row in rows:
            table[str(row["id"])] = dict(row)

    def update(self, resource: str, id: str, changes: Row) -> Row:
        table = self.tables.setdefault(resource, {})
        if str(id) not in table:
            raise ValidationError(f"{resource} row not found: {id}")
        old = dict(table[str(id)])
        table[str(id)] = {**old, **changes}
        self._emit(resource, "UPDATE", table[str(id)], old)
        return dict(table[str(id)])

    def delete(self, resource: str, id: str) -> Optional[Row]:
        old = self.tables.get(resource, {}).pop(str(id), None)
        if old is not None:
            self._emit(resource, "DELETE", {}, {"id": old["id"]})
        return old

    def subscriber_count(self, resource: str) -> int:
        return len(self._subscribers.get(resource, {}))

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_available(self, call: str, target: str, args: Any) -> None:
        self.calls.append((call, target, args))
        if not self.available:
            raise TransientNetworkError(f"Remote store unreachable ({call} {target})")

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc).isoformat()

    def _emit(self, resource: str, change_type: str, record: Row, old_record: Row) -> None:
        subscribers = list(self._subscribers.get(resource, {}).values())
        if not subscribers:
            return
        raw = {
            "type": change_type,
            "table": resource,
            "record": dict(record),
            "old_record": dict(old_record),
            "commit_timestamp": self._timestamp(),
        }
        loop = asyncio.get_running_loop()
        for filters, callback in subscribers:
            if change_type != "DELETE" and not row_matches(record, filters):
                continue
            loop.call_soon(self._deliver, callback, dict(raw))

    def _deliver(self, callback: EventCallback, raw: Dict[str, Any]) -> None:
        try:
            result = callback(raw)
            if inspect.isawaitable(result):
                self.tasks.spawn(result)
        except Exception as e:
            logger.error("Change event callback failed", error=str(e))

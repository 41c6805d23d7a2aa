"""Write coalescer: debounced, size-capped batching of same-kind writes.

Each kind has a handler that merges the accumulated payloads (e.g. dedupe by
natural key) and sends them to the remote store in as few calls as possible.

Timing: the flush fires `delay` seconds after the LAST arrival (debounce),
or immediately once a group reaches max_batch_size.

Failure handling at the flush boundary:
- TransientNetworkError: failed payloads are re-added with retry_delay and
  one more redrive, until max_redrives is used up
- anything else: payloads dropped and reported to drop listeners
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from constants import INCREMENT_STORY_VIEWS
from core.config import Settings
from core.errors import ConfigurationError, PartialBatchError, SyncError, classify_error
from core.logging import get_logger, log_sync_operation
from core.timers import BackgroundTasks, Clock, ScheduledTask
from models.sync import BatchItem
from services.remote_store import RemoteStore

logger = get_logger(__name__)

Payload = Dict[str, Any]
DropListener = Callable[[str, List[BatchItem], SyncError], Union[None, Awaitable[None]]]


@dataclass
class BatchHandler:
    """Merge rule plus remote call for one batch kind."""
    kind: str
    send: Callable[[RemoteStore, List[Payload]], Awaitable[Any]]
    merge: Callable[[List[Payload]], List[Payload]] = list


@dataclass
class BatchGroup:
    """Payloads waiting for one kind, plus the debounce timer."""
    kind: str
    items: List[BatchItem]
    timer: ScheduledTask


# =============================================================================
# BUILT-IN KINDS
# =============================================================================

def dedupe_by(*keys: str) -> Callable[[List[Payload]], List[Payload]]:
    """Merge rule keeping the first payload per composite natural key."""
    def merge(payloads: List[Payload]) -> List[Payload]:
        seen = set()
        unique = []
        for payload in payloads:
            natural_key = tuple(payload.get(k) for k in keys)
            if natural_key in seen:
                continue
            seen.add(natural_key)
            unique.append(payload)
        return unique
    return merge


async def insert_story_views(remote: RemoteStore, views: List[Payload]) -> None:
    await remote.insert_many("story_views", views)


async def insert_notifications(remote: RemoteStore, notifications: List[Payload]) -> None:
    await remote.insert_many("notifications", notifications)


async def increment_story_views(remote: RemoteStore, increments: List[Payload]) -> None:
    """One increment_story_views call per story view payload, grouped by story.

    Stories whose call fails are raised together in a PartialBatchError so only
    they are redriven; increments already applied are never resent.
    """
    by_story: Dict[str, List[Payload]] = defaultdict(list)
    for item in increments:
        by_story[item["story_uuid"]].append(item)

    failed: List[Payload] = []
    first_error: Optional[Exception] = None
    for story_id, items in by_story.items():
        for item in items:
            try:
                await remote.invoke_procedure(INCREMENT_STORY_VIEWS, {
                    "story_uuid": story_id,
                    "viewer_uuid": None,  # batch increments are anonymous
                })
            except Exception as e:
                logger.warning("Failed to increment views", story_id=story_id, error=str(e))
                failed.append(item)
                first_error = first_error or e

    if failed:
        raise PartialBatchError(failed, first_error)


DEFAULT_BATCH_HANDLERS: Dict[str, BatchHandler] = {
    "story_views": BatchHandler("story_views", insert_story_views, dedupe_by("story_id", "viewer_id")),
    "notifications": BatchHandler("notifications", insert_notifications),
    "story_view_increments": BatchHandler("story_view_increments", increment_story_views),
}


class WriteCoalescer:
    """Groups same-kind writes and flushes them as one remote operation."""

    def __init__(self, settings: Settings, clock: Clock, remote: RemoteStore,
                 handlers: Optional[Dict[str, BatchHandler]] = None):
        self.settings = settings
        self.clock = clock
        self.remote = remote
        self.handlers: Dict[str, BatchHandler] = dict(DEFAULT_BATCH_HANDLERS if handlers is None else handlers)
        self.max_batch_size = settings.batch_max_size
        self.tasks = BackgroundTasks("batch-flush")
        self._groups: Dict[str, BatchGroup] = {}
        self._drop_listeners: List[DropListener] = []

    def register(self, handler: BatchHandler) -> None:
        self.handlers[handler.kind] = handler

    def on_dropped(self, listener: DropListener) -> Callable[[], None]:
        """Register a listener for items whose payloads will never be sent."""
        self._drop_listeners.append(listener)

        def unsubscribe():
            if listener in self._drop_listeners:
                self._drop_listeners.remove(listener)
        return unsubscribe

    # =========================================================================
    # Accumulation
    # =========================================================================

    def add_to_batch(self, kind: str, payload: Payload, delay: Optional[float] = None,
                     mutation_id: Optional[str] = None) -> None:
        """Append payload to the group for `kind` and (re)arm its flush."""
        self._add(kind, BatchItem(payload=payload, mutation_id=mutation_id), delay)

    def _add(self, kind: str, item: BatchItem, delay: Optional[float]) -> None:
        if kind not in self.handlers:
            error = ConfigurationError(f"Unknown batch operation: {kind}")
            logger.error("Dropping payload for unknown batch kind", kind=kind)
            self._report_dropped(kind, [item], error)
            return

        delay = self.settings.batch_delay if delay is None else delay
        group = self._groups.get(kind)
        if group is None:
            timer = ScheduledTask(self.clock, lambda: self.flush(kind),
                                  name=f"batch:{kind}", tasks=self.tasks)
            group = BatchGroup(kind=kind, items=[], timer=timer)
            self._groups[kind] = group

        group.items.append(item)

        # Execute immediately if batch is full
        if len(group.items) >= self.max_batch_size:
            del self._groups[kind]
            group.timer.cancel()
            self.tasks.spawn(self._send(kind, group.items))
            return

        group.timer.arm(delay)

    def discard(self, mutation_id: str) -> int:
        """Withdraw the unsent payloads of one mutation.

        Groups left empty lose their timer. Payloads already handed to a flush
        are out of reach. Returns the number of payloads withdrawn.
        """
        removed = 0
        for kind, group in list(self._groups.items()):
            kept = [i for i in group.items if i.mutation_id != mutation_id]
            if len(kept) == len(group.items):
                continue
            removed += len(group.items) - len(kept)
            group.items = kept
            if not kept:
                group.timer.cancel()
                del self._groups[kind]
        if removed:
            logger.debug("Batched writes withdrawn", mutation_id=mutation_id, removed=removed)
        return removed

    # =========================================================================
    # Flushing
    # =========================================================================

    async def flush(self, kind: str) -> int:
        """Send everything pending for `kind` in one grouped write.

        The group is detached before the remote call, so arrivals during the
        call start a fresh group. Returns the number of payloads sent.
        """
        group = self._groups.pop(kind, None)
        if group is None or not group.items:
            return 0
        group.timer.cancel()
        return await self._send(kind, group.items)

    async def _send(self, kind: str, items: List[BatchItem]) -> int:
        handler = self.handlers.get(kind)
        if handler is None:
            error = ConfigurationError(f"Unknown batch operation: {kind}")
            logger.error("No handler for batch kind at flush time", kind=kind)
            self._report_dropped(kind, items, error)
            return 0

        merged = handler.merge([i.payload for i in items])
        try:
            await handler.send(self.remote, merged)
        except Exception as e:
            self._handle_failure(kind, items, e)
            return 0

        log_sync_operation(logger, "batch_flush", kind, True,
                           received=len(items), sent=len(merged))
        return len(merged)

    def _handle_failure(self, kind: str, items: List[BatchItem], error: Exception) -> None:
        classified = classify_error(error)
        if isinstance(error, PartialBatchError):
            failed_ids = {id(p) for p in error.failed}
            failed_items = [i for i in items if id(i.payload) in failed_ids]
        else:
            failed_items = items

        log_sync_operation(logger, "batch_flush", kind, False,
                           failed=len(failed_items), error=str(error),
                           error_type=classified.error_type)

        if not classified.retryable:
            self._report_dropped(kind, failed_items, classified)
            return

        exhausted: List[BatchItem] = []
        for item in failed_items:
            if item.redrives >= self.settings.batch_max_redrives:
                exhausted.append(item)
                continue
            self._add(kind, BatchItem(payload=item.payload, mutation_id=item.mutation_id,
                                      redrives=item.redrives + 1),
                      self.settings.batch_retry_delay)

        if exhausted:
            logger.error("Batch redrive budget exhausted", kind=kind, dropped=len(exhausted))
            self._report_dropped(kind, exhausted, classified)

    async def flush_all(self) -> int:
        """Force-flush every outstanding group (session teardown)."""
        kinds = list(self._groups.keys())
        results = await asyncio.gather(*(self.flush(kind) for kind in kinds))
        await self.tasks.wait()
        return sum(results)

    async def shutdown(self) -> None:
        await self.flush_all()
        if self._groups:
            logger.warning("Discarding unsent batches at shutdown",
                           kinds=self.pending_kinds(), payloads=self.pending_count())
        for group in self._groups.values():
            group.timer.cancel()
        self._groups.clear()

    # =========================================================================
    # Introspection
    # =========================================================================

    def pending_count(self) -> int:
        return sum(len(g.items) for g in self._groups.values())

    def pending_kinds(self) -> List[str]:
        return [kind for kind, g in self._groups.items() if g.items]

    def pending(self, kind: str) -> List[Payload]:
        group = self._groups.get(kind)
        return [i.payload for i in group.items] if group else []

    def _report_dropped(self, kind: str, items: List[BatchItem], error: SyncError) -> None:
        for listener in list(self._drop_listeners):
            try:
                result = listener(kind, items, error)
                if inspect.isawaitable(result):
                    self.tasks.spawn(result)
            except Exception as e:
                logger.error("Drop listener failed", kind=kind, error=str(e))

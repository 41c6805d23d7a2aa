"""Offline queue: FIFO replay of durable mutations with bounded retry.

Writes are replayed strictly in enqueue order, one remote call at a time, so
a dependent mutation never overtakes the one it depends on.

Retry policy:
- TransientNetworkError: the write stays at the head with attempt += 1 and
  the drain cycle ends (the network is presumed gone); abandoned once
  attempt >= max_retries
- validation/conflict/configuration errors: abandoned immediately, the
  drain continues with the next write

drain() is single-flight: overlapping callers await the same in-flight task.

cancel() withdraws a write whose mutation was reverted. A write already in
flight cannot be recalled; if it fails it is dropped instead of retried, and
if it succeeds confirm listeners still hear about it.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from constants import INCREMENT_STORY_VIEWS
from core.config import Settings
from core.errors import ConfigurationError, SyncError, classify_error
from core.logging import get_logger, log_sync_operation
from core.timers import BackgroundTasks, Clock, PeriodicTask
from models.sync import PendingWrite, WriteStatus
from services.remote_store import RemoteStore

logger = get_logger(__name__)

Payload = Dict[str, Any]
ConfirmListener = Callable[[PendingWrite], Union[None, Awaitable[None]]]
AbandonListener = Callable[[PendingWrite, SyncError], Union[None, Awaitable[None]]]


@dataclass
class QueueHandler:
    """Remote call that replays one write of a given kind."""
    kind: str
    execute: Callable[[RemoteStore, Payload], Awaitable[Any]]


async def insert_story_view(remote: RemoteStore, data: Payload) -> Any:
    return await remote.insert_many("story_views", [data])


async def increment_views(remote: RemoteStore, data: Payload) -> Any:
    return await remote.invoke_procedure(INCREMENT_STORY_VIEWS, data)


async def insert_notification(remote: RemoteStore, data: Payload) -> Any:
    return await remote.insert_many("notifications", [data])


DEFAULT_QUEUE_HANDLERS: Dict[str, QueueHandler] = {
    "story_view": QueueHandler("story_view", insert_story_view),
    "increment_views": QueueHandler("increment_views", increment_views),
    "notification": QueueHandler("notification", insert_notification),
}


class OfflineQueue:
    """Session-wide FIFO of pending mutations."""

    def __init__(self, settings: Settings, clock: Clock, remote: RemoteStore,
                 handlers: Optional[Dict[str, QueueHandler]] = None, online: bool = True):
        self.settings = settings
        self.clock = clock
        self.remote = remote
        self.handlers: Dict[str, QueueHandler] = dict(DEFAULT_QUEUE_HANDLERS if handlers is None else handlers)
        self.max_retries = settings.queue_max_retries
        self.tasks = BackgroundTasks("offline-queue")
        self._queue: Deque[PendingWrite] = deque()
        self._online = online
        self._drain_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[PendingWrite] = None
        self._periodic = PeriodicTask(clock, settings.queue_drain_interval,
                                      self._periodic_drain, name="queue-drain")
        self._confirm_listeners: List[ConfirmListener] = []
        self._abandon_listeners: List[AbandonListener] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def startup(self) -> None:
        self._periodic.start()
        logger.info("Offline queue started",
                    max_retries=self.max_retries,
                    drain_interval=self.settings.queue_drain_interval,
                    online=self._online)

    async def shutdown(self) -> None:
        """Stop the periodic drain and replay what we can before teardown."""
        await self._periodic.stop()
        if self._online and self._queue:
            await self.drain()
        await self.tasks.wait()
        if self._queue:
            logger.warning("Offline queue shut down with pending writes",
                           pending=len(self._queue))
        logger.info("Offline queue stopped")

    # =========================================================================
    # Listeners
    # =========================================================================

    def on_confirmed(self, listener: ConfirmListener) -> Callable[[], None]:
        self._confirm_listeners.append(listener)
        return lambda: self._discard(self._confirm_listeners, listener)

    def on_abandoned(self, listener: AbandonListener) -> Callable[[], None]:
        self._abandon_listeners.append(listener)
        return lambda: self._discard(self._abandon_listeners, listener)

    @staticmethod
    def _discard(listeners: list, listener) -> None:
        if listener in listeners:
            listeners.remove(listener)

    # =========================================================================
    # Enqueue / connectivity
    # =========================================================================

    def enqueue(self, kind: str, payload: Payload, write_id: Optional[str] = None) -> Optional[PendingWrite]:
        """Append a mutation; starts a drain when online and idle."""
        write = PendingWrite(kind=kind, payload=payload, created_at=self.clock.now())
        if write_id:
            write.id = write_id

        if kind not in self.handlers:
            error = ConfigurationError(f"Unknown sync operation: {kind}")
            logger.error("Dropping write for unknown queue kind", kind=kind, write_id=write.id)
            self._abandon(write, error)
            return None

        self._queue.append(write)
        logger.debug("Write queued", write_id=write.id, kind=kind, pending=len(self._queue))

        if self._online and not self.is_draining:
            self.tasks.spawn(self.drain())
        return write

    def set_online(self, online: bool) -> None:
        """Connectivity signal. Going online triggers a drain."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Back online, processing sync queue", pending=len(self._queue))
            self.tasks.spawn(self.drain())
        elif not online and was_online:
            logger.info("Gone offline, queuing operations", pending=len(self._queue))

    def cancel(self, write_id: str) -> bool:
        """Withdraw a queued write. Returns True if it was removed unsent."""
        for write in self._queue:
            if write.id != write_id:
                continue
            if write is self._in_flight:
                write.cancelled = True
                logger.info("Cancelled write already in flight", write_id=write_id, kind=write.kind)
                return False
            self._queue.remove(write)
            write.status = WriteStatus.CANCELLED
            logger.info("Write cancelled", write_id=write_id, kind=write.kind,
                        pending=len(self._queue))
            return True
        return False

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    # =========================================================================
    # Draining
    # =========================================================================

    async def drain(self) -> None:
        """Replay queued writes in FIFO order. Single-flight."""
        if not self.is_draining:
            self._drain_task = asyncio.ensure_future(self._drain())
        await asyncio.shield(self._drain_task)

    async def _periodic_drain(self) -> None:
        if self._online and self._queue and not self.is_draining:
            await self.drain()

    async def _drain(self) -> None:
        processed = 0
        while self._online and self._queue:
            write = self._queue[0]
            handler = self.handlers.get(write.kind)
            write.status = WriteStatus.SENT
            self._in_flight = write
            try:
                if handler is None:
                    raise ConfigurationError(f"Unknown sync operation: {write.kind}")
                await handler.execute(self.remote, write.payload)
            except Exception as e:
                self._in_flight = None
                if write.cancelled:
                    self._drop_cancelled(write, e)
                    continue
                if not self._handle_failure(write, e):
                    break
                continue
            self._in_flight = None

            # Head may have changed while we were awaiting
            if self._queue and self._queue[0] is write:
                self._queue.popleft()
            write.status = WriteStatus.CONFIRMED
            processed += 1
            log_sync_operation(logger, "queue_replay", write.kind, True,
                               write_id=write.id, attempt=write.attempt)
            self._notify(self._confirm_listeners, write)

        if processed:
            logger.debug("Drain finished", processed=processed, pending=len(self._queue))

    def _handle_failure(self, write: PendingWrite, error: Exception) -> bool:
        """Apply the retry policy. Returns True if the drain should continue."""
        classified = classify_error(error)
        write.status = WriteStatus.FAILED
        write.last_error = str(error)
        write.attempt += 1
        log_sync_operation(logger, "queue_replay", write.kind, False,
                           write_id=write.id, attempt=write.attempt,
                           error=str(error), error_type=classified.error_type)

        if classified.retryable and write.attempt < self.max_retries:
            write.status = WriteStatus.QUEUED
            return False

        if classified.retryable:
            logger.error("Max retries reached for operation",
                         write_id=write.id, kind=write.kind, attempt=write.attempt)
        self._remove(write)
        self._abandon(write, classified)
        return not classified.retryable

    def _drop_cancelled(self, write: PendingWrite, error: Exception) -> None:
        self._remove(write)
        write.status = WriteStatus.CANCELLED
        write.last_error = str(error)
        logger.info("Cancelled write failed, not retrying",
                    write_id=write.id, kind=write.kind, error=str(error))

    def _remove(self, write: PendingWrite) -> None:
        try:
            self._queue.remove(write)
        except ValueError:
            pass

    def _abandon(self, write: PendingWrite, error: SyncError) -> None:
        write.status = WriteStatus.ABANDONED
        write.last_error = str(error)
        logger.error("Write abandoned as unrecoverable",
                     write_id=write.id, kind=write.kind,
                     attempt=write.attempt, error_type=error.error_type)
        self._notify(self._abandon_listeners, write, error)

    def _notify(self, listeners: list, *args) -> None:
        for listener in list(listeners):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    self.tasks.spawn(result)
            except Exception as e:
                logger.error("Queue listener failed", error=str(e))

    # =========================================================================
    # Introspection
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        return {
            "pending": len(self._queue),
            "online": self._online,
            "syncing": self.is_draining,
        }

    def pending(self) -> List[PendingWrite]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

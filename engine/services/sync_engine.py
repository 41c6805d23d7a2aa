"""Sync engine facade.

Wires the cache, write coalescer, offline queue and reconcilers to one remote
store for a session. Constructed by the container and driven through
init()/shutdown() by main.sync_session().

Terminal write failures from the queue and the coalescer are routed back to
the reconciler that issued the mutation (revert) and reported to
on_sync_error subscribers. Apart from configuration errors they are
recoverable: the user may retry the action.
A write that succeeds after its mutation was reverted makes the engine
re-fetch the entity so the view follows the server.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError as PayloadValidationError

from core.cache import CacheService
from core.config import Settings
from core.errors import SyncError, classify_error
from core.health import get_sync_status
from core.kvstore import BlobStore
from core.logging import get_logger
from core.timers import BackgroundTasks, Clock, ScheduledTask
from models.events import parse_change_event
from models.sync import BatchItem, PendingWrite, SyncErrorEvent
from models.view_state import MutationState
from services.batching import WriteCoalescer
from services.mutations import DEFAULT_MUTATIONS, MutationPlan
from services.offline_queue import OfflineQueue
from services.reconciler import Reconciler
from services.remote_store import Filters, RemoteStore, Subscription
from services.status_broadcaster import StatusBroadcaster

logger = get_logger(__name__)

MARKER_KEY = "last_event_at"

_MISSING = object()

Loader = Callable[[], Awaitable[Any]]


class SyncEngine:
    """Session-scoped cache-and-sync service."""

    def __init__(self, settings: Settings, clock: Clock, cache: CacheService,
                 remote: RemoteStore, coalescer: WriteCoalescer, queue: OfflineQueue,
                 broadcaster: StatusBroadcaster, blob_store: BlobStore,
                 mutations: Optional[Dict[str, MutationPlan]] = None):
        self.settings = settings
        self.clock = clock
        self.cache = cache
        self.remote = remote
        self.coalescer = coalescer
        self.queue = queue
        self.broadcaster = broadcaster
        self.blob_store = blob_store
        self.mutations = dict(DEFAULT_MUTATIONS if mutations is None else mutations)
        self.tasks = BackgroundTasks("sync-engine")
        self.started_at: Optional[float] = None

        self._errors = StatusBroadcaster(name="sync-errors")
        self._reconcilers: List[Reconciler] = []
        self._defaults: Dict[str, Reconciler] = {}
        self._subscriptions: Dict[int, List[Subscription]] = {}
        self._unsubscribe: List[Callable[[], None]] = []

        self._marker_at_startup: Optional[float] = None
        self._last_event_at: Optional[float] = None
        self._marker_timer = ScheduledTask(clock, self._write_marker, name="marker-write",
                                           tasks=self.tasks)
        self._initialized = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        if self._initialized:
            return
        self.started_at = self.clock.now()

        marker = self.blob_store.get(MARKER_KEY)
        if isinstance(marker, (int, float)):
            self._marker_at_startup = float(marker)
            self._last_event_at = float(marker)
        elif marker is not None:
            logger.warning("Ignoring unreadable event marker", marker=repr(marker))

        self._unsubscribe = [
            self.queue.on_confirmed(self._on_write_confirmed),
            self.queue.on_abandoned(self._on_write_abandoned),
            self.coalescer.on_dropped(self._on_batch_dropped),
        ]
        await self.cache.startup()
        await self.queue.startup()
        self._initialized = True
        logger.info("Sync engine initialized",
                    online=self.queue.online,
                    pending_writes=len(self.queue),
                    last_event_at=self._marker_at_startup)

    async def shutdown(self) -> None:
        """Flush batches, drain the queue, persist the marker, release resources."""
        if not self._initialized:
            return
        logger.info("Sync engine shutting down", pending_writes=len(self.queue),
                     pending_batches=self.coalescer.pending_count())

        for reconciler in list(self._reconcilers):
            reconciler.close()
        await self.tasks.wait()

        await self.coalescer.shutdown()
        await self.queue.shutdown()

        self._marker_timer.cancel()
        self._write_marker()
        await self.tasks.wait()

        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self._errors.clear()

        await self.cache.shutdown()
        await self.remote.close()
        self._initialized = False
        logger.info("Sync engine stopped")

    # =========================================================================
    # Reads
    # =========================================================================

    async def read(self, key: str, loader: Optional[Loader] = None,
                   ttl: Optional[float] = None) -> Any:
        """Cache-first read. On a miss, awaits `loader` and caches a non-None result.

        A None stored directly through the cache counts as a hit.
        """
        cached = self.cache.get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        if loader is None:
            return None
        value = await loader()
        if value is not None:
            self.cache.set(key, value, ttl=ttl)
        return value

    # =========================================================================
    # Reconcilers and mutations
    # =========================================================================

    def create_reconciler(self, resource: str) -> Reconciler:
        reconciler = Reconciler(
            resource,
            cache=self.cache,
            coalescer=self.coalescer,
            queue=self.queue,
            clock=self.clock,
            mutations=self.mutations,
            report_error=self._report,
            on_close=self._detach,
        )
        self._reconcilers.append(reconciler)
        logger.debug("Reconciler created", resource=resource, total=len(self._reconcilers))
        return reconciler

    def mutate(self, kind: str, payload: Dict[str, Any]) -> Optional[str]:
        """Issue a mutation through the default reconciler of its resource."""
        plan = self.mutations.get(kind)
        if plan is None:
            self._report(SyncErrorEvent(
                kind=kind,
                error_type="configuration",
                message=f"Unknown mutation kind: {kind}",
                source="reconciler",
                recoverable=False,
            ))
            logger.error("Unknown mutation kind", kind=kind)
            return None
        reconciler = self._defaults.get(plan.resource)
        if reconciler is None or reconciler.closed:
            reconciler = self._defaults[plan.resource] = self.create_reconciler(plan.resource)
        return reconciler.mutate(kind, payload)

    def default_reconciler(self, resource: str) -> Optional[Reconciler]:
        return self._defaults.get(resource)

    def _detach(self, reconciler: Reconciler) -> None:
        if reconciler in self._reconcilers:
            self._reconcilers.remove(reconciler)
        if self._defaults.get(reconciler.resource) is reconciler:
            del self._defaults[reconciler.resource]
        for subscription in self._subscriptions.pop(id(reconciler), []):
            self.tasks.spawn(subscription.close())

    def _owner_of(self, mutation_id: Optional[str]) -> Optional[Reconciler]:
        if not mutation_id:
            return None
        for reconciler in self._reconcilers:
            if reconciler.owns(mutation_id):
                return reconciler
        return None

    # =========================================================================
    # Change streams
    # =========================================================================

    async def subscribe(self, resource: str, reconciler: Reconciler,
                        filters: Optional[Filters] = None) -> Subscription:
        """Feed the remote change stream of `resource` into `reconciler`."""
        def on_raw_event(raw: Dict[str, Any]) -> None:
            if reconciler.closed:
                return
            try:
                event = parse_change_event(raw)
            except PayloadValidationError as e:
                logger.warning("Dropping invalid change event", resource=resource,
                               errors=e.error_count())
                return

            if self._marker_at_startup is not None and event.timestamp <= self._marker_at_startup:
                logger.debug("Skipping already processed event", resource=resource,
                             event_at=event.timestamp)
                return

            reconciler.apply_event(event)
            self._advance_marker(event.timestamp)

        subscription = await self.remote.subscribe(resource, filters, on_raw_event)
        self._subscriptions.setdefault(id(reconciler), []).append(subscription)
        logger.info("Subscribed to change stream", resource=resource, filters=filters)
        return subscription

    def _advance_marker(self, timestamp: float) -> None:
        if self._last_event_at is not None and timestamp <= self._last_event_at:
            return
        self._last_event_at = timestamp
        self._marker_timer.arm(self.settings.marker_write_delay)

    def _write_marker(self) -> None:
        if self._last_event_at is None or self._last_event_at == self.blob_store.get(MARKER_KEY):
            return
        try:
            self.blob_store.set(MARKER_KEY, self._last_event_at)
        except OSError as e:
            logger.warning("Failed to persist event marker", error=str(e))

    @property
    def last_event_at(self) -> Optional[float]:
        return self._last_event_at

    # =========================================================================
    # Write outcomes
    # =========================================================================

    def _on_write_confirmed(self, write: PendingWrite) -> None:
        owner = self._owner_of(write.id)
        if owner is not None and not owner.acknowledge(write.id):
            if owner.state_of(write.id) == MutationState.REVERTED:
                self.tasks.spawn(self._resync(owner, write.id))
        self._publish_status()

    async def _resync(self, reconciler: Reconciler, mutation_id: str) -> None:
        """Re-fetch an entity whose reverted mutation reached the server anyway."""
        entity_id = reconciler.entity_of(mutation_id)
        if entity_id is None:
            return
        logger.warning("Reverted write reached the remote store, re-fetching",
                       resource=reconciler.resource, entity_id=entity_id, mutation_id=mutation_id)
        try:
            row = await self.remote.fetch_one(reconciler.resource, entity_id)
        except Exception as e:
            error = classify_error(e)
            logger.error("Re-fetch after reverted write failed", resource=reconciler.resource,
                         entity_id=entity_id, error=str(e), error_type=error.error_type)
            return
        if row is not None and not reconciler.closed:
            reconciler.adopt(row)

    def _on_write_abandoned(self, write: PendingWrite, error: SyncError) -> None:
        owner = self._owner_of(write.id)
        if owner is not None:
            owner.revert(write.id, error)
        self._report(SyncErrorEvent(
            kind=write.kind,
            error_type=error.error_type,
            message=str(error),
            mutation_id=write.id,
            entity_id=owner.entity_of(write.id) if owner else None,
            source="queue",
            recoverable=error.error_type != "configuration",
        ))
        self._publish_status()

    def _on_batch_dropped(self, kind: str, items: List[BatchItem], error: SyncError) -> None:
        reverted = 0
        for item in items:
            owner = self._owner_of(item.mutation_id)
            if owner is not None and owner.revert(item.mutation_id, error):
                reverted += 1
        mutation_ids = [i.mutation_id for i in items if i.mutation_id]
        self._report(SyncErrorEvent(
            kind=kind,
            error_type=error.error_type,
            message=f"{len(items)} {kind} write(s) dropped: {error}",
            mutation_id=mutation_ids[0] if len(mutation_ids) == 1 else None,
            source="batch",
            recoverable=error.error_type != "configuration",
        ))
        logger.debug("Batch drop routed", kind=kind, payloads=len(items), reverted=reverted)

    # =========================================================================
    # Error reporting
    # =========================================================================

    def on_sync_error(self, callback: Callable[[SyncErrorEvent], Any]) -> Callable[[], None]:
        """Subscribe to terminal sync failures. Returns an unsubscribe handle."""
        return self._errors.subscribe(callback)

    def _report(self, event: SyncErrorEvent) -> None:
        self._errors.notify(event)
        self.tasks.spawn(self.broadcaster.report_error(event))

    # =========================================================================
    # Connectivity / diagnostics
    # =========================================================================

    def set_online(self, online: bool) -> None:
        self.queue.set_online(online)
        self.tasks.spawn(self.broadcaster.update_status("connectivity", {"online": online}))

    async def flush_pending(self) -> None:
        """Force out every batched and queued write."""
        await self.coalescer.flush_all()
        if self.queue.online:
            await self.queue.drain()
        self._publish_status()

    def _publish_status(self) -> None:
        self.tasks.spawn(self.broadcaster.update_status("queue", self.queue.status()))

    def status(self) -> Dict[str, Any]:
        return get_sync_status(self)

    @property
    def reconciler_count(self) -> int:
        return len(self._reconcilers)

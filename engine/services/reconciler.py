"""Reconciler: optimistic local mutations merged with authoritative change events.

One reconciler per UI subscriber and resource. It owns the ViewState of every
entity it has seen; pending writes it creates are handed to the offline queue
and outlive it.

Per mutation:
    IDLE -> OPTIMISTICALLY_APPLIED -> CONFIRMED   (change event carrying its id, or an
                                                   authoritative snapshot taken at or
                                                   after the remote store acknowledged it)
                                   -> REVERTED    (write abandoned/dropped before the
                                                   remote store accepted any part of it)

Merge rules:
- the server always wins: an applied event's row becomes the confirmed
  snapshot verbatim
- an event strictly older than the last applied one for the entity is a no-op
- re-applying an event leaves the state unchanged
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from core.cache import CacheService
from core.errors import ConfigurationError, SyncError, ValidationError
from core.logging import get_logger
from core.timers import Clock
from models.events import MUTATION_ID_FIELD, DeleteEvent, InsertEvent, UpdateEvent, commit_time
from models.sync import SyncErrorEvent
from models.view_state import MutationState, PendingMutation, StateChange, ViewState
from services.batching import WriteCoalescer
from services.mutations import DEFAULT_MUTATIONS, MutationPlan
from services.offline_queue import OfflineQueue
from services.status_broadcaster import StatusBroadcaster

logger = get_logger(__name__)

ChangeEvent = Union[InsertEvent, UpdateEvent, DeleteEvent]
ErrorReporter = Callable[[SyncErrorEvent], None]


class Reconciler:
    """Per-subscriber view state with optimistic overlays."""

    def __init__(self, resource: str, cache: CacheService, coalescer: WriteCoalescer,
                 queue: OfflineQueue, clock: Clock,
                 mutations: Optional[Dict[str, MutationPlan]] = None,
                 report_error: Optional[ErrorReporter] = None,
                 on_close: Optional[Callable[["Reconciler"], None]] = None):
        self.resource = resource
        self.cache = cache
        self.coalescer = coalescer
        self.queue = queue
        self.clock = clock
        self.mutations = dict(DEFAULT_MUTATIONS if mutations is None else mutations)
        self._report_error = report_error
        self._on_close = on_close
        self._views: Dict[str, ViewState] = {}
        self._states: Dict[str, MutationState] = {}
        self._entity_of: Dict[str, str] = {}
        self._broadcaster = StatusBroadcaster(name=f"reconciler:{resource}")
        self.closed = False

    # =========================================================================
    # Subscribers
    # =========================================================================

    def on_state_change(self, callback: Callable[[StateChange], Any]) -> Callable[[], None]:
        """Subscribe to StateChange notifications. Returns an unsubscribe handle."""
        return self._broadcaster.subscribe(callback)

    def _emit(self, change: StateChange) -> None:
        if not self.closed:
            self._broadcaster.notify(change)

    # =========================================================================
    # Optimistic mutations
    # =========================================================================

    def mutate(self, kind: str, payload: Dict[str, Any]) -> Optional[str]:
        """Apply a mutation optimistically and submit its durable writes.

        Returns the mutation id, or None if the mutation was rejected.
        """
        plan = self.mutations.get(kind)
        if plan is None or plan.resource != self.resource:
            self._reject(kind, payload, ConfigurationError(
                f"Unknown mutation kind for {self.resource}: {kind}"))
            return None

        missing = plan.missing_fields(payload)
        if missing:
            self._reject(kind, payload, ConfigurationError(
                f"Malformed {kind} payload, missing: {', '.join(missing)}"))
            return None

        entity_id = plan.entity_id(payload)
        view = self._views.get(entity_id)
        if view is not None and view.deleted:
            self._reject(kind, payload, ValidationError(f"{self.resource} {entity_id} was deleted"),
                         entity_id=entity_id)
            return None
        if view is None:
            view = self._views[entity_id] = ViewState(entity_id=entity_id)

        mutation_id = str(uuid.uuid4())
        payload = dict(payload)
        view.overlay.append(PendingMutation(
            mutation_id=mutation_id,
            kind=kind,
            payload=payload,
            transform=plan.transform,
            applied_at=self.clock.now(),
        ))
        self._states[mutation_id] = MutationState.OPTIMISTICALLY_APPLIED
        self._entity_of[mutation_id] = entity_id
        logger.debug("Optimistic mutation applied", kind=kind,
                     entity_id=entity_id, mutation_id=mutation_id)
        self._emit(StateChange("optimistic", entity_id, view.visible(), mutation_id=mutation_id))

        for key in plan.cache_keys(payload):
            self.cache.delete(key)

        for batch_kind, build in plan.batches:
            self.coalescer.add_to_batch(batch_kind, build(payload), mutation_id=mutation_id)
        if plan.queue is not None:
            queue_kind, build = plan.queue
            self.queue.enqueue(queue_kind, build(payload), write_id=mutation_id)

        return mutation_id

    def _reject(self, kind: str, payload: Dict[str, Any], error: SyncError,
                entity_id: Optional[str] = None) -> None:
        logger.error("Mutation rejected", kind=kind, error=str(error),
                     error_type=error.error_type, payload_keys=sorted(payload))
        if self._report_error is not None:
            self._report_error(SyncErrorEvent(
                kind=kind,
                error_type=error.error_type,
                message=str(error),
                entity_id=entity_id,
                source="reconciler",
                recoverable=False,
            ))

    # =========================================================================
    # Authoritative data
    # =========================================================================

    def apply_event(self, event: ChangeEvent) -> bool:
        """Merge an authoritative change event. Returns True if state changed."""
        if event.resource != self.resource:
            logger.debug("Ignoring event for other resource",
                         resource=event.resource, expected=self.resource)
            return False

        entity_id = event.entity_id
        if entity_id is None:
            logger.warning("Change event without entity id", resource=event.resource,
                           change_type=event.change_type)
            return False

        if isinstance(event, DeleteEvent):
            return self._apply_delete(entity_id, event.timestamp)
        if isinstance(event, (InsertEvent, UpdateEvent)):
            return self._merge(entity_id, dict(event.row), event.timestamp, event.mutation_id)

        raise TypeError(f"Unhandled change event type: {type(event).__name__}")

    def load(self, rows: Iterable[Dict[str, Any]], as_of: Optional[datetime] = None) -> int:
        """Adopt a fetched snapshot.

        With `as_of`, rows follow the same ordering rule as events. Without it,
        a row is only adopted for entities that have no authoritative data yet.
        Returns the number of rows adopted.
        """
        timestamp = None
        if as_of is not None:
            if as_of.tzinfo is None:
                as_of = as_of.replace(tzinfo=timezone.utc)
            timestamp = as_of.timestamp()

        adopted = 0
        for row in rows:
            if row.get("id") is None:
                continue
            entity_id = str(row["id"])
            view = self._views.get(entity_id)
            if timestamp is None and view is not None and view.confirmed_at is not None:
                continue
            if self._merge(entity_id, dict(row), timestamp, row.get(MUTATION_ID_FIELD)):
                adopted += 1
        return adopted

    def adopt(self, row: Dict[str, Any]) -> bool:
        """Replace an entity's confirmed snapshot with a freshly fetched row."""
        if row.get("id") is None:
            return False
        return self._merge(str(row["id"]), dict(row), None, row.get(MUTATION_ID_FIELD))

    def _merge(self, entity_id: str, row: Dict[str, Any], timestamp: Optional[float],
               mutation_id: Optional[str]) -> bool:
        view = self._views.get(entity_id)
        if view is None:
            view = self._views[entity_id] = ViewState(entity_id=entity_id)

        if self._is_stale(view, timestamp):
            logger.debug("Ignoring stale event", entity_id=entity_id,
                         event_at=timestamp, confirmed_at=view.confirmed_at)
            return False

        before = (view.visible(), view.deleted)
        view.confirmed = row
        view.deleted = False
        if timestamp is not None:
            view.confirmed_at = timestamp

        settled: List[str] = []
        if mutation_id and view.discard(mutation_id) is not None:
            settled.append(mutation_id)
        # Acknowledged writes are already reflected in snapshots taken after the ack
        for pending in [m for m in view.overlay if m.settled_by(timestamp)]:
            view.discard(pending.mutation_id)
            settled.append(pending.mutation_id)
        for settled_id in settled:
            self._states[settled_id] = MutationState.CONFIRMED

        visible = view.visible()
        if settled:
            logger.debug("Optimistic mutation confirmed", entity_id=entity_id, mutation_ids=settled)
            self._emit(StateChange("confirmed", entity_id, visible, mutation_id=settled[0]))
            return True
        if (visible, view.deleted) != before:
            self._emit(StateChange("merged", entity_id, visible))
            return True
        return False

    def _apply_delete(self, entity_id: str, timestamp: float) -> bool:
        view = self._views.get(entity_id)
        if view is None:
            view = self._views[entity_id] = ViewState(entity_id=entity_id)
        if self._is_stale(view, timestamp):
            return False
        already_deleted = view.deleted
        view.confirmed_at = timestamp
        if already_deleted:
            return False

        for pending in list(view.overlay):
            view.discard(pending.mutation_id)
            self.queue.cancel(pending.mutation_id)
            self.coalescer.discard(pending.mutation_id)
            self._states[pending.mutation_id] = MutationState.REVERTED
        view.confirmed = {}
        view.deleted = True
        self._emit(StateChange("deleted", entity_id, None))
        return True

    @staticmethod
    def _is_stale(view: ViewState, timestamp: Optional[float]) -> bool:
        return (timestamp is not None and view.confirmed_at is not None
                and timestamp < view.confirmed_at)

    # =========================================================================
    # Write outcomes
    # =========================================================================

    def acknowledge(self, mutation_id: str) -> bool:
        """The remote store accepted the durable write for this mutation."""
        view = self._view_for(mutation_id)
        pending = view.pending(mutation_id) if view else None
        if pending is None:
            return False
        pending.acknowledged_at = commit_time(self.clock.now())
        return True

    def revert(self, mutation_id: str, error: SyncError) -> bool:
        """Undo a mutation whose durable write failed for good.

        The confirmed snapshot is untouched; other pending mutations stay
        applied, and this mutation's other unsent writes are withdrawn.
        A mutation the remote store already acknowledged is kept until a
        snapshot settles it, since part of it reached the server. Returns
        False if the mutation is unknown, settled or acknowledged.
        """
        view = self._view_for(mutation_id)
        pending = view.pending(mutation_id) if view else None
        if pending is None:
            return False
        if pending.acknowledged:
            logger.warning("Not reverting mutation the remote store accepted",
                           entity_id=view.entity_id, mutation_id=mutation_id,
                           error_type=error.error_type)
            return False

        self.queue.cancel(mutation_id)
        self.coalescer.discard(mutation_id)
        view.discard(mutation_id)
        self._states[mutation_id] = MutationState.REVERTED
        change_type = "conflict" if error.error_type == "conflict" else "reverted"
        logger.warning("Optimistic mutation reverted", entity_id=view.entity_id,
                       mutation_id=mutation_id, error_type=error.error_type)
        self._emit(StateChange(change_type, view.entity_id, view.visible(),
                               mutation_id=mutation_id, error=str(error),
                               error_type=error.error_type))
        return True

    def owns(self, mutation_id: str) -> bool:
        return mutation_id in self._entity_of

    def entity_of(self, mutation_id: str) -> Optional[str]:
        return self._entity_of.get(mutation_id)

    def _view_for(self, mutation_id: str) -> Optional[ViewState]:
        entity_id = self._entity_of.get(mutation_id)
        return self._views.get(entity_id) if entity_id is not None else None

    # =========================================================================
    # Introspection
    # =========================================================================

    def view(self, entity_id: str) -> Optional[Dict[str, Any]]:
        state = self._views.get(str(entity_id))
        return state.visible() if state else None

    def view_state(self, entity_id: str) -> Optional[ViewState]:
        return self._views.get(str(entity_id))

    def views(self) -> Dict[str, Dict[str, Any]]:
        return {eid: v.visible() for eid, v in self._views.items() if not v.deleted}

    def state_of(self, mutation_id: str) -> MutationState:
        return self._states.get(mutation_id, MutationState.IDLE)

    def close(self) -> None:
        """Detach from the engine. Pending writes stay in the offline queue."""
        if self.closed:
            return
        self.closed = True
        self._broadcaster.clear()
        if self._on_close is not None:
            self._on_close(self)
        logger.debug("Reconciler closed", resource=self.resource,
                     pending=sum(len(v.overlay) for v in self._views.values()))

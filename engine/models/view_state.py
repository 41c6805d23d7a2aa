"""Per-entity view state: server-confirmed snapshot plus optimistic overlay."""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class MutationState(str, Enum):
    """Reconciler lifecycle of one logical mutation.

    State transitions:
        IDLE -> OPTIMISTICALLY_APPLIED -> CONFIRMED
                                       -> REVERTED
    """
    IDLE = "idle"
    OPTIMISTICALLY_APPLIED = "optimistically_applied"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


# Optimistic transform: (current fields, mutation payload) -> new fields
Transform = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


@dataclass
class PendingMutation:
    """A mutation applied optimistically and not yet settled."""
    mutation_id: str
    kind: str
    payload: Dict[str, Any]
    transform: Transform
    applied_at: float
    acknowledged_at: Optional[float] = None  # when the remote store accepted the write

    @property
    def acknowledged(self) -> bool:
        return self.acknowledged_at is not None

    def settled_by(self, timestamp: Optional[float]) -> bool:
        """True if a snapshot taken at `timestamp` already includes this write."""
        if self.acknowledged_at is None:
            return False
        return timestamp is None or timestamp >= self.acknowledged_at


@dataclass
class ViewState:
    """What one subscriber sees for one entity.

    `confirmed` is only ever replaced by authoritative data. The overlay is the
    ordered list of pending mutations replayed on top of it, so dropping any of
    them can never corrupt the confirmed snapshot.
    """
    entity_id: str
    confirmed: Dict[str, Any] = field(default_factory=dict)
    confirmed_at: Optional[float] = None  # commit timestamp of last applied event
    overlay: List[PendingMutation] = field(default_factory=list)
    deleted: bool = False

    @property
    def has_overlay(self) -> bool:
        return bool(self.overlay)

    def pending(self, mutation_id: str) -> Optional[PendingMutation]:
        for mutation in self.overlay:
            if mutation.mutation_id == mutation_id:
                return mutation
        return None

    def discard(self, mutation_id: str) -> Optional[PendingMutation]:
        """Remove a mutation from the overlay. Returns it, or None if absent."""
        for index, mutation in enumerate(self.overlay):
            if mutation.mutation_id == mutation_id:
                return self.overlay.pop(index)
        return None

    def visible(self) -> Optional[Dict[str, Any]]:
        """Confirmed snapshot with every pending mutation replayed in order."""
        if self.deleted:
            return None
        fields = copy.deepcopy(self.confirmed)
        for mutation in self.overlay:
            fields = mutation.transform(fields, mutation.payload)
        return fields

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "confirmed": self.confirmed,
            "confirmed_at": self.confirmed_at,
            "pending": [m.mutation_id for m in self.overlay],
            "deleted": self.deleted,
            "view": self.visible(),
        }


@dataclass
class StateChange:
    """Notification delivered to reconciler subscribers."""
    type: str  # optimistic | confirmed | merged | deleted | reverted | conflict
    entity_id: str
    view: Optional[Dict[str, Any]]
    mutation_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "entity_id": self.entity_id,
            "view": self.view,
            "mutation_id": self.mutation_id,
            "error": self.error,
            "error_type": self.error_type,
        }

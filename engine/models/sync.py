"""Sync state models: pending writes, batch items, retry policy, sync errors.

All models are plain dataclasses with to_dict() so they can be logged,
broadcast to subscribers, or written to the blob store as JSON.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class WriteStatus(str, Enum):
    """Offline queue write lifecycle.

    State transitions:
        QUEUED -> SENT -> CONFIRMED            (terminal, entry removed)
                       -> FAILED -> QUEUED     (attempt += 1)
                                 -> ABANDONED  (terminal, attempt >= max_retries
                                                or non-retryable error)
        QUEUED -> CANCELLED                    (terminal, owning mutation reverted)
    """
    QUEUED = "queued"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    CANCELLED = "cancelled"


@dataclass
class PendingWrite:
    """A durable mutation owned by exactly one offline queue."""
    kind: str
    payload: Dict[str, Any]
    created_at: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 0
    status: WriteStatus = WriteStatus.QUEUED
    last_error: Optional[str] = None
    cancelled: bool = False  # set while in flight; never retried afterwards

    @property
    def is_terminal(self) -> bool:
        return self.status in (WriteStatus.CONFIRMED, WriteStatus.ABANDONED, WriteStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "created_at": self.created_at,
            "attempt": self.attempt,
            "status": self.status.value,
            "last_error": self.last_error,
        }


@dataclass
class BatchItem:
    """One payload waiting in a batch group.

    The owning mutation id travels beside the payload, never inside it, so
    rows sent to the remote store only hold table columns.
    """
    payload: Dict[str, Any]
    mutation_id: Optional[str] = None
    redrives: int = 0


@dataclass
class RetryPolicy:
    """Retry configuration for remote reads.

    With a `delays` table the delay for attempt n is delays[n] (the last entry
    repeats); without one it is
    min(initial_delay * (backoff_multiplier ^ attempt), max_delay).
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 5.0           # seconds
    backoff_multiplier: float = 2.0
    delays: List[float] = field(default_factory=list)

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry following `attempt` (0-indexed)."""
        if self.delays:
            return self.delays[min(attempt, len(self.delays) - 1)]
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "delays": list(self.delays),
        }


@dataclass
class SyncErrorEvent:
    """Terminal sync failure surfaced to the UI as a non-blocking notice."""
    kind: str
    error_type: str
    message: str
    mutation_id: Optional[str] = None
    entity_id: Optional[str] = None
    source: str = "queue"  # queue | batch | reconciler
    recoverable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "sync_error",
            "kind": self.kind,
            "error_type": self.error_type,
            "message": self.message,
            "mutation_id": self.mutation_id,
            "entity_id": self.entity_id,
            "source": self.source,
            "recoverable": self.recoverable,
        }

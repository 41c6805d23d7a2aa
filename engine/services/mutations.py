"""Mutation kinds the UI can issue, and how each one is made durable.

A MutationPlan says, for one kind:
- which entity of which resource it touches
- the optimistic transform applied to the entity's visible fields
- which cache keys it makes stale
- which batch payloads go to the write coalescer
- which write (if any) goes to the offline queue

Builders return only the columns or procedure arguments the remote schema
knows. The mutation id travels beside each write (the queue write id, the
batch item) and is never sent.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from constants import NOTIFICATIONS, STORIES, notifications_key, story_key, viewed_stories_key
from models.view_state import Transform

Payload = Dict[str, Any]
PayloadBuilder = Callable[[Payload], Payload]


@dataclass
class MutationPlan:
    kind: str
    resource: str
    entity_key: str
    transform: Transform
    cache_keys: Callable[[Payload], List[str]] = lambda payload: []
    batches: List[Tuple[str, PayloadBuilder]] = field(default_factory=list)
    queue: Optional[Tuple[str, PayloadBuilder]] = None
    required: Tuple[str, ...] = ()

    def entity_id(self, payload: Payload) -> str:
        return str(payload[self.entity_key])

    def missing_fields(self, payload: Payload) -> List[str]:
        return [name for name in (self.entity_key, *self.required) if payload.get(name) is None]


# =============================================================================
# STORY VIEW
# =============================================================================

def apply_story_view(fields: Payload, payload: Payload) -> Payload:
    views = int(fields.get("views_count") or 0)
    return {**fields, "views_count": views + 1, "viewed": True}


def story_view_row(payload: Payload) -> Payload:
    return {
        "story_id": payload["story_id"],
        "viewer_id": payload["viewer_id"],
    }


def story_view_increment(payload: Payload) -> Payload:
    return {
        "story_uuid": payload["story_id"],
        "viewer_uuid": payload["viewer_id"],
    }


def story_view_cache_keys(payload: Payload) -> List[str]:
    return [
        viewed_stories_key(payload["viewer_id"]),
        story_key(payload["story_id"]),
    ]


# =============================================================================
# NOTIFICATION
# =============================================================================

def apply_notification(fields: Payload, payload: Payload) -> Payload:
    return {**fields, **payload, "read": False}


def notification_row(payload: Payload) -> Payload:
    return dict(payload)


def notification_cache_keys(payload: Payload) -> List[str]:
    return [notifications_key(payload["user_id"])]


DEFAULT_MUTATIONS: Dict[str, MutationPlan] = {
    # The view row is idempotent on (story_id, viewer_id) so it is batched;
    # the counter increment is not, so it goes through the ordered queue.
    "story_view": MutationPlan(
        kind="story_view",
        resource=STORIES,
        entity_key="story_id",
        transform=apply_story_view,
        cache_keys=story_view_cache_keys,
        batches=[("story_views", story_view_row)],
        queue=("increment_views", story_view_increment),
        required=("viewer_id",),
    ),
    "notification": MutationPlan(
        kind="notification",
        resource=NOTIFICATIONS,
        entity_key="id",
        transform=apply_notification,
        cache_keys=notification_cache_keys,
        queue=("notification", notification_row),
        required=("user_id",),
    ),
}

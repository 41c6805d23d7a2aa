"""Typed change events from the remote store.

Raw payloads arrive in two shapes:
    REST/changes feed: {"eventType": "UPDATE", "table": ..., "new": {...}, "old": {...},
                        "commit_timestamp": "..."}
    Realtime channel:  {"type": "UPDATE", "table": ..., "record": {...},
                        "old_record": {...}, "commit_timestamp": "..."}

parse_change_event() normalizes both and validates them into a closed tagged
union, so the reconciler can switch on change_type exhaustively.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

MUTATION_ID_FIELD = "client_mutation_id"


def commit_time(now: float) -> float:
    """`now` rounded to the microsecond precision of commit timestamps."""
    return datetime.fromtimestamp(now, tz=timezone.utc).timestamp()


class _ChangeEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: str = Field(min_length=1)
    row: Dict[str, Any] = Field(default_factory=dict)
    old_row: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: datetime

    @field_validator("commit_timestamp")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def entity_id(self) -> Optional[str]:
        value = self.row.get("id", self.old_row.get("id"))
        return None if value is None else str(value)

    @property
    def mutation_id(self) -> Optional[str]:
        return self.row.get(MUTATION_ID_FIELD)

    @property
    def timestamp(self) -> float:
        return self.commit_timestamp.timestamp()


class InsertEvent(_ChangeEventBase):
    change_type: Literal["INSERT"] = "INSERT"


class UpdateEvent(_ChangeEventBase):
    change_type: Literal["UPDATE"] = "UPDATE"


class DeleteEvent(_ChangeEventBase):
    change_type: Literal["DELETE"] = "DELETE"

    @field_validator("old_row")
    @classmethod
    def require_identity(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in v:
            raise ValueError("delete event needs the old row's id")
        return v


ChangeEvent = Annotated[
    Union[InsertEvent, UpdateEvent, DeleteEvent],
    Field(discriminator="change_type"),
]

_change_event_adapter = TypeAdapter(ChangeEvent)


def parse_change_event(raw: Dict[str, Any]) -> Union[InsertEvent, UpdateEvent, DeleteEvent]:
    """Validate a raw change payload into a typed event.

    Raises pydantic.ValidationError for malformed or unknown change types.
    """
    change_type = raw.get("change_type") or raw.get("eventType") or raw.get("type")
    normalized = {
        "change_type": str(change_type).upper() if change_type else None,
        "resource": raw.get("resource") or raw.get("table"),
        "row": raw.get("row") or raw.get("new") or raw.get("record") or {},
        "old_row": raw.get("old_row") or raw.get("old") or raw.get("old_record") or {},
        "commit_timestamp": raw.get("commit_timestamp"),
    }
    return _change_event_adapter.validate_python(normalized)

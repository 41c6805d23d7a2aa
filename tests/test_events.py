"""Tests for change event parsing."""

import pydantic
import pytest

from models.events import DeleteEvent, InsertEvent, UpdateEvent, parse_change_event


def test_realtime_shape():
    event = parse_change_event({
        "type": "update",
        "table": "stories",
        "record": {"id": 7, "views_count": 2, "client_mutation_id": "m-1"},
        "old_record": {"id": 7},
        "commit_timestamp": "2025-06-15T12:00:00+00:00",
    })

    assert isinstance(event, UpdateEvent)
    assert event.resource == "stories"
    assert event.entity_id == "7"
    assert event.mutation_id == "m-1"


def test_changes_feed_shape():
    event = parse_change_event({
        "eventType": "INSERT",
        "table": "notifications",
        "new": {"id": "n1"},
        "commit_timestamp": "2025-06-15T12:00:00Z",
    })

    assert isinstance(event, InsertEvent)
    assert event.old_row == {}
    assert event.mutation_id is None


def test_naive_timestamp_is_utc():
    event = parse_change_event({
        "type": "INSERT",
        "table": "stories",
        "record": {"id": "s1"},
        "commit_timestamp": "2025-06-15T12:00:00",
    })

    assert event.commit_timestamp.utcoffset().total_seconds() == 0


def test_delete_identity_from_old_row():
    event = parse_change_event({
        "type": "DELETE",
        "table": "stories",
        "record": {},
        "old_record": {"id": "s1"},
        "commit_timestamp": "2025-06-15T12:00:00Z",
    })

    assert isinstance(event, DeleteEvent)
    assert event.entity_id == "s1"


@pytest.mark.parametrize("raw", [
    {"type": "TRUNCATE", "table": "stories", "commit_timestamp": "2025-06-15T12:00:00Z"},
    {"type": "INSERT", "record": {"id": "s1"}, "commit_timestamp": "2025-06-15T12:00:00Z"},
    {"type": "INSERT", "table": "stories", "record": {"id": "s1"}},
    {"type": "DELETE", "table": "stories", "old_record": {}, "commit_timestamp": "2025-06-15T12:00:00Z"},
    {"table": "stories", "commit_timestamp": "2025-06-15T12:00:00Z"},
])
def test_invalid_payloads_rejected(raw):
    with pytest.raises(pydantic.ValidationError):
        parse_change_event(raw)

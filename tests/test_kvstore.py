"""Tests for the JSON blob store."""

from core.kvstore import BlobStore


def test_missing_file_is_empty(tmp_path):
    store = BlobStore(tmp_path / "nothing.json")

    assert store.get("last_event_at") is None
    assert store.get("last_event_at", 0) == 0
    assert store.delete("last_event_at") is False


def test_values_survive_reopen(tmp_path):
    path = tmp_path / "state" / "marker.json"
    BlobStore(path).set("last_event_at", 1750000000.5)

    reopened = BlobStore(path)
    assert reopened.get("last_event_at") == 1750000000.5
    assert not path.with_suffix(".json.tmp").exists()

    assert reopened.delete("last_event_at") is True
    assert BlobStore(path).get("last_event_at") is None


def test_corrupt_file_treated_as_empty(tmp_path):
    path = tmp_path / "marker.json"
    path.write_bytes(b"{not json")
    store = BlobStore(path)

    assert store.get("last_event_at") is None

    store.set("last_event_at", 1.0)
    assert BlobStore(path).get("last_event_at") == 1.0


def test_non_object_json_treated_as_empty(tmp_path):
    path = tmp_path / "marker.json"
    path.write_bytes(b"[1, 2, 3]")

    assert BlobStore(path).get("last_event_at") is None

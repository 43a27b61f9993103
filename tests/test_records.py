from datetime import datetime, timedelta, timezone

import pytest

from billtier.errors import InvalidRecord
from billtier.records import (
    Archived, Inline, Location, archive_transition, batch_to_entries, derive_blob_key,
    entries_to_batch, new_record, payload_checksum, to_view,
)

TS = datetime(2025, 1, 15, 8, 30, tzinfo=timezone.utc)


def test_new_record_is_inline():
    entry = new_record("INV-1", TS, {"customer": "c1"}, b"payload")
    assert isinstance(entry.placement, Inline)
    assert entry.location == Location.INLINE
    assert entry.is_inline
    assert entry.placement.payload == b"payload"


def test_timestamp_normalized_to_utc():
    local = datetime(2025, 1, 15, 10, 30, tzinfo=timezone(timedelta(hours=2)))
    entry = new_record("INV-1", local, {}, b"x")
    assert entry.timestamp == TS
    assert entry.timestamp.utcoffset() == timedelta(0)


def test_naive_timestamp_rejected():
    with pytest.raises(InvalidRecord):
        new_record("INV-1", datetime(2025, 1, 15), {}, b"x")


@pytest.mark.parametrize("record_id", ["", "a/b", "..", "with space", "x" * 201])
def test_invalid_record_ids(record_id):
    with pytest.raises(InvalidRecord):
        new_record(record_id, TS, {}, b"x")


def test_metadata_size_bound():
    with pytest.raises(InvalidRecord):
        new_record("INV-1", TS, {"notes": "x" * 5000}, b"x")


def test_metadata_must_be_serializable():
    with pytest.raises(InvalidRecord):
        new_record("INV-1", TS, {"when": object()}, b"x")


def test_metadata_is_held_in_json_form():
    lines = [{"sku": "A", "qty": 2}]
    metadata = {7: "seven", "period": ("2025-01", "2025-02"), "lines": lines}

    entry = new_record("INV-1", TS, metadata, b"x")
    lines[0]["qty"] = 99

    assert entry.metadata == {"7": "seven", "period": ["2025-01", "2025-02"], "lines": [{"sku": "A", "qty": 2}]}


def test_payload_must_be_bytes():
    with pytest.raises(InvalidRecord):
        new_record("INV-1", TS, {}, "not bytes")


def test_blob_key_is_deterministic():
    key = derive_blob_key("INV-2024-000123")
    assert key == derive_blob_key("INV-2024-000123")
    shard, name = key.split("/")
    assert len(shard) == 2
    assert name == "INV-2024-000123.payload"
    assert derive_blob_key("INV-2024-000124") != key


def test_archive_transition_keeps_identity():
    entry = new_record("INV-1", TS, {"customer": "c1"}, b"payload")
    pointer = Archived(derive_blob_key("INV-1"), 7, payload_checksum(b"payload"))
    archived = archive_transition(entry, pointer)

    assert archived.location == Location.ARCHIVED
    assert archived.record_id == entry.record_id
    assert archived.timestamp == entry.timestamp
    assert archived.metadata == entry.metadata
    assert archived.placement == pointer


def test_archive_transition_only_from_inline():
    entry = new_record("INV-1", TS, {}, b"payload")
    pointer = Archived(derive_blob_key("INV-1"), 7, payload_checksum(b"payload"))
    archived = archive_transition(entry, pointer)
    with pytest.raises(InvalidRecord):
        archive_transition(archived, pointer)


def test_columnar_form_preserves_both_placements():
    inline = new_record("INV-1", TS, {"customer": "c1"}, b"first")
    archived = archive_transition(
        new_record("INV-2", TS + timedelta(seconds=1), {"customer": "c2"}, b"second"),
        Archived(derive_blob_key("INV-2"), 6, payload_checksum(b"second")),
    )

    restored = batch_to_entries(entries_to_batch([inline, archived]))

    assert restored == [inline, archived]


def test_view_serializes():
    entry = new_record("INV-1", TS, {"customer": "c1"}, b"hello")
    view = to_view(entry, b"hello")
    assert view.to_dict() == {
        "id": "INV-1",
        "timestamp": TS.isoformat(),
        "metadata": {"customer": "c1"},
        "payload": "hello",
        "location": "inline",
    }

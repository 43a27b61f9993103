from datetime import timedelta

import pytest

from billtier.errors import ConditionFailed, DuplicateRecord, RecordNotFound
from billtier.index_store import LocalIndexStore, decode_page_token, encode_page_token
from billtier.records import Archived, Location, archive_transition, derive_blob_key, payload_checksum
from tests.conftest import NOW


def _archived(entry):
    payload = entry.placement.payload
    return archive_transition(entry, Archived(derive_blob_key(entry.record_id), len(payload),
                                              payload_checksum(payload)))


async def _scan_all(store, cutoff, limit):
    pages = []
    token = None
    while True:
        page = await store.scan(cutoff, Location.INLINE, token, limit)
        pages.append(page)
        token = page.next_page_token
        if token is None:
            return pages


@pytest.mark.asyncio
async def test_put_and_get(index_store, make_record):
    entry = make_record("INV-1")
    await index_store.put(entry)
    assert await index_store.get("INV-1") == entry


@pytest.mark.asyncio
async def test_duplicate_put_rejected(index_store, make_record):
    await index_store.put(make_record("INV-1"))
    with pytest.raises(DuplicateRecord):
        await index_store.put(make_record("INV-1"))


@pytest.mark.asyncio
async def test_put_many_rejects_whole_batch_on_duplicate(index_store, make_record):
    await index_store.put(make_record("INV-2"))
    with pytest.raises(DuplicateRecord):
        await index_store.put_many([make_record("INV-1"), make_record("INV-2")])
    with pytest.raises(RecordNotFound):
        await index_store.get("INV-1")


@pytest.mark.asyncio
async def test_get_missing(index_store):
    with pytest.raises(RecordNotFound) as exc_info:
        await index_store.get("INV-404")
    assert exc_info.value.record_id == "INV-404"
    assert isinstance(exc_info.value, KeyError)


@pytest.mark.asyncio
async def test_conditional_update(index_store, make_record):
    entry = make_record("INV-1")
    await index_store.put(entry)
    archived = _archived(entry)

    await index_store.conditional_update("INV-1", Location.INLINE, archived)
    assert (await index_store.get("INV-1")).location == Location.ARCHIVED

    with pytest.raises(ConditionFailed) as exc_info:
        await index_store.conditional_update("INV-1", Location.INLINE, archived)
    assert exc_info.value.actual == "archived"


@pytest.mark.asyncio
async def test_conditional_update_missing(index_store, make_record):
    with pytest.raises(RecordNotFound):
        await index_store.conditional_update("INV-1", Location.INLINE, _archived(make_record("INV-1")))


@pytest.mark.asyncio
async def test_scan_cutoff_is_strict(index_store, make_record):
    cutoff = NOW - timedelta(days=90)
    await index_store.put(make_record("older", timestamp=cutoff - timedelta(microseconds=1)))
    await index_store.put(make_record("exact", timestamp=cutoff))
    await index_store.put(make_record("newer", timestamp=cutoff + timedelta(microseconds=1)))

    page = await index_store.scan(cutoff, Location.INLINE)

    assert [e.record_id for e in page.entries] == ["older"]
    assert page.next_page_token is None


@pytest.mark.asyncio
async def test_scan_filters_location(index_store, make_record):
    inline = make_record("INV-1", age=timedelta(days=100))
    archived_source = make_record("INV-2", age=timedelta(days=100))
    await index_store.put(inline)
    await index_store.put(archived_source)
    await index_store.conditional_update("INV-2", Location.INLINE, _archived(archived_source))

    inline_page = await index_store.scan(NOW, Location.INLINE)
    archived_page = await index_store.scan(NOW, Location.ARCHIVED)

    assert [e.record_id for e in inline_page.entries] == ["INV-1"]
    assert [e.record_id for e in archived_page.entries] == ["INV-2"]


@pytest.mark.asyncio
async def test_scan_pages_in_timestamp_then_id_order(index_store, make_record):
    # Ties on timestamp are broken by record id
    same_ts = NOW - timedelta(days=200)
    ids = ["INV-c", "INV-a", "INV-b"]
    for record_id in ids:
        await index_store.put(make_record(record_id, timestamp=same_ts))
    for n in range(4):
        await index_store.put(make_record(f"INV-{n}", age=timedelta(days=100 + n)))

    pages = await _scan_all(index_store, NOW, limit=3)

    assert [len(p.entries) for p in pages] == [3, 3, 1]
    seen = [e.record_id for p in pages for e in p.entries]
    assert seen == ["INV-a", "INV-b", "INV-c", "INV-3", "INV-2", "INV-1", "INV-0"]


@pytest.mark.asyncio
async def test_scan_exact_multiple_of_limit(index_store, make_record):
    for n in range(6):
        await index_store.put(make_record(f"INV-{n}", age=timedelta(days=100 + n)))

    pages = await _scan_all(index_store, NOW, limit=3)

    assert [len(p.entries) for p in pages] == [3, 3]


@pytest.mark.asyncio
async def test_scan_resumes_after_flips_and_inserts(index_store, make_record):
    entries = [make_record(f"INV-{n}", age=timedelta(days=100 + n)) for n in range(6)]
    await index_store.put_many(entries)

    first = await index_store.scan(NOW, Location.INLINE, None, 3)
    for entry in first.entries:
        await index_store.conditional_update(entry.record_id, Location.INLINE, _archived(entry))
    # Older than the page boundary, so it falls before the resume position
    await index_store.put(make_record("INV-late", age=timedelta(days=300)))

    second = await index_store.scan(NOW, Location.INLINE, first.next_page_token, 3)

    assert [e.record_id for e in first.entries] == ["INV-5", "INV-4", "INV-3"]
    assert [e.record_id for e in second.entries] == ["INV-2", "INV-1", "INV-0"]
    assert second.next_page_token is None
    archived = await index_store.scan(NOW, Location.ARCHIVED, None, 10)
    assert [e.record_id for e in archived.entries] == ["INV-5", "INV-4", "INV-3"]


@pytest.mark.asyncio
async def test_scan_key_order_survives_recovery(tmp_path, make_record):
    store = LocalIndexStore(wal_dir=str(tmp_path / "index"))
    entries = [make_record(f"INV-{n}", age=timedelta(days=n)) for n in range(5)]
    await store.put_many(entries)
    await store.conditional_update("INV-2", Location.INLINE, _archived(entries[2]))
    await store.close()

    recovered = LocalIndexStore(wal_dir=str(tmp_path / "index"))
    page = await recovered.scan(NOW, Location.INLINE, None, 10)

    assert [e.record_id for e in page.entries] == ["INV-4", "INV-3", "INV-1", "INV-0"]
    await recovered.close()


@pytest.mark.asyncio
async def test_scan_empty_store(index_store):
    page = await index_store.scan(NOW, Location.INLINE)
    assert page.entries == []
    assert page.next_page_token is None


def test_page_token_round_trip():
    token = encode_page_token(NOW, "INV-1")
    micros, record_id = decode_page_token(token)
    assert record_id == "INV-1"
    assert micros == int(NOW.timestamp()) * 1_000_000


def test_bad_page_token():
    with pytest.raises(ValueError):
        decode_page_token("not-a-token")


@pytest.mark.asyncio
async def test_wal_recovery(tmp_path, make_record):
    store = LocalIndexStore(wal_dir=str(tmp_path / "index"))
    first = make_record("INV-1", age=timedelta(days=100))
    await store.put_many([first, make_record("INV-2"), make_record("INV-3")])
    await store.conditional_update("INV-1", Location.INLINE, _archived(first))
    await store.close()

    recovered = LocalIndexStore(wal_dir=str(tmp_path / "index"))

    assert len(recovered.entries) == 3
    assert (await recovered.get("INV-1")) == _archived(first)
    assert (await recovered.get("INV-2")).is_inline
    await recovered.close()


@pytest.mark.asyncio
async def test_wal_recovery_preserves_metadata(tmp_path, make_record):
    store = LocalIndexStore(wal_dir=str(tmp_path / "index"))
    entry = make_record("INV-1", metadata={7: "seven", "period": ("2025-01", "2025-02"), "tax": {"rate": 0.2}})
    await store.put(entry)
    await store.close()

    recovered = LocalIndexStore(wal_dir=str(tmp_path / "index"))

    assert (await recovered.get("INV-1")).metadata == entry.metadata
    assert (await recovered.get("INV-1")) == entry
    await recovered.close()


@pytest.mark.asyncio
async def test_wal_recovery_skips_unreadable_segment(tmp_path, make_record):
    wal_dir = tmp_path / "index"
    store = LocalIndexStore(wal_dir=str(wal_dir))
    await store.put(make_record("INV-1"))
    await store.close()
    (wal_dir / "index_wal_000099.arrow").write_bytes(b"\x00garbage")

    recovered = LocalIndexStore(wal_dir=str(wal_dir))

    assert list(recovered.entries) == ["INV-1"]
    await recovered.close()


@pytest.mark.asyncio
async def test_wal_recovery_stops_at_torn_tail(tmp_path, make_record):
    wal_dir = tmp_path / "index"
    store = LocalIndexStore(wal_dir=str(wal_dir))
    await store.put(make_record("INV-1"))
    await store.put(make_record("INV-2"))
    await store.close()

    segment = next(wal_dir.glob("index_wal_*.arrow"))
    data = segment.read_bytes()
    segment.write_bytes(data[:-30])

    recovered = LocalIndexStore(wal_dir=str(wal_dir))

    assert list(recovered.entries) == ["INV-1"]
    await recovered.close()


@pytest.mark.asyncio
async def test_compact_keeps_current_state(tmp_path, make_record):
    wal_dir = tmp_path / "index"
    store = LocalIndexStore(wal_dir=str(wal_dir))
    entry = make_record("INV-1", age=timedelta(days=100))
    await store.put(entry)
    await store.put(make_record("INV-2"))
    await store.conditional_update("INV-1", Location.INLINE, _archived(entry))
    await store.close()

    reopened = LocalIndexStore(wal_dir=str(wal_dir))
    await reopened.put(make_record("INV-3"))
    removed = reopened.compact()
    await reopened.close()

    assert removed == 2
    assert len(list(wal_dir.glob("index_wal_*.arrow"))) == 1

    final = LocalIndexStore(wal_dir=str(wal_dir))
    assert sorted(final.entries) == ["INV-1", "INV-2", "INV-3"]
    assert (await final.get("INV-1")).location == Location.ARCHIVED
    await final.close()


@pytest.mark.asyncio
async def test_stats(index_store, make_record):
    entry = make_record("INV-1")
    await index_store.put(entry)
    await index_store.put(make_record("INV-2"))
    await index_store.conditional_update("INV-1", Location.INLINE, _archived(entry))

    stats = await index_store.get_stats()

    assert stats["total_records"] == 2
    assert stats["inline_records"] == 1
    assert stats["archived_records"] == 1
    assert stats["wal_enabled"] is False

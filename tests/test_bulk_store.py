import pytest

from billtier.bulk_store import validate_key
from billtier.errors import BlobNotFound
from billtier.interfaces import TierHint
from billtier.records import derive_blob_key, payload_checksum


@pytest.mark.asyncio
async def test_put_get_stat(fs_bulk_store):
    key = derive_blob_key("INV-1")
    info = await fs_bulk_store.put(key, b"invoice body")

    assert info.size == len(b"invoice body")
    assert info.checksum == payload_checksum(b"invoice body")
    assert info.tier == TierHint.RARE
    assert await fs_bulk_store.get(key) == b"invoice body"
    assert await fs_bulk_store.stat(key) == info
    assert (fs_bulk_store.storage_path / "rare" / key).is_file()


@pytest.mark.asyncio
async def test_staging_is_empty_after_put(fs_bulk_store):
    await fs_bulk_store.put(derive_blob_key("INV-1"), b"x" * 4096)
    assert list(fs_bulk_store.staging_path.iterdir()) == []


@pytest.mark.asyncio
async def test_overwrite_moves_between_tiers(fs_bulk_store):
    key = derive_blob_key("INV-1")
    await fs_bulk_store.put(key, b"first", TierHint.FREQUENT)
    await fs_bulk_store.put(key, b"second", TierHint.RARE)

    assert not (fs_bulk_store.storage_path / "frequent" / key).exists()
    assert await fs_bulk_store.get(key) == b"second"
    stats = await fs_bulk_store.get_stats()
    assert stats["objects_by_tier"] == {"frequent": 0, "rare": 1}


@pytest.mark.asyncio
async def test_missing_blob(fs_bulk_store):
    key = derive_blob_key("INV-404")
    with pytest.raises(BlobNotFound):
        await fs_bulk_store.get(key)
    assert await fs_bulk_store.stat(key) is None
    assert await fs_bulk_store.delete(key) is False


@pytest.mark.asyncio
async def test_delete(fs_bulk_store):
    key = derive_blob_key("INV-1")
    await fs_bulk_store.put(key, b"x")
    assert await fs_bulk_store.delete(key) is True
    assert await fs_bulk_store.stat(key) is None


@pytest.mark.asyncio
async def test_stat_detects_changed_bytes(fs_bulk_store):
    key = derive_blob_key("INV-1")
    await fs_bulk_store.put(key, b"original")
    (fs_bulk_store.storage_path / "rare" / key).write_bytes(b"tampered")

    info = await fs_bulk_store.stat(key)

    assert info.checksum != payload_checksum(b"original")


@pytest.mark.parametrize("key", ["", "/abs/key", "../escape", "a/../b", "a\\b", "./a"])
def test_invalid_keys(key):
    with pytest.raises(ValueError):
        validate_key(key)


@pytest.mark.asyncio
async def test_memory_store(bulk_store):
    key = derive_blob_key("INV-1")
    await bulk_store.put(key, b"abc")
    assert await bulk_store.get(key) == b"abc"
    assert (await bulk_store.stat(key)).size == 3
    assert await bulk_store.delete(key) is True
    with pytest.raises(BlobNotFound):
        await bulk_store.get(key)

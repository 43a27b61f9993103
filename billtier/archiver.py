"""
Archive-one: move a single record's payload from the index to the bulk store.

Ordering is blob before pointer, never pointer before blob:

1. Write the bulk copy under the key derived from the record id
   (skipped when an identical copy from an earlier attempt is already there)
2. Verify the bulk copy by size and SHA-256 checksum
3. Flip the index entry to Archived with a conditional update that expects Inline
4. Never delete the bulk copy, whatever fails

At every instant the payload is readable from at least one store. The worst
leftover is an orphaned blob, never a dangling pointer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import (
    ArchiveError, BulkVerifyFailed, BulkWriteFailed, ConditionFailed, IndexUpdateFailed,
    RecordNotFound, RetryExhausted,
)
from .interfaces import BulkObjectStore, IndexStore, TierHint
from .logger import get_logger
from .records import Archived, IndexEntry, Location, archive_transition, derive_blob_key, payload_checksum
from .retry import RetryPolicy


class ArchiveOutcome(str, Enum):
    ARCHIVED = "archived"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ArchiveResult:
    record_id: str
    outcome: ArchiveOutcome
    blob_key: Optional[str] = None
    error: Optional[ArchiveError] = None
    reused_blob: bool = False


class Archiver:
    """Runs the archive-one protocol against an index store and a bulk store."""

    def __init__(self, index_store: IndexStore, bulk_store: BulkObjectStore,
                 index_retry: Optional[RetryPolicy] = None, bulk_retry: Optional[RetryPolicy] = None):
        self.index_store = index_store
        self.bulk_store = bulk_store
        self.index_retry = index_retry or RetryPolicy()
        self.bulk_retry = bulk_retry or RetryPolicy()
        self.logger = get_logger("Archiver")

    async def archive_one(self, entry: IndexEntry) -> ArchiveResult:
        record_id = entry.record_id
        if not entry.is_inline:
            # Stale candidate: a previous sweep already archived it
            return ArchiveResult(record_id, ArchiveOutcome.SKIPPED, blob_key=entry.placement.blob_key)

        payload = entry.placement.payload
        key = derive_blob_key(record_id)
        size = len(payload)
        checksum = payload_checksum(payload)

        try:
            reused = await self._write_bulk_copy(record_id, key, payload, size, checksum)
            await self._verify_bulk_copy(record_id, key, size, checksum)
        except ArchiveError as e:
            self.logger.warning(f"Archive of {record_id} aborted, record stays inline: {e}")
            return ArchiveResult(record_id, ArchiveOutcome.FAILED, blob_key=key, error=e)

        archived_entry = archive_transition(entry, Archived(blob_key=key, size=size, checksum=checksum))
        try:
            await self.index_retry.call(
                f"index conditional_update {record_id}",
                self.index_store.conditional_update, record_id, Location.INLINE, archived_entry,
            )
        except ConditionFailed:
            self.logger.debug(f"{record_id} already archived by a concurrent sweep")
            return ArchiveResult(record_id, ArchiveOutcome.SKIPPED, blob_key=key, reused_blob=reused)
        except (RetryExhausted, RecordNotFound) as e:
            error = IndexUpdateFailed(record_id, f"pointer flip failed, bulk copy retained at {key}: {e}")
            self.logger.warning(str(error))
            return ArchiveResult(record_id, ArchiveOutcome.FAILED, blob_key=key, error=error, reused_blob=reused)

        self.logger.debug(f"Archived {record_id} ({size:,} bytes) to {key}")
        return ArchiveResult(record_id, ArchiveOutcome.ARCHIVED, blob_key=key, reused_blob=reused)

    async def _write_bulk_copy(self, record_id: str, key: str, payload: bytes, size: int, checksum: str) -> bool:
        """Upload the payload unless an identical copy exists. Returns True when an existing copy was reused."""
        try:
            existing = await self.bulk_retry.call(f"bulk stat {key}", self.bulk_store.stat, key)
        except RetryExhausted as e:
            raise BulkWriteFailed(record_id, f"could not check existing bulk copy: {e}") from e

        if existing is not None and existing.size == size and existing.checksum == checksum:
            self.logger.info(f"Reusing bulk copy of {record_id} left by an earlier attempt")
            return True

        try:
            await self.bulk_retry.call(f"bulk put {key}", self.bulk_store.put, key, payload, TierHint.RARE)
        except RetryExhausted as e:
            raise BulkWriteFailed(record_id, f"bulk write failed: {e}") from e
        return False

    async def _verify_bulk_copy(self, record_id: str, key: str, size: int, checksum: str):
        try:
            info = await self.bulk_retry.call(f"bulk verify {key}", self.bulk_store.stat, key)
        except RetryExhausted as e:
            raise BulkVerifyFailed(record_id, f"could not verify bulk copy: {e}") from e

        if info is None:
            raise BulkVerifyFailed(record_id, f"bulk copy missing after write at {key}")
        if info.size != size or info.checksum != checksum:
            raise BulkVerifyFailed(
                record_id,
                f"bulk copy mismatch at {key}: size {info.size} != {size} or checksum differs",
            )

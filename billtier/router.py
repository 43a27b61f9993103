"""
Retrieval router: resolves a record id to a uniform record view.

Inline records are served from the index entry alone. Archived records need
two dependent reads: the index entry (for the pointer) and then the bulk
object. The router is read-only; it never changes a record's placement.
"""

import asyncio
from typing import Dict, Iterable, Optional, Union

from .errors import BlobNotFound, RecordNotFound, RetryExhausted, TierUnavailable, TransientStoreError
from .interfaces import BulkObjectStore, IndexStore
from .logger import get_logger
from .records import Archived, IndexEntry, RecordView, payload_checksum, to_view
from .retry import RetryPolicy


class RetrievalRouter:
    """Serves get-record-by-id across both tiers."""

    def __init__(self, index_store: IndexStore, bulk_store: BulkObjectStore,
                 index_retry: Optional[RetryPolicy] = None, bulk_retry: Optional[RetryPolicy] = None,
                 config=None):
        if config is not None:
            index_retry = index_retry or RetryPolicy.from_config(config.retry, config.timeouts.index_timeout_seconds)
            bulk_retry = bulk_retry or RetryPolicy.from_config(config.retry, config.timeouts.bulk_timeout_seconds)

        self.index_store = index_store
        self.bulk_store = bulk_store
        self.index_retry = index_retry or RetryPolicy()
        self.bulk_retry = bulk_retry or RetryPolicy()
        self.logger = get_logger("RetrievalRouter")

    async def get_record(self, record_id: str) -> RecordView:
        """
        Return {metadata, payload} for record_id.

        Raises:
            RecordNotFound: no index entry exists for record_id
            TierUnavailable: the index could not be read, or the entry exists but
                its payload could not be read, within the retry budget
        """
        try:
            entry = await self.index_retry.call(f"index get {record_id}", self.index_store.get, record_id)
        except RetryExhausted as e:
            raise TierUnavailable(record_id, f"index unavailable: {e.last_error!r}") from e

        if entry.is_inline:
            return to_view(entry, entry.placement.payload)

        payload = await self._fetch_archived(entry)
        return to_view(entry, payload)

    async def _fetch_archived(self, entry: IndexEntry) -> bytes:
        pointer: Archived = entry.placement
        try:
            # A missing blob is retried too: it may be an eventually consistent read
            payload = await self.bulk_retry.call(
                f"bulk get {pointer.blob_key}", self.bulk_store.get, pointer.blob_key,
                retry_on=(TransientStoreError, BlobNotFound),
            )
        except RetryExhausted as e:
            self.logger.error(f"Archived payload of {entry.record_id} unreadable at {pointer.blob_key}: {e.last_error!r}")
            raise TierUnavailable(entry.record_id, f"bulk store read failed: {e.last_error!r}") from e

        if len(payload) != pointer.size or payload_checksum(payload) != pointer.checksum:
            self.logger.error(f"Archived payload of {entry.record_id} at {pointer.blob_key} does not match its pointer")
            raise TierUnavailable(entry.record_id, "archived payload failed integrity check")

        return payload

    async def get_many(self, record_ids: Iterable[str]) -> Dict[str, Union[RecordView, Exception]]:
        """Resolve several ids concurrently. Each id maps to its view or to the error it raised."""
        ids = list(dict.fromkeys(record_ids))

        async def resolve(record_id: str):
            try:
                return await self.get_record(record_id)
            except (RecordNotFound, TierUnavailable) as e:
                return e

        results = await asyncio.gather(*(resolve(record_id) for record_id in ids))
        return dict(zip(ids, results))

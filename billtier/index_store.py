"""
Local index store: in-memory entries made durable by an Arrow IPC WAL.

Point reads and writes hit a dict. Scans page through a sorted
(timestamp, record_id) key list kept per location, so one page costs
O(log n + limit) however large the store grows.
"""

import asyncio
import base64
import bisect
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import ConditionFailed, DuplicateRecord, RecordNotFound, TransientStoreError
from .interfaces import IndexStore, ScanPage
from .logger import get_logger
from .records import IndexEntry, Location
from .wal_manager import WALManager

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_micros(timestamp: datetime) -> int:
    delta = timestamp - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def encode_page_token(timestamp: datetime, record_id: str) -> str:
    """Opaque resume position: the (timestamp, id) of the last entry returned."""
    raw = json.dumps([_to_micros(timestamp), record_id]).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_page_token(token: str) -> Tuple[int, str]:
    try:
        micros, record_id = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        return int(micros), str(record_id)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid page token: {token!r}") from e


class LocalIndexStore(IndexStore):
    """In-process index store with optional WAL durability."""

    def __init__(self, wal_dir: Optional[str] = None, wal_segment_max_mb: int = 64, config=None):
        if config is not None:
            self.wal_enabled = config.index.wal_enabled
            wal_segment_max_mb = config.index.wal_segment_max_mb
            if wal_dir is None and self.wal_enabled:
                wal_dir = str(config.get_index_path())
        else:
            self.wal_enabled = wal_dir is not None

        self.entries: Dict[str, IndexEntry] = {}
        self._ordered: Dict[Location, List[Tuple[datetime, str]]] = {location: [] for location in Location}
        self._lock = asyncio.Lock()
        self.logger = get_logger("IndexStore")
        self.wal_manager: Optional[WALManager] = None

        if self.wal_enabled and wal_dir is not None:
            self.wal_manager = WALManager(Path(wal_dir), "index", max_segment_size_mb=wal_segment_max_mb)
            self._recover_from_wal()

    def _recover_from_wal(self):
        """Replay WAL segments in write order; the last write for an id wins."""
        replayed = 0
        for entry in self.wal_manager.replay_entries():
            self.entries[entry.record_id] = entry
            replayed += 1
        self._rebuild_order()

        if replayed:
            self.logger.info(f"Recovered {len(self.entries):,} index entries from {replayed:,} WAL records")
        else:
            self.logger.info("No index WAL data to recover")

    def _rebuild_order(self):
        for keys in self._ordered.values():
            keys.clear()
        for entry in self.entries.values():
            self._ordered[entry.location].append((entry.timestamp, entry.record_id))
        for keys in self._ordered.values():
            keys.sort()

    def _add_key(self, entry: IndexEntry):
        bisect.insort(self._ordered[entry.location], (entry.timestamp, entry.record_id))

    def _remove_key(self, entry: IndexEntry):
        keys = self._ordered[entry.location]
        key = (entry.timestamp, entry.record_id)
        i = bisect.bisect_left(keys, key)
        if i < len(keys) and keys[i] == key:
            del keys[i]

    def _log_mutation(self, entry: IndexEntry):
        """Append the new entry state to the WAL before it becomes visible."""
        if self.wal_manager is None:
            return
        try:
            self.wal_manager.append_entries([entry])
        except OSError as e:
            raise TransientStoreError(f"index WAL write failed for {entry.record_id}: {e}") from e

    async def get(self, record_id: str) -> IndexEntry:
        entry = self.entries.get(record_id)
        if entry is None:
            raise RecordNotFound(record_id)
        return entry

    async def put(self, entry: IndexEntry) -> None:
        async with self._lock:
            if entry.record_id in self.entries:
                raise DuplicateRecord(entry.record_id)
            self._log_mutation(entry)
            self.entries[entry.record_id] = entry
            self._add_key(entry)
        self.logger.debug(f"Created index entry {entry.record_id} ({entry.location.value})")

    async def put_many(self, entries: List[IndexEntry]) -> int:
        """Bulk create. Existing ids are rejected as a whole before anything is written."""
        async with self._lock:
            seen = set()
            for entry in entries:
                if entry.record_id in self.entries or entry.record_id in seen:
                    raise DuplicateRecord(entry.record_id)
                seen.add(entry.record_id)
            if self.wal_manager is not None and entries:
                try:
                    self.wal_manager.append_entries(entries)
                except OSError as e:
                    raise TransientStoreError(f"index WAL write failed: {e}") from e
            for entry in entries:
                self.entries[entry.record_id] = entry
                self._add_key(entry)
        return len(entries)

    async def conditional_update(self, record_id: str, expected_location: Location,
                                 new_entry: IndexEntry) -> None:
        if new_entry.record_id != record_id:
            raise ValueError(f"entry id {new_entry.record_id} does not match {record_id}")

        async with self._lock:
            current = self.entries.get(record_id)
            if current is None:
                raise RecordNotFound(record_id)
            if current.location != expected_location:
                raise ConditionFailed(record_id, expected_location.value, current.location.value)
            self._log_mutation(new_entry)
            self.entries[record_id] = new_entry
            self._remove_key(current)
            self._add_key(new_entry)

        self.logger.debug(f"Updated {record_id}: {expected_location.value} -> {new_entry.location.value}")

    async def scan(self, cutoff: datetime, location: Location, page_token: Optional[str] = None,
                   limit: int = 1000) -> ScanPage:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        keys = self._ordered[location]
        # Ids are non-empty, so (cutoff, "") sorts before every key stamped at cutoff
        end = bisect.bisect_left(keys, (cutoff, ""))
        start = 0
        if page_token:
            after_micros, after_id = decode_page_token(page_token)
            start = bisect.bisect_right(keys, (_EPOCH + timedelta(microseconds=after_micros), after_id))

        stop = min(start + limit, end)
        entries = [self.entries[record_id] for _, record_id in keys[start:stop]]
        next_token = None
        if stop < end and entries:
            last = entries[-1]
            next_token = encode_page_token(last.timestamp, last.record_id)

        return ScanPage(entries, next_token)

    def iter_entries(self) -> Iterator[IndexEntry]:
        return iter(list(self.entries.values()))

    def compact(self) -> int:
        """Rewrite the WAL as one snapshot segment of current entries."""
        if self.wal_manager is None:
            return 0
        return self.wal_manager.compact(list(self.entries.values()))

    async def get_stats(self) -> dict:
        inline = [e for e in self.entries.values() if e.is_inline]
        stats = {
            "store": "index",
            "total_records": len(self.entries),
            "inline_records": len(inline),
            "archived_records": len(self.entries) - len(inline),
            "inline_payload_mb": sum(len(e.placement.payload) for e in inline) / (1024 * 1024),
            "wal_enabled": self.wal_manager is not None,
        }
        if self.wal_manager is not None:
            wal_stats = self.wal_manager.get_stats()
            stats["wal_segments"] = wal_stats["segment_count"]
            stats["wal_size_mb"] = wal_stats["total_size_mb"]
        return stats

    async def close(self):
        if self.wal_manager is not None:
            self.wal_manager.close()

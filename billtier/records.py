"""
Record model shared by the index store, the migration engine and the router.

A record's payload lives in exactly one place. The placement is a tagged
union of Inline (payload kept in the index entry) and Archived (payload kept
in the bulk store, index entry holds a pointer), so an entry can never carry
both or neither.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Union

import pyarrow as pa

from .errors import InvalidRecord


MAX_RECORD_ID_LENGTH = 200
DEFAULT_MAX_METADATA_BYTES = 4096

_RECORD_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")


class Location(str, Enum):
    """Tier currently holding a record's payload."""
    INLINE = "inline"
    ARCHIVED = "archived"


@dataclass(frozen=True)
class Inline:
    """Payload stored directly in the index entry."""
    payload: bytes

    @property
    def location(self) -> Location:
        return Location.INLINE


@dataclass(frozen=True)
class Archived:
    """Pointer to a payload stored in the bulk object store."""
    blob_key: str
    size: int
    checksum: str

    @property
    def location(self) -> Location:
        return Location.ARCHIVED


Placement = Union[Inline, Archived]


@dataclass(frozen=True)
class IndexEntry:
    """Authoritative index entry for one record."""
    record_id: str
    timestamp: datetime
    metadata: Dict[str, Any]
    placement: Placement

    @property
    def location(self) -> Location:
        return self.placement.location

    @property
    def is_inline(self) -> bool:
        return isinstance(self.placement, Inline)


@dataclass(frozen=True)
class RecordView:
    """Uniform view of a record returned to readers regardless of tier."""
    record_id: str
    timestamp: datetime
    metadata: Dict[str, Any]
    payload: bytes
    location: Location

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "payload": self.payload.decode("utf-8", errors="replace"),
            "location": self.location.value,
        }


def payload_checksum(payload: bytes) -> str:
    """SHA-256 hex digest used to verify archived copies."""
    return hashlib.sha256(payload).hexdigest()


def derive_blob_key(record_id: str) -> str:
    """
    Deterministic bulk store key for a record.

    The two-character shard spreads objects over 256 directories and depends
    only on the id, so every retry for the same record lands on the same key.
    """
    shard = hashlib.sha256(record_id.encode("utf-8")).hexdigest()[:2]
    return f"{shard}/{record_id}.payload"


def validate_record_id(record_id: str) -> str:
    if not isinstance(record_id, str) or not record_id:
        raise InvalidRecord("record id must be a non-empty string")
    if len(record_id) > MAX_RECORD_ID_LENGTH:
        raise InvalidRecord(f"record id longer than {MAX_RECORD_ID_LENGTH} characters: {record_id[:20]}...")
    if not _RECORD_ID_PATTERN.match(record_id) or record_id in (".", ".."):
        raise InvalidRecord(f"record id contains unsupported characters: {record_id!r}")
    return record_id


def normalize_timestamp(timestamp: datetime) -> datetime:
    """Return the timestamp in UTC with microsecond precision. Naive values are rejected."""
    if not isinstance(timestamp, datetime):
        raise InvalidRecord(f"timestamp must be a datetime, got {type(timestamp).__name__}")
    if timestamp.tzinfo is None or timestamp.utcoffset() is None:
        raise InvalidRecord("timestamp must be timezone-aware")
    return timestamp.astimezone(timezone.utc)


def encode_metadata(metadata: Dict[str, Any], max_bytes: int = DEFAULT_MAX_METADATA_BYTES) -> str:
    """Serialize metadata to canonical JSON, enforcing the size bound."""
    if not isinstance(metadata, dict):
        raise InvalidRecord("metadata must be a dict")
    try:
        encoded = json.dumps(metadata, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise InvalidRecord(f"metadata is not JSON serializable: {e}") from e
    if len(encoded.encode("utf-8")) > max_bytes:
        raise InvalidRecord(f"metadata exceeds {max_bytes} bytes")
    return encoded


def new_record(record_id: str, timestamp: datetime, metadata: Dict[str, Any], payload: bytes,
               max_metadata_bytes: int = DEFAULT_MAX_METADATA_BYTES) -> IndexEntry:
    """Create a freshly written record. Every record starts life Inline."""
    if not isinstance(payload, (bytes, bytearray)):
        raise InvalidRecord("payload must be bytes")
    encoded = encode_metadata(metadata, max_metadata_bytes)
    return IndexEntry(
        record_id=validate_record_id(record_id),
        timestamp=normalize_timestamp(timestamp),
        # Keep the decoded JSON form: it is what the WAL stores and replays
        metadata=json.loads(encoded),
        placement=Inline(bytes(payload)),
    )


def archive_transition(entry: IndexEntry, archived: Archived) -> IndexEntry:
    """The single permitted tier transition: Inline -> Archived."""
    if not entry.is_inline:
        raise InvalidRecord(f"record {entry.record_id} is already archived")
    return IndexEntry(
        record_id=entry.record_id,
        timestamp=entry.timestamp,
        metadata=entry.metadata,
        placement=archived,
    )


def to_view(entry: IndexEntry, payload: bytes) -> RecordView:
    return RecordView(
        record_id=entry.record_id,
        timestamp=entry.timestamp,
        metadata=dict(entry.metadata),
        payload=payload,
        location=entry.location,
    )


# Columnar form of an index entry, as written to and replayed from the WAL.
INDEX_SCHEMA = pa.schema([
    ("record_id", pa.string()),
    ("timestamp", pa.timestamp("us", tz="UTC")),
    ("metadata", pa.string()),
    ("location", pa.string()),
    ("payload", pa.binary()),
    ("blob_key", pa.string()),
    ("blob_size", pa.int64()),
    ("blob_checksum", pa.string()),
])


def entries_to_batch(entries: Iterable[IndexEntry]) -> pa.RecordBatch:
    """Convert index entries to a RecordBatch in INDEX_SCHEMA."""
    columns: Dict[str, List[Any]] = {name: [] for name in INDEX_SCHEMA.names}
    for entry in entries:
        columns["record_id"].append(entry.record_id)
        columns["timestamp"].append(entry.timestamp)
        columns["metadata"].append(json.dumps(entry.metadata, sort_keys=True, separators=(",", ":")))
        columns["location"].append(entry.location.value)
        if isinstance(entry.placement, Inline):
            columns["payload"].append(entry.placement.payload)
            columns["blob_key"].append(None)
            columns["blob_size"].append(None)
            columns["blob_checksum"].append(None)
        else:
            columns["payload"].append(None)
            columns["blob_key"].append(entry.placement.blob_key)
            columns["blob_size"].append(entry.placement.size)
            columns["blob_checksum"].append(entry.placement.checksum)

    arrays = [pa.array(columns[f.name], type=f.type) for f in INDEX_SCHEMA]
    return pa.RecordBatch.from_arrays(arrays, schema=INDEX_SCHEMA)


def batch_to_entries(batch: Union[pa.RecordBatch, pa.Table]) -> List[IndexEntry]:
    """Inverse of entries_to_batch."""
    entries = []
    for row in batch.to_pylist():
        if row["location"] == Location.INLINE.value:
            placement: Placement = Inline(row["payload"] or b"")
        else:
            placement = Archived(row["blob_key"], row["blob_size"], row["blob_checksum"])
        timestamp = row["timestamp"]
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        entries.append(IndexEntry(
            record_id=row["record_id"],
            timestamp=timestamp,
            metadata=json.loads(row["metadata"]),
            placement=placement,
        ))
    return entries

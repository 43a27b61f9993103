"""
Write-ahead log for the index store, stored as Arrow IPC stream segments.

Each index mutation is appended as a record batch in INDEX_SCHEMA and
fsynced before the store makes it visible. Replay applies
segments oldest first, so the latest state of an id wins.
"""

import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

import pyarrow as pa
import pyarrow.ipc as ipc

from .logger import get_logger
from .records import INDEX_SCHEMA, IndexEntry, batch_to_entries, entries_to_batch


class WALSegment:
    """One append-only segment file. Never reopened for append after close."""

    def __init__(self, file_path: Path, schema: pa.Schema = INDEX_SCHEMA):
        self.file_path = Path(file_path)
        self.schema = schema
        self._sink = None
        self._writer: Optional[ipc.RecordBatchStreamWriter] = None
        self.records_written = 0

    @property
    def segment_id(self) -> int:
        return int(self.file_path.stem.rsplit("_", 1)[-1])

    @property
    def writable(self) -> bool:
        return self._writer is not None

    def start(self):
        self._sink = open(self.file_path, "wb")
        self._writer = ipc.new_stream(self._sink, self.schema)

    def append(self, batch: pa.RecordBatch):
        if not self.writable:
            raise RuntimeError(f"WAL segment {self.file_path.name} is not writable")
        self._writer.write_batch(batch)
        self._sink.flush()
        os.fsync(self._sink.fileno())
        self.records_written += batch.num_rows

    def replay(self) -> Iterator[pa.RecordBatch]:
        """Yield every complete batch; a torn tail ends the segment early."""
        logger = get_logger("WALSegment")
        with open(self.file_path, "rb") as source:
            try:
                reader = ipc.open_stream(source)
            except (pa.ArrowInvalid, OSError) as e:
                # Crash before the schema message reached disk
                logger.warning(f"WAL segment {self.file_path.name} has no readable stream: {e}")
                return
            try:
                for batch in reader:
                    yield batch
            except (pa.ArrowInvalid, OSError) as e:
                logger.warning(f"WAL segment {self.file_path.name} ends in a torn write, replay stops there: {e}")

    def size_bytes(self) -> int:
        return self.file_path.stat().st_size if self.file_path.exists() else 0

    def close(self):
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._sink is not None:
            self._sink.close()
            self._sink = None

    def remove(self):
        self.close()
        self.file_path.unlink(missing_ok=True)


class WALManager:
    """Segment rotation, replay and compaction for one store's log."""

    def __init__(self, wal_dir: Path, name: str, schema: pa.Schema = INDEX_SCHEMA, max_segment_size_mb: int = 64):
        self.wal_dir = Path(wal_dir)
        self.wal_dir.mkdir(parents=True, exist_ok=True)
        self.name = name
        self.schema = schema
        self.max_segment_bytes = max_segment_size_mb * 1024 * 1024
        self.active: Optional[WALSegment] = None
        self.logger = get_logger("WALManager")

    def _segment(self, segment_id: int) -> WALSegment:
        return WALSegment(self.wal_dir / f"{self.name}_wal_{segment_id:06d}.arrow", self.schema)

    def segments(self) -> List[WALSegment]:
        """Segments on disk, oldest first. Foreign files in the directory are ignored."""
        found = []
        for path in self.wal_dir.glob(f"{self.name}_wal_*.arrow"):
            try:
                int(path.stem.rsplit("_", 1)[-1])
            except ValueError:
                continue
            found.append(WALSegment(path, self.schema))
        return sorted(found, key=lambda s: s.segment_id)

    def rotate(self) -> WALSegment:
        """Close the active segment and open the next id."""
        if self.active is not None:
            self.active.close()
        existing = self.segments()
        next_id = existing[-1].segment_id + 1 if existing else 0
        self.active = self._segment(next_id)
        self.active.start()
        self.logger.debug(f"Opened {self.name} WAL segment {next_id}")
        return self.active

    def append_entries(self, entries: List[IndexEntry]):
        """Durably log entry states. Raises OSError if the disk write fails."""
        if not entries:
            return
        if self.active is None or self.active.size_bytes() > self.max_segment_bytes:
            self.rotate()
        self.active.append(entries_to_batch(entries))

    def replay_entries(self) -> Iterator[IndexEntry]:
        for segment in self.segments():
            for batch in segment.replay():
                yield from batch_to_entries(batch)

    def compact(self, entries: Iterable[IndexEntry], chunk_size: int = 10_000) -> int:
        """
        Rewrite the log as one snapshot segment of the given entries.

        The snapshot is fsynced before older segments are removed, so a crash
        at any point leaves a log that replays to the same state.
        Returns the number of segments removed.
        """
        stale = self.segments()
        snapshot = self.rotate()
        chunk: List[IndexEntry] = []
        for entry in entries:
            chunk.append(entry)
            if len(chunk) >= chunk_size:
                snapshot.append(entries_to_batch(chunk))
                chunk = []
        if chunk:
            snapshot.append(entries_to_batch(chunk))

        for segment in stale:
            segment.remove()
        self.logger.info(f"Compacted {len(stale)} {self.name} WAL segments into segment {snapshot.segment_id} "
                         f"({snapshot.records_written:,} entries)")
        return len(stale)

    def close(self):
        if self.active is not None:
            self.active.close()
            self.active = None

    def get_stats(self) -> dict:
        segments = self.segments()
        return {
            "segment_count": len(segments),
            "total_size_mb": sum(s.size_bytes() for s in segments) / (1024 * 1024),
            "active_segment": self.active.segment_id if self.active is not None else None,
        }

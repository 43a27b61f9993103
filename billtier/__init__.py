"""
BillTier: two-tier storage engine for immutable billing records.

- Index store: low-latency entries; recent records keep their payload Inline
- Bulk store: cheap object storage; aged records' payloads are Archived there

Records flow Index -> Bulk exactly once, when a sweep finds them older than
the archive threshold. Reads by id are served from whichever tier holds the
payload.
"""

from .engine import TieringEngine
from .interfaces import IndexStore, BulkObjectStore, DeadLetterSink, TierHint, BlobInfo, ScanPage, DeadLetter
from .records import IndexEntry, Inline, Archived, Location, RecordView, derive_blob_key, new_record
from .index_store import LocalIndexStore
from .bulk_store import FilesystemBulkStore, MemoryBulkStore
from .dead_letter import JsonlDeadLetterSink, MemoryDeadLetterSink
from .archiver import Archiver, ArchiveOutcome, ArchiveResult
from .migration import MigrationEngine, SweepReport
from .router import RetrievalRouter
from .retry import RetryPolicy
from .clock import Clock, SystemClock, FixedClock
from .errors import (
    TieringError, RecordNotFound, ConditionFailed, BulkWriteFailed, BulkVerifyFailed,
    IndexUpdateFailed, TierUnavailable, TransientStoreError, BlobNotFound,
)

__version__ = "0.1.0"

__all__ = [
    'TieringEngine',
    'IndexStore',
    'BulkObjectStore',
    'DeadLetterSink',
    'TierHint',
    'BlobInfo',
    'ScanPage',
    'DeadLetter',
    'IndexEntry',
    'Inline',
    'Archived',
    'Location',
    'RecordView',
    'derive_blob_key',
    'new_record',
    'LocalIndexStore',
    'FilesystemBulkStore',
    'MemoryBulkStore',
    'JsonlDeadLetterSink',
    'MemoryDeadLetterSink',
    'Archiver',
    'ArchiveOutcome',
    'ArchiveResult',
    'MigrationEngine',
    'SweepReport',
    'RetrievalRouter',
    'RetryPolicy',
    'Clock',
    'SystemClock',
    'FixedClock',
    'TieringError',
    'RecordNotFound',
    'ConditionFailed',
    'BulkWriteFailed',
    'BulkVerifyFailed',
    'IndexUpdateFailed',
    'TierUnavailable',
    'TransientStoreError',
    'BlobNotFound',
]

"""
Tiering engine coordinator: wires the index store, bulk store, dead-letter
sink, migration engine and retrieval router from configuration.
"""

import copy
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .clock import Clock, SystemClock
from .config import BillTierConfig, get_config
from .bulk_store import FilesystemBulkStore
from .dead_letter import JsonlDeadLetterSink
from .index_store import LocalIndexStore
from .interfaces import BulkObjectStore, DeadLetterSink, IndexStore
from .logger import TierLogger, get_logger
from .migration import MigrationEngine, SweepReport
from .records import IndexEntry, RecordView, new_record
from .retry import RetryPolicy
from .router import RetrievalRouter


class TieringEngine:
    """
    Index (hot, Inline payloads) -> Bulk (cold, Archived payloads).

    Stores default to the local WAL-backed index and the filesystem bulk
    store under the configured storage path; any of them can be injected.
    """

    def __init__(self, storage_path: str = None, config_path: str = None, config: BillTierConfig = None,
                 index_store: Optional[IndexStore] = None, bulk_store: Optional[BulkObjectStore] = None,
                 dead_letter_sink: Optional[DeadLetterSink] = None, clock: Optional[Clock] = None):
        """
        Args:
            storage_path: Override storage base path (uses config if None)
            config_path: Path to custom config file
            config: Pre-loaded config object (takes precedence over config_path)
            index_store, bulk_store, dead_letter_sink: Injected collaborators
            clock: Time source for tiering decisions
        """
        self.config = config if config is not None else get_config(config_path)
        if storage_path is not None:
            # Private copy so the override never leaks into a shared config
            self.config = copy.deepcopy(self.config)
            self.config.storage.base_path = str(storage_path)

        self.storage_path = self.config.get_storage_path()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        TierLogger.setup(log_dir=str(self.config.get_logs_path()), log_level=self.config.logging.level,
                         console_output=self.config.logging.console_output)
        self.logger = get_logger("TieringEngine")
        self.clock = clock or SystemClock()

        self.index_store = index_store or LocalIndexStore(config=self.config)
        self.bulk_store = bulk_store or FilesystemBulkStore(str(self.config.get_bulk_path()), config=self.config)
        self.dead_letter_sink = dead_letter_sink or JsonlDeadLetterSink(str(self.config.get_dead_letter_path()))

        index_retry = RetryPolicy.from_config(self.config.retry, self.config.timeouts.index_timeout_seconds)
        bulk_retry = RetryPolicy.from_config(self.config.retry, self.config.timeouts.bulk_timeout_seconds)

        self.migration = MigrationEngine(
            self.index_store, self.bulk_store, self.dead_letter_sink, clock=self.clock,
            index_retry=index_retry, bulk_retry=bulk_retry,
            checkpoint_path=str(self.config.get_checkpoint_path()), config=self.config,
        )
        self.router = RetrievalRouter(self.index_store, self.bulk_store, index_retry=index_retry,
                                      bulk_retry=bulk_retry)

        self.logger.info(f"Storage path: {self.storage_path}")
        self.logger.info(f"Archive after {self.config.migration.archive_after_days} days, "
                         f"batch size {self.config.migration.batch_size}, {self.config.migration.max_workers} workers")
        if self.config.debug.enabled:
            self.logger.info(f"Effective config: {self.config.to_dict()}")

    async def ingest(self, record_id: str, timestamp: datetime, metadata: Dict[str, Any], payload: bytes) -> IndexEntry:
        """Write a new record. New records are always Inline."""
        entry = new_record(record_id, timestamp, metadata, payload,
                           max_metadata_bytes=self.config.index.max_metadata_bytes)
        await self.index_store.put(entry)
        return entry

    async def ingest_many(self, records: Iterable[Dict[str, Any]]) -> int:
        """Write many records given as dicts with id, timestamp, metadata and payload keys."""
        entries: List[IndexEntry] = [
            new_record(r["id"], r["timestamp"], r.get("metadata", {}), r["payload"],
                       max_metadata_bytes=self.config.index.max_metadata_bytes)
            for r in records
        ]
        if hasattr(self.index_store, "put_many"):
            return await self.index_store.put_many(entries)
        for entry in entries:
            await self.index_store.put(entry)
        return len(entries)

    async def get_record(self, record_id: str) -> RecordView:
        return await self.router.get_record(record_id)

    async def run_sweep(self, batch_size: Optional[int] = None, archive_after: Optional[timedelta] = None,
                        dry_run: bool = False) -> SweepReport:
        return await self.migration.run_sweep(batch_size=batch_size, archive_after=archive_after, dry_run=dry_run)

    async def run_until_complete(self, batch_size: Optional[int] = None, archive_after: Optional[timedelta] = None,
                                 max_invocations: int = 100) -> List[SweepReport]:
        """Invoke sweeps until one completes (each invocation honours the sweep budget)."""
        reports = []
        for _ in range(max_invocations):
            report = await self.run_sweep(batch_size=batch_size, archive_after=archive_after)
            reports.append(report)
            if report.complete:
                break
        return reports

    async def get_stats(self) -> dict:
        return {
            "storage_path": str(self.storage_path),
            "index": await self.index_store.get_stats(),
            "bulk": await self.bulk_store.get_stats(),
            "migration": await self.migration.get_stats(),
        }

    async def cleanup(self):
        """Compact the index WAL and release store resources."""
        if isinstance(self.index_store, LocalIndexStore):
            wal = self.index_store.wal_manager
            if wal is not None and wal.get_stats()["segment_count"] > 1:
                self.index_store.compact()
        await self.index_store.close()
        await self.bulk_store.close()
        await self.dead_letter_sink.close()
        self.logger.info("Cleanup complete")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

"""
Migration engine: sweeps the index for aged Inline records and archives them.

A sweep pages through candidates in bounded batches, archives each page with
a bounded worker pool, and checkpoints the scan position after every page.
A sweep cut short by its wall-clock budget (or an index outage) resumes from
the checkpoint on the next invocation with the same cutoff.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from .archiver import ArchiveOutcome, ArchiveResult, Archiver
from .clock import Clock, SystemClock
from .errors import ArchiveError, RetryExhausted
from .interfaces import BulkObjectStore, DeadLetter, DeadLetterSink, IndexStore
from .logger import get_logger
from .records import IndexEntry, Location
from .retry import RetryPolicy


DEFAULT_ARCHIVE_AFTER = timedelta(days=90)


@dataclass
class SweepReport:
    """Counters for one sweep invocation (including counters carried over from a resumed checkpoint)."""
    cutoff: datetime
    started_at: datetime
    scanned: int = 0
    archived: int = 0
    failed: int = 0
    skipped: int = 0
    pages: int = 0
    complete: bool = False
    resumed: bool = False
    dry_run: bool = False
    finished_at: Optional[datetime] = None
    failed_ids: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def counters(self) -> Dict[str, int]:
        return {
            "scanned": self.scanned,
            "archived": self.archived,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cutoff"] = self.cutoff.isoformat()
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["duration_seconds"] = self.duration_seconds
        return data


@dataclass
class SweepCheckpoint:
    """Scan position of an unfinished sweep."""
    cutoff: datetime
    page_token: Optional[str]
    counters: Dict[str, int] = field(default_factory=dict)
    pages: int = 0

    def to_dict(self) -> dict:
        return {
            "cutoff": self.cutoff.isoformat(),
            "page_token": self.page_token,
            "counters": self.counters,
            "pages": self.pages,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SweepCheckpoint":
        return cls(
            cutoff=datetime.fromisoformat(data["cutoff"]),
            page_token=data.get("page_token"),
            counters=dict(data.get("counters", {})),
            pages=int(data.get("pages", 0)),
        )


class CheckpointStore:
    """Persists the sweep checkpoint as JSON, or keeps it in memory when no path is given."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._memory: Optional[SweepCheckpoint] = None
        self.logger = get_logger("CheckpointStore")

    def load(self) -> Optional[SweepCheckpoint]:
        if self.path is None:
            return self._memory
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return SweepCheckpoint.from_dict(json.load(f))
        except (ValueError, KeyError) as e:
            # Unreadable checkpoint: start a fresh sweep rather than wedging the engine
            self.logger.warning(f"Ignoring unreadable sweep checkpoint {self.path}: {e}")
            return None

    def save(self, checkpoint: SweepCheckpoint):
        if self.path is None:
            self._memory = checkpoint
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(checkpoint.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def clear(self):
        self._memory = None
        if self.path is not None and self.path.exists():
            self.path.unlink()


class MigrationEngine:
    """Moves payloads of records older than archive_after out of the index into the bulk store."""

    def __init__(self, index_store: IndexStore, bulk_store: BulkObjectStore,
                 dead_letter_sink: DeadLetterSink, clock: Optional[Clock] = None,
                 archive_after: timedelta = DEFAULT_ARCHIVE_AFTER, batch_size: int = 500,
                 max_workers: int = 8, sweep_budget_seconds: Optional[float] = None,
                 index_retry: Optional[RetryPolicy] = None, bulk_retry: Optional[RetryPolicy] = None,
                 checkpoint_path: Optional[str] = None, config=None):
        if config is not None:
            archive_after = config.migration.archive_after
            batch_size = config.migration.batch_size
            max_workers = config.migration.max_workers
            sweep_budget_seconds = config.migration.sweep_budget_seconds
            index_retry = index_retry or RetryPolicy.from_config(config.retry, config.timeouts.index_timeout_seconds)
            bulk_retry = bulk_retry or RetryPolicy.from_config(config.retry, config.timeouts.bulk_timeout_seconds)

        self.index_store = index_store
        self.bulk_store = bulk_store
        self.dead_letter_sink = dead_letter_sink
        self.clock = clock or SystemClock()
        self.archive_after = archive_after
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.sweep_budget_seconds = sweep_budget_seconds
        self.index_retry = index_retry or RetryPolicy()
        self.archiver = Archiver(index_store, bulk_store, self.index_retry, bulk_retry)
        self.checkpoints = CheckpointStore(checkpoint_path)
        self.logger = get_logger("MigrationEngine")

        self.last_report: Optional[SweepReport] = None
        self._sweep_count = 0
        self._totals = {"scanned": 0, "archived": 0, "failed": 0, "skipped": 0}

    def compute_cutoff(self, archive_after: Optional[timedelta] = None) -> datetime:
        """cutoff = now - archive_after. Only records strictly older than cutoff are candidates."""
        return self.clock.now() - (archive_after if archive_after is not None else self.archive_after)

    async def run_sweep(self, batch_size: Optional[int] = None, archive_after: Optional[timedelta] = None,
                        dry_run: bool = False) -> SweepReport:
        """
        Run one sweep.

        Args:
            batch_size: Candidates per page (defaults to the configured batch size)
            archive_after: Age threshold (defaults to the configured threshold);
                ignored when resuming a checkpointed sweep, which keeps its cutoff
            dry_run: Only count candidates, archive nothing, leave checkpoints alone

        Returns:
            SweepReport with scanned/archived/failed/skipped counters
        """
        batch_size = batch_size or self.batch_size
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        checkpoint = None if dry_run else self.checkpoints.load()
        if checkpoint is not None:
            cutoff = checkpoint.cutoff
            page_token = checkpoint.page_token
            self.logger.info(f"Resuming sweep with cutoff {cutoff.isoformat()} from page {checkpoint.pages + 1}")
        else:
            cutoff = self.compute_cutoff(archive_after)
            page_token = None

        report = SweepReport(cutoff=cutoff, started_at=self.clock.now(), dry_run=dry_run,
                             resumed=checkpoint is not None)
        if checkpoint is not None:
            for name, value in checkpoint.counters.items():
                setattr(report, name, getattr(report, name) + value)
            report.pages = checkpoint.pages

        started = time.monotonic()
        first_page = report.pages
        while True:
            # At least one page per invocation so a tight budget still makes progress
            if report.pages > first_page and self._budget_exhausted(started):
                self.logger.warning(f"Sweep budget of {self.sweep_budget_seconds}s exhausted after {report.pages} pages; will resume from checkpoint")
                break

            try:
                page = await self.index_retry.call(
                    "index scan", self.index_store.scan, cutoff, Location.INLINE, page_token, batch_size,
                )
            except RetryExhausted as e:
                self.logger.error(f"Index scan unavailable, stopping sweep at page {report.pages + 1}: {e}")
                break

            report.pages += 1
            report.scanned += len(page.entries)

            if not dry_run and page.entries:
                results = await self._archive_page(page.entries)
                await self._tally(report, results)

            page_token = page.next_page_token
            if page_token is None:
                report.complete = True
                break

            if not dry_run:
                self.checkpoints.save(SweepCheckpoint(cutoff, page_token, report.counters(), report.pages))

        if report.complete and not dry_run:
            self.checkpoints.clear()

        report.finished_at = self.clock.now()
        self._record(report, checkpoint.counters if checkpoint is not None else {})
        return report

    def _budget_exhausted(self, started: float) -> bool:
        if not self.sweep_budget_seconds or self.sweep_budget_seconds <= 0:
            return False
        return time.monotonic() - started >= self.sweep_budget_seconds

    async def _archive_page(self, entries: List[IndexEntry]) -> List[ArchiveResult]:
        """Archive a page of candidates with at most max_workers in flight."""
        semaphore = asyncio.Semaphore(self.max_workers)

        async def archive_guarded(entry: IndexEntry) -> ArchiveResult:
            async with semaphore:
                try:
                    return await self.archiver.archive_one(entry)
                except Exception as e:  # noqa: BLE001 - one record's failure must not abort the page
                    self.logger.exception(f"Unexpected error archiving {entry.record_id}")
                    return ArchiveResult(entry.record_id, ArchiveOutcome.FAILED,
                                         error=ArchiveError(entry.record_id, repr(e)))

        return await asyncio.gather(*(archive_guarded(entry) for entry in entries))

    async def _tally(self, report: SweepReport, results: List[ArchiveResult]):
        for result in results:
            if result.outcome == ArchiveOutcome.ARCHIVED:
                report.archived += 1
            elif result.outcome == ArchiveOutcome.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1
                report.failed_ids.append(result.record_id)
                await self._dead_letter(result)

    async def _dead_letter(self, result: ArchiveResult):
        error = result.error
        message = f"{type(error).__name__}: {error}" if error is not None else "unknown failure"
        letter = DeadLetter(record_id=result.record_id, error=message, timestamp=self.clock.now())
        try:
            await self.dead_letter_sink.emit(letter)
        except Exception:  # noqa: BLE001 - sink outage must not abort the sweep
            self.logger.exception(f"Dead-letter sink rejected {result.record_id}; failure only recorded in this log")

    def _record(self, report: SweepReport, carried: Dict[str, int]):
        self.last_report = report
        self._sweep_count += 1
        if not report.dry_run:
            for name, value in report.counters().items():
                self._totals[name] += value - carried.get(name, 0)

        summary = (f"Sweep {'(dry run) ' if report.dry_run else ''}cutoff={report.cutoff.isoformat()} "
                   f"scanned={report.scanned:,} archived={report.archived:,} failed={report.failed:,} "
                   f"skipped={report.skipped:,} pages={report.pages} complete={report.complete}")
        if report.scanned == 0 and report.complete:
            self.logger.debug(summary)
        else:
            self.logger.info(summary)

    def pending_checkpoint(self) -> Optional[SweepCheckpoint]:
        return self.checkpoints.load()

    async def get_stats(self) -> dict:
        return {
            "sweeps": self._sweep_count,
            "totals": dict(self._totals),
            "archive_after_days": self.archive_after.total_seconds() / 86400,
            "batch_size": self.batch_size,
            "max_workers": self.max_workers,
            "pending_checkpoint": self.checkpoints.load() is not None,
            "last_sweep": self.last_report.to_dict() if self.last_report else None,
        }

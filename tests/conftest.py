"""
Pytest configuration for BillTier.

Provides fixtures for:
- Logging routed to a temporary directory
- A fixed clock and fast retry policies
- In-memory and filesystem stores
- A factory for billing records of a given age
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest
import pytest_asyncio

from billtier.bulk_store import FilesystemBulkStore, MemoryBulkStore
from billtier.clock import FixedClock
from billtier.config import reset_config
from billtier.dead_letter import MemoryDeadLetterSink
from billtier.index_store import LocalIndexStore
from billtier.logger import TierLogger
from billtier.records import IndexEntry, new_record
from billtier.retry import RetryPolicy

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def test_logging(tmp_path_factory):
    """
    Route component logs to a temporary directory for the whole session.
    """
    TierLogger.reset()
    TierLogger.setup(log_dir=str(tmp_path_factory.mktemp("logs")), log_level="DEBUG")
    yield
    TierLogger.reset()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """
    Strip BILLTIER_* variables and the cached global config before each test.
    """
    import os

    for name in list(os.environ):
        if name.startswith("BILLTIER_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts, no backoff delay, short per-call timeout."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, timeout=1.0)


@pytest.fixture
def index_store() -> LocalIndexStore:
    return LocalIndexStore()


@pytest.fixture
def bulk_store() -> MemoryBulkStore:
    return MemoryBulkStore()


@pytest_asyncio.fixture
async def fs_bulk_store(tmp_path):
    store = FilesystemBulkStore(str(tmp_path / "bulk"), max_workers=2)
    yield store
    await store.close()


@pytest.fixture
def dead_letters() -> MemoryDeadLetterSink:
    return MemoryDeadLetterSink()


@pytest.fixture
def make_record() -> Callable[..., IndexEntry]:
    """
    Factory for Inline records aged relative to NOW.

    make_record("INV-1", age=timedelta(days=10)) or make_record("INV-1", timestamp=...)
    """
    def factory(record_id: str, age: timedelta = timedelta(days=1), timestamp: datetime = None,
                payload: bytes = None, metadata: dict = None) -> IndexEntry:
        if timestamp is None:
            timestamp = NOW - age
        if payload is None:
            payload = f'{{"invoice": "{record_id}", "amount_cents": 1999}}'.encode("utf-8")
        if metadata is None:
            metadata = {"customer": "cust_00042", "currency": "USD"}
        return new_record(record_id, timestamp, metadata, payload)

    return factory

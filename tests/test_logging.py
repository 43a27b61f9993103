import logging
from datetime import timedelta

import pytest

from billtier.logger import TierLogger, get_logger
from billtier.migration import MigrationEngine
from tests.fakes import FlakyBulkStore


def test_component_loggers_are_namespaced():
    logger = get_logger("Archiver")
    assert logger.name == "billtier.Archiver"
    assert get_logger("Archiver") is logger
    assert logger.parent.name == "billtier"


def test_log_file_is_created():
    log_file = TierLogger.get_log_file()
    assert log_file is not None
    assert log_file.name.startswith("billtier_")


def test_set_level():
    TierLogger.set_level("WARNING")
    try:
        assert get_logger("Archiver").getEffectiveLevel() == logging.WARNING
    finally:
        TierLogger.set_level("DEBUG")


@pytest.mark.asyncio
async def test_failed_archive_is_logged(caplog, index_store, bulk_store, dead_letters, clock, fast_retry,
                                        make_record):
    await index_store.put(make_record("INV-1", age=timedelta(days=120)))
    engine = MigrationEngine(index_store, FlakyBulkStore(bulk_store, fail_all_puts=True), dead_letters,
                             clock=clock, index_retry=fast_retry, bulk_retry=fast_retry)

    with caplog.at_level(logging.WARNING, logger="billtier"):
        await engine.run_sweep()

    messages = [r.getMessage() for r in caplog.records if r.name == "billtier.Archiver"]
    assert any("INV-1" in m and "stays inline" in m for m in messages)

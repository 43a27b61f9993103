"""
Error taxonomy for the tiering engine.

Store implementations raise TransientStoreError (or a subclass) for failures
worth retrying. Component code converts exhausted retries into one of the
kinds below before they leave the engine.
"""

from typing import Optional


class TieringError(Exception):
    """Base class for all tiering engine errors."""


class InvalidRecord(TieringError, ValueError):
    """Record fields violate the record model."""


class RecordNotFound(TieringError, KeyError):
    """No index entry exists for the requested id."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(record_id)

    def __str__(self) -> str:
        return f"record not found: {self.record_id}"


class DuplicateRecord(TieringError):
    """An index entry already exists for the id; ids are never reused."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"record already exists: {record_id}")


class ConditionFailed(TieringError):
    """Conditional update lost the optimistic concurrency check."""

    def __init__(self, record_id: str, expected: str, actual: Optional[str] = None):
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"condition failed for {record_id}: expected {expected}, found {actual}")


class TransientStoreError(TieringError):
    """A store call failed in a way that may succeed on retry."""


class BlobNotFound(TieringError):
    """No bulk object exists under the key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"blob not found: {key}")


class RetryExhausted(TieringError):
    """A retried call failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error!r}")


class ArchiveError(TieringError):
    """Base class for failures of a single archive-one attempt."""

    def __init__(self, record_id: str, message: str):
        self.record_id = record_id
        super().__init__(f"{record_id}: {message}")


class BulkWriteFailed(ArchiveError):
    """Writing the bulk copy failed. The record stays Inline."""


class BulkVerifyFailed(ArchiveError):
    """The bulk copy is missing or does not match the payload. The record stays Inline."""


class IndexUpdateFailed(ArchiveError):
    """Flipping the pointer failed after a good bulk write. The bulk copy is retained."""


class TierUnavailable(TieringError):
    """The record exists but its archived payload cannot be read right now."""

    def __init__(self, record_id: str, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"tier unavailable for {record_id}: {reason}")

"""
Store interfaces for the tiering engine.
The migration engine and the router only talk to stores through these.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .records import IndexEntry, Location


class TierHint(str, Enum):
    """Storage class hint passed to the bulk store on write."""
    FREQUENT = "frequent"
    RARE = "rare"


@dataclass(frozen=True)
class BlobInfo:
    """What the bulk store knows about a stored object."""
    key: str
    size: int
    checksum: str
    tier: TierHint


@dataclass(frozen=True)
class ScanPage:
    """One page of scan results. next_page_token is None on the last page."""
    entries: List[IndexEntry]
    next_page_token: Optional[str]


@dataclass(frozen=True)
class DeadLetter:
    """A record whose archival failed, for operator follow-up."""
    record_id: str
    error: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.record_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class IndexStore(ABC):
    """Low-latency store of index entries; the single source of truth for placement."""

    @abstractmethod
    async def get(self, record_id: str) -> IndexEntry:
        """Return the entry for record_id. Raises RecordNotFound."""
        pass

    @abstractmethod
    async def put(self, entry: IndexEntry) -> None:
        """Create a new entry. Raises DuplicateRecord if the id exists."""
        pass

    @abstractmethod
    async def conditional_update(self, record_id: str, expected_location: Location,
                                 new_entry: IndexEntry) -> None:
        """
        Replace the entry only if its current location equals expected_location.
        Raises ConditionFailed otherwise, RecordNotFound if the id is absent.
        """
        pass

    @abstractmethod
    async def scan(self, cutoff: datetime, location: Location, page_token: Optional[str] = None,
                   limit: int = 1000) -> ScanPage:
        """
        Return entries with timestamp < cutoff in the given location, ordered by
        (timestamp, record_id), starting after page_token.
        """
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass

    async def close(self):
        pass


class BulkObjectStore(ABC):
    """Cheap store of opaque blobs addressed by key."""

    @abstractmethod
    async def put(self, key: str, data: bytes, tier_hint: TierHint = TierHint.RARE) -> BlobInfo:
        pass

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the blob. Raises BlobNotFound."""
        pass

    @abstractmethod
    async def stat(self, key: str) -> Optional[BlobInfo]:
        """Return size and checksum of the blob, or None if absent."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove the blob. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass

    async def close(self):
        pass


class DeadLetterSink(ABC):
    """Receives records that failed archival."""

    @abstractmethod
    async def emit(self, letter: DeadLetter) -> None:
        pass

    async def close(self):
        pass

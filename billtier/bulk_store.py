"""
Bulk object stores for archived payloads.

FilesystemBulkStore keeps one file per key under a directory per tier hint.
Writes go to a staging directory first and are atomically renamed into
place, so a reader never sees a partially written object.
"""

import asyncio
import hashlib
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import BlobNotFound, TransientStoreError
from .interfaces import BlobInfo, BulkObjectStore, TierHint
from .logger import get_logger
from .records import payload_checksum


def validate_key(key: str) -> str:
    """Keys are relative POSIX paths without parent references."""
    if not key or key.startswith("/") or "\\" in key:
        raise ValueError(f"invalid blob key: {key!r}")
    parts = key.split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise ValueError(f"invalid blob key: {key!r}")
    return key


class FilesystemBulkStore(BulkObjectStore):
    """Persistent bulk store on a local or mounted filesystem."""

    def __init__(self, storage_path: str, max_workers: int = 8, config=None):
        if config is not None:
            max_workers = config.bulk.max_thread_workers

        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.staging_path = self.storage_path / "staging"
        self.staging_path.mkdir(exist_ok=True)
        for tier in TierHint:
            (self.storage_path / tier.value).mkdir(exist_ok=True)

        self.logger = get_logger("BulkStore")
        self._shared_thread_pool = ThreadPoolExecutor(max_workers=max_workers)
        self.objects_written = 0
        self.bytes_written = 0
        self.logger.info(f"Initialized filesystem bulk store at {self.storage_path} with {max_workers} I/O workers")

    def _path_for(self, key: str, tier: TierHint) -> Path:
        return self.storage_path / tier.value / key

    def _locate(self, key: str) -> Optional[Tuple[Path, TierHint]]:
        # Archived payloads are written RARE, so look there first
        for tier in (TierHint.RARE, TierHint.FREQUENT):
            path = self._path_for(key, tier)
            if path.is_file():
                return path, tier
        return None

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._shared_thread_pool, fn, *args)

    def _write_atomic(self, key: str, data: bytes, tier_hint: TierHint) -> BlobInfo:
        """
        1. Write data to a uniquely named staging file and fsync it
        2. Atomically rename it to the final path
        3. Drop any copy of the key held under the other tier
        """
        final_path = self._path_for(key, tier_hint)
        staging_file = self.staging_path / f"{uuid.uuid4().hex}.tmp"
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            with open(staging_file, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(staging_file, final_path)
        except OSError as e:
            if staging_file.exists():
                staging_file.unlink()
            raise TransientStoreError(f"bulk write failed for {key}: {e}") from e

        for tier in TierHint:
            if tier != tier_hint:
                stale = self._path_for(key, tier)
                if stale.is_file():
                    stale.unlink()

        return BlobInfo(key=key, size=len(data), checksum=payload_checksum(data), tier=tier_hint)

    def _read(self, key: str) -> bytes:
        located = self._locate(key)
        if located is None:
            raise BlobNotFound(key)
        try:
            return located[0].read_bytes()
        except FileNotFoundError:
            # Deleted between locate and read
            raise BlobNotFound(key)
        except OSError as e:
            raise TransientStoreError(f"bulk read failed for {key}: {e}") from e

    def _stat(self, key: str) -> Optional[BlobInfo]:
        located = self._locate(key)
        if located is None:
            return None
        path, tier = located
        digest = hashlib.sha256()
        size = 0
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(chunk)
                    size += len(chunk)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransientStoreError(f"bulk stat failed for {key}: {e}") from e
        return BlobInfo(key=key, size=size, checksum=digest.hexdigest(), tier=tier)

    def _delete(self, key: str) -> bool:
        removed = False
        for tier in TierHint:
            path = self._path_for(key, tier)
            if path.is_file():
                path.unlink()
                removed = True
        return removed

    async def put(self, key: str, data: bytes, tier_hint: TierHint = TierHint.RARE) -> BlobInfo:
        validate_key(key)
        info = await self._run(self._write_atomic, key, bytes(data), tier_hint)
        self.objects_written += 1
        self.bytes_written += info.size
        self.logger.debug(f"Stored {info.size:,} bytes at {tier_hint.value}/{key}")
        return info

    async def get(self, key: str) -> bytes:
        validate_key(key)
        return await self._run(self._read, key)

    async def stat(self, key: str) -> Optional[BlobInfo]:
        validate_key(key)
        return await self._run(self._stat, key)

    async def delete(self, key: str) -> bool:
        validate_key(key)
        removed = await self._run(self._delete, key)
        if removed:
            self.logger.info(f"Deleted bulk object {key}")
        return removed

    def _count_objects(self) -> Dict[str, Tuple[int, int]]:
        counts = {}
        for tier in TierHint:
            files = [p for p in (self.storage_path / tier.value).rglob("*") if p.is_file()]
            counts[tier.value] = (len(files), sum(p.stat().st_size for p in files))
        return counts

    async def get_stats(self) -> dict:
        counts = await self._run(self._count_objects)
        return {
            "store": "bulk",
            "storage_path": str(self.storage_path),
            "total_objects": sum(c for c, _ in counts.values()),
            "storage_size_mb": sum(s for _, s in counts.values()) / (1024 * 1024),
            "objects_by_tier": {tier: c for tier, (c, _) in counts.items()},
            "objects_written": self.objects_written,
            "bytes_written": self.bytes_written,
        }

    async def close(self):
        self._shared_thread_pool.shutdown(wait=True)
        self.logger.info("Shut down bulk store thread pool")


class MemoryBulkStore(BulkObjectStore):
    """Bulk store held in a dict. For tests and the demo."""

    def __init__(self):
        self.objects: Dict[str, Tuple[bytes, TierHint]] = {}
        self.put_count = 0

    async def put(self, key: str, data: bytes, tier_hint: TierHint = TierHint.RARE) -> BlobInfo:
        validate_key(key)
        self.objects[key] = (bytes(data), tier_hint)
        self.put_count += 1
        return BlobInfo(key=key, size=len(data), checksum=payload_checksum(data), tier=tier_hint)

    async def get(self, key: str) -> bytes:
        validate_key(key)
        if key not in self.objects:
            raise BlobNotFound(key)
        return self.objects[key][0]

    async def stat(self, key: str) -> Optional[BlobInfo]:
        validate_key(key)
        if key not in self.objects:
            return None
        data, tier = self.objects[key]
        return BlobInfo(key=key, size=len(data), checksum=payload_checksum(data), tier=tier)

    async def delete(self, key: str) -> bool:
        validate_key(key)
        return self.objects.pop(key, None) is not None

    async def get_stats(self) -> dict:
        return {
            "store": "bulk",
            "total_objects": len(self.objects),
            "storage_size_mb": sum(len(d) for d, _ in self.objects.values()) / (1024 * 1024),
            "objects_written": self.put_count,
        }

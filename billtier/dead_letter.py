"""
Dead-letter sinks for records whose archival failed.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import List

from .interfaces import DeadLetter, DeadLetterSink
from .logger import get_logger


class JsonlDeadLetterSink(DeadLetterSink):
    """Appends one JSON object per failed record to a file, fsynced per write."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self.emitted = 0
        self.logger = get_logger("DeadLetterSink")

    def _append(self, line: str):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def emit(self, letter: DeadLetter) -> None:
        line = json.dumps(letter.to_dict(), sort_keys=True)
        async with self._lock:
            await asyncio.get_running_loop().run_in_executor(None, self._append, line)
            self.emitted += 1
        self.logger.warning(f"Dead-lettered {letter.record_id}: {letter.error}")

    def read_all(self) -> List[dict]:
        """Read back every letter written so far (operator tooling and tests)."""
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class MemoryDeadLetterSink(DeadLetterSink):
    """Keeps letters in a list."""

    def __init__(self):
        self.letters: List[DeadLetter] = []

    async def emit(self, letter: DeadLetter) -> None:
        self.letters.append(letter)

    @property
    def record_ids(self) -> List[str]:
        return [letter.record_id for letter in self.letters]

"""
Durable FIFO buffer for readings produced while the store is unreachable.
"""
import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, List, Optional, Union

from errors import SyncFailure
from models import Reading

logger = logging.getLogger(__name__)


class OfflineSyncQueue:
    """
    Readings waiting to be committed, in arrival order.

    Entries leave the queue only after the commit callable accepts the
    batch they belong to. When `path` is given the queue is written to a
    JSON file after every change and reloaded on construction.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, batch_size: int = 50):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.path = Path(path) if path else None
        self.batch_size = batch_size
        self._entries: Deque[Reading] = deque()
        self._flushing = False
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            self._set_aside(e)
            return
        if not isinstance(raw, list):
            self._set_aside(f"expected a list, got {type(raw).__name__}")
            return

        for index, item in enumerate(raw):
            try:
                self._entries.append(Reading.from_dict(item))
            except (KeyError, ValueError, TypeError) as e:
                logger.error("Skipping corrupt entry %d in %s: %r", index, self.path, e)
        logger.info("Restored %d queued readings from %s", len(self._entries), self.path)

    def _set_aside(self, reason) -> None:
        """Move an unreadable queue file out of the way and start empty."""
        corrupt = self.path.with_suffix(self.path.suffix + ".corrupt")
        self.path.replace(corrupt)
        logger.error("Offline queue file %s is corrupt (%s); moved to %s", self.path, reason, corrupt)

    def _persist(self) -> None:
        if not self.path:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in self._entries], f)
        tmp.replace(self.path)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    def entries(self) -> List[Reading]:
        return list(self._entries)

    def peek(self, n: Optional[int] = None) -> List[Reading]:
        """The next batch that a flush would commit."""
        n = self.batch_size if n is None else n
        return [self._entries[i] for i in range(min(n, len(self._entries)))]

    def enqueue(self, reading: Reading) -> None:
        self._entries.append(reading)
        self._persist()

    def flush(self, commit: Callable[[List[Reading]], Any]) -> int:
        """
        Commit the oldest batch of entries.

        Args:
            commit: Callable that stores a list of readings atomically

        Returns:
            Number of entries removed from the queue (0 if empty or a flush
            is already running)

        Raises:
            SyncFailure: when commit raises; the queue is left unchanged
        """
        if self._flushing:
            logger.warning("Flush already in progress, skipping")
            return 0
        if not self._entries:
            return 0

        self._flushing = True
        try:
            batch = self.peek()
            try:
                commit(batch)
            except Exception as e:
                raise SyncFailure(f"Batch commit of {len(batch)} readings failed: {e}",
                                  len(batch)) from e
            for _ in batch:
                self._entries.popleft()
            self._persist()
            logger.info("Committed %d queued readings, %d remaining", len(batch), len(self._entries))
            return len(batch)
        finally:
            self._flushing = False

    def drain(self, commit: Callable[[List[Reading]], Any]) -> int:
        """Flush repeatedly until the queue is empty; stops at the first failure."""
        total = 0
        while self._entries:
            moved = self.flush(commit)
            if moved == 0:
                break
            total += moved
        return total

"""Bounded FIFO of location samples produced while the driver is offline."""

import enum
import logging
from collections import deque
from pathlib import Path

import orjson

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500


class BufferPolicy(str, enum.Enum):
    DROP_OLDEST = "drop_oldest"
    REJECT_NEWEST = "reject_newest"


class OfflineBuffer:
    """FIFO of pending samples, optionally persisted to a JSON file.

    Samples leave the buffer only through ``pop`` after a successful send,
    or through the capacity policy, which always logs what it discarded.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        policy: BufferPolicy = BufferPolicy.DROP_OLDEST,
        path: str | Path | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.policy = BufferPolicy(policy)
        self.path = Path(path) if path else None
        self.evicted = 0
        self._items: deque[dict] = deque()
        self._load()

    def __len__(self) -> int:
        return len(self._items)

    def size(self) -> int:
        return len(self._items)

    def push(self, sample: dict) -> bool:
        """Append a sample; False if the policy rejected it."""
        if len(self._items) >= self.capacity:
            if self.policy is BufferPolicy.REJECT_NEWEST:
                self.evicted += 1
                logger.warning("Offline buffer full (%d), rejecting newest sample", self.capacity)
                return False
            self._items.popleft()
            self.evicted += 1
            logger.warning("Offline buffer full (%d), dropped oldest sample", self.capacity)
        self._items.append(sample)
        self._save()
        return True

    def peek(self) -> dict | None:
        return self._items[0] if self._items else None

    def pop(self) -> dict | None:
        if not self._items:
            return None
        sample = self._items.popleft()
        self._save()
        return sample

    def snapshot(self) -> list[dict]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
        self._save()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            items = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            logger.exception("Failed to read offline buffer from %s", self.path)
            return
        if isinstance(items, list):
            self._items.extend(i for i in items[-self.capacity:] if isinstance(i, dict))
            logger.info("Restored %d buffered samples from %s", len(self._items), self.path)

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.write_bytes(orjson.dumps(list(self._items)))
        except OSError:
            logger.exception("Failed to persist offline buffer to %s", self.path)

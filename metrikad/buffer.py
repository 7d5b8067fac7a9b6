"""Priority buffering of items awaiting publication."""

from __future__ import annotations

import abc
import enum
import heapq
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional


class Priority(enum.IntEnum):
    """Queue priority; higher values are drained first."""

    LOW = 0
    MED = 1
    HIGH = 2


@dataclass
class Item:
    """Something managed in a priority queue."""

    priority: int = Priority.LOW
    timestamp: int = 0
    data: Any = None


class ItemBatch(list):
    """A batch of buffered items."""

    def add(self, item: Item) -> None:
        """Add an item to the batch."""
        self.append(item)

    def clear(self) -> None:
        """Remove every item from the batch."""
        self[:] = []


class Buffer(abc.ABC):
    """Interface for reading and writing items to a buffer."""

    @abc.abstractmethod
    def insert(self, *args: Item) -> None:
        """Insert any number of items."""

    @abc.abstractmethod
    def get(self, n: int) -> ItemBatch:
        """Remove and return at most n items."""

    @abc.abstractmethod
    def __len__(self) -> int:
        """Number of buffered items."""


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class PriorityQueue:
    """Min-heap of items ordered by timestamp, oldest first.

    ``ttl`` is in seconds; items older than it are dropped by
    :meth:`drain_expired`. A ttl of 0 disables expiry.
    """

    def __init__(self, ttl: float) -> None:
        self.ttl = ttl
        self._heap: list[tuple[int, int, Item]] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def peek(self) -> Optional[Item]:
        """Return the oldest item without removing it, or None."""
        return self._heap[0][2] if self._heap else None

    def push(self, item: Item) -> None:
        """Add an item to the queue."""
        if not isinstance(item, Item):
            raise TypeError(f"unknown queue item type {type(item).__name__}")
        heapq.heappush(self._heap, (item.timestamp, next(self._counter), item))

    def pop(self) -> Optional[Item]:
        """Remove and return the oldest item, or None if empty."""
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    def drain_expired(self) -> None:
        """Drop items that have been queued for longer than the ttl."""
        if self.ttl <= 0:
            return
        ttl_millis = self.ttl * 1000
        while self._heap:
            item = self._heap[0][2]
            if _now_millis() - item.timestamp > ttl_millis:
                heapq.heappop(self._heap)
                continue
            break


class MultiQueue:
    """A set of priority queues indexed by item priority."""

    def __init__(self, queues: Iterable[PriorityQueue]) -> None:
        self.queues = list(queues)

    def __len__(self) -> int:
        return sum(len(q) for q in self.queues)

    def push(self, item: Item) -> None:
        """Push an item to the queue matching its priority."""
        if not isinstance(item, Item):
            raise TypeError(f"unknown queue item type {type(item).__name__}")
        index = min(int(item.priority), len(self.queues) - 1)
        self.queues[index].push(item)

    def pop(self) -> Optional[Item]:
        """Pop the oldest item of the highest non-empty priority, or None."""
        for queue in reversed(self.queues):
            if len(queue):
                return queue.pop()
        return None

    def drain_expired(self) -> None:
        """Drop expired items from every queue."""
        for queue in self.queues:
            queue.drain_expired()


def new_priority_queues(ttl: float, n: int) -> list[PriorityQueue]:
    """Create n empty priority queues sharing the same ttl."""
    return [PriorityQueue(ttl) for _ in range(n)]


class PriorityBuffer(Buffer):
    """Thread-safe buffer backed by one queue per priority."""

    def __init__(self, ttl: float) -> None:
        self.ttl = ttl
        self._lock = threading.Lock()
        self._queue = MultiQueue(new_priority_queues(ttl, int(Priority.HIGH) + 1))

    def insert(self, *args: Item) -> None:
        """Insert one or more items."""
        with self._lock:
            for item in args:
                self._queue.push(item)

    def get(self, n: int) -> ItemBatch:
        """Remove and return a batch of at most n items."""
        batch = ItemBatch()
        with self._lock:
            while len(batch) < n:
                item = self._queue.pop()
                if item is None:
                    break
                batch.add(item)
        return batch

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
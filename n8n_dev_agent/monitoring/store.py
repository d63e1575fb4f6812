"""Injectable in-memory storage for error records.

ErrorStore is the interface the tracker depends on; RingBufferErrorStore is
the bounded default. Each tracker owns its own store instance, so tests and
separate services never share a buffer by accident.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque

from n8n_dev_agent.monitoring.records import ErrorRecord

DEFAULT_CAPACITY = 1000


class ErrorStore(ABC):
    """Append-only record store with a fixed capacity."""

    @property
    @abstractmethod
    def capacity(self) -> int:
        ...

    @abstractmethod
    def append(self, record: ErrorRecord) -> ErrorRecord | None:
        """Store record; return the evicted oldest record, if any."""
        ...

    @abstractmethod
    def records(self) -> list[ErrorRecord]:
        """Snapshot of stored records, oldest first."""
        ...

    @abstractmethod
    def get(self, error_id: str) -> ErrorRecord | None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def __len__(self) -> int:
        return len(self.records())


class RingBufferErrorStore(ErrorStore):
    """Bounded FIFO buffer. Appending past capacity evicts the oldest record.

    A single lock guards append+evict and snapshots, so the store is safe to
    share between threads as well as asyncio tasks.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._buffer: deque[ErrorRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, record: ErrorRecord) -> ErrorRecord | None:
        with self._lock:
            evicted = self._buffer[0] if len(self._buffer) == self._capacity else None
            self._buffer.append(record)
        return evicted

    def records(self) -> list[ErrorRecord]:
        with self._lock:
            return list(self._buffer)

    def get(self, error_id: str) -> ErrorRecord | None:
        with self._lock:
            return next((r for r in self._buffer if r.id == error_id), None)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

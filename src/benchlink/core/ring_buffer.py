"""Fixed-capacity overwrite buffer for readings and waveform frames."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Generic, List, Optional, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Thread-safe FIFO that evicts its oldest item once full.

    One producer (an acquisition loop) may `add()` while any number of readers
    take `snapshot()` copies; a snapshot never changes after it is returned.
    """

    def __init__(self, capacity: int, *, min_capacity: int = 1) -> None:
        cap = int(capacity)
        if cap < 1 and min_capacity < 1:
            raise ValueError("RingBuffer capacity must be >= 1")
        self._capacity = max(int(min_capacity), cap)
        self._lock = threading.Lock()
        self._items: Deque[T] = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, item: T) -> None:
        with self._lock:
            # deque(maxlen) drops the oldest entry on append when full.
            self._items.append(item)

    def snapshot(self) -> List[T]:
        """Point-in-time copy, oldest first."""

        with self._lock:
            return list(self._items)

    def latest(self) -> Optional[T]:
        with self._lock:
            return self._items[-1] if self._items else None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

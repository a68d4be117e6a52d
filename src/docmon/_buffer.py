"""Lock-free bounded ring buffer."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO backed by collections.deque.

    CPython's GIL guarantees that deque.append and deque.popleft are atomic,
    so no explicit locking is needed for single-producer/single-consumer usage.
    """

    def __init__(self, maxsize: int) -> None:
        self._buffer: deque[T] = deque(maxlen=maxsize)
        self._drop_count: int = 0
        self._maxsize = maxsize

    def enqueue(self, item: T) -> None:
        """Add an item to the buffer. Oldest item is dropped if full."""
        if len(self._buffer) == self._maxsize:
            self._drop_count += 1
        self._buffer.append(item)

    def drain(self, max_items: int) -> list[T]:
        """Remove and return up to max_items items from the buffer."""
        items: list[T] = []
        for _ in range(max_items):
            try:
                items.append(self._buffer.popleft())
            except IndexError:
                break
        return items

    def snapshot(self) -> list[T]:
        """Return the buffered items, oldest first, without removing them."""
        return list(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def drop_count(self) -> int:
        """Number of items evicted due to buffer overflow."""
        return self._drop_count

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._buffer))

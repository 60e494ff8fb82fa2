"""KV caches for the sequences of one batch, kept in numbered slots."""

from __future__ import annotations

from collections.abc import Iterator

from .kv_cache import KVCache


class BatchKVCache:
    """Fixed number of slots, each holding the ``KVCache`` of one sequence.

    Slots may be left empty. ``compact`` moves the filled slots to the
    front without changing their relative order.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must not be negative, got {capacity}")
        self._capacity = capacity
        self._slots: list[KVCache | None] = [None] * capacity

    @property
    def capacity(self) -> int:
        """Maximum number of sequences the batch can hold."""
        return self._capacity

    def _in_range(self, idx: int) -> bool:
        return 0 <= idx < self._capacity

    def insert(self, idx: int, cache: KVCache) -> None:
        """Put a cache in a slot, replacing whatever was there."""
        if not self._in_range(idx):
            raise IndexError(f"batch cache index {idx} exceeds capacity {self._capacity}")
        self._slots[idx] = cache

    def get(self, idx: int) -> KVCache | None:
        """The cache in a slot, or None if the slot is empty or out of range."""
        if not self._in_range(idx):
            return None
        return self._slots[idx]

    def remove(self, idx: int) -> KVCache | None:
        """Empty a slot and return what it held, or None."""
        if not self._in_range(idx):
            return None
        cache = self._slots[idx]
        self._slots[idx] = None
        return cache

    def active_count(self) -> int:
        """Number of filled slots."""
        return sum(slot is not None for slot in self._slots)

    def compact(self) -> None:
        """Move all filled slots to the front, keeping their order."""
        active = [slot for slot in self._slots if slot is not None]
        self._slots = active + [None] * (self._capacity - len(active))

    def __iter__(self) -> Iterator[tuple[int, KVCache]]:
        """Yield ``(index, cache)`` for every filled slot, in index order."""
        for idx, slot in enumerate(self._slots):
            if slot is not None:
                yield idx, slot
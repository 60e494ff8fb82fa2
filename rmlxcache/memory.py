"""Prefix cache that keeps its memory use within a budget."""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence

import psutil

from .prefix_cache import PrefixCacheManager

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024
_DEFAULT_BYTES_PER_BLOCK = 4096
_MIN_PRESSURE_THRESHOLD_MB = 256
_EVICTION_TARGET_RATIO = 0.8


class MemoryAwarePrefixCache:
    """Trie-based prefix cache with a memory budget and LRU eviction.

    Memory use is estimated as a fixed number of bytes per stored block.
    Blocks are evicted when the budget is reached, when the underlying
    cache is full, or when the system runs low on memory.
    """

    def __init__(
        self,
        max_blocks: int,
        memory_limit_mb: int,
        bytes_per_block: int = _DEFAULT_BYTES_PER_BLOCK,
    ) -> None:
        self._prefix_cache = PrefixCacheManager(max_blocks)
        self._memory_limit_bytes = memory_limit_mb * _MIB
        self._current_usage_bytes = 0
        self._bytes_per_block = bytes_per_block

    @staticmethod
    def available_memory_mb() -> int:
        """Available system memory in MiB.

        Falls back to free memory, and to an unbounded value when neither
        can be determined.
        """
        stats = psutil.virtual_memory()
        available = getattr(stats, "available", 0) or 0
        if available:
            return available // _MIB
        free = getattr(stats, "free", 0) or 0
        if free:
            return free // _MIB
        return sys.maxsize

    def should_evict(self) -> bool:
        """Whether the budget, block capacity or system memory calls for eviction."""
        if self._current_usage_bytes >= self._memory_limit_bytes:
            return True
        if self._prefix_cache.is_full():
            return True
        threshold_mb = self._memory_limit_bytes // _MIB // 10
        return self.available_memory_mb() < max(threshold_mb, _MIN_PRESSURE_THRESHOLD_MB)

    def evict_until_threshold(self) -> None:
        """Evict LRU blocks until usage is at most 80% of the budget."""
        target = int(self._memory_limit_bytes * _EVICTION_TARGET_RATIO)
        while self._current_usage_bytes > target:
            if self._prefix_cache.evict_lru() is None:
                logger.warning(
                    "cannot evict further, %d bytes still in use",
                    self._current_usage_bytes,
                )
                break
            self._release_block()
            logger.debug("evicted block, usage now %d MB", self._current_usage_bytes // _MIB)

    def lookup(self, tokens: Sequence[int]) -> list[int]:
        """Block ids along the longest cached prefix of the tokens."""
        return self._prefix_cache.lookup(tokens)

    def insert(self, tokens: Sequence[int], block_ids: Sequence[int]) -> None:
        """Record a token sequence with its blocks, evicting first if needed."""
        block_ids = list(block_ids)
        if self.should_evict():
            self.evict_until_threshold()
        self._prefix_cache.insert(tokens, block_ids)
        self._current_usage_bytes += len(block_ids) * self._bytes_per_block

    def evict_lru(self) -> int | None:
        """Evict the least recently used block and return its id, or None."""
        evicted = self._prefix_cache.evict_lru()
        if evicted is not None:
            self._release_block()
        return evicted

    def _release_block(self) -> None:
        self._current_usage_bytes = max(0, self._current_usage_bytes - self._bytes_per_block)

    def hit_rate(self) -> float:
        """Hit rate of the underlying prefix cache."""
        return self._prefix_cache.hit_rate()

    def num_blocks(self) -> int:
        """Number of cached blocks."""
        return self._prefix_cache.num_blocks()

    @property
    def current_usage_bytes(self) -> int:
        """Estimated memory in use, in bytes."""
        return self._current_usage_bytes

    @property
    def memory_limit_bytes(self) -> int:
        """Memory budget, in bytes."""
        return self._memory_limit_bytes

    @property
    def bytes_per_block(self) -> int:
        """Estimated memory per block, in bytes."""
        return self._bytes_per_block

    @property
    def prefix_cache(self) -> PrefixCacheManager:
        """The underlying prefix cache."""
        return self._prefix_cache
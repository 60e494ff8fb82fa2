"""Exception hierarchy for KV cache operations."""

from __future__ import annotations

import os
from pathlib import Path


class CacheError(Exception):
    """Base class for every error raised by the cache package."""

    prefix = "cache error"

    def __init__(self, detail: object = "") -> None:
        self.detail = detail
        super().__init__(f"{self.prefix}: {detail}")


class AllocationFailedError(CacheError):
    """A cache block or buffer could not be allocated."""

    prefix = "allocation failed"


class CapacityExceededError(CacheError):
    """The cache, or one of its blocks, has reached its maximum capacity."""

    prefix = "capacity exceeded"


class InvalidBlockIdError(CacheError):
    """A block id outside the pool was referenced."""

    prefix = "invalid block id"

    def __init__(self, block_id: int) -> None:
        self.block_id = block_id
        super().__init__(block_id)


class CacheCorruptedError(CacheError):
    """Internal cache state is inconsistent (double free and the like)."""

    prefix = "cache corrupted"


class EvictionFailedError(CacheError):
    """No block could be evicted."""

    prefix = "eviction failed"


class CacheSerializationError(CacheError):
    """Cache data could not be encoded or decoded."""

    prefix = "serialization error"


class CacheIOError(CacheError):
    """Reading or writing a cache file failed."""

    prefix = "io error"

    def __init__(self, path: str | os.PathLike[str], message: object) -> None:
        self.path = Path(path)
        self.message = str(message)
        self.detail = self.message
        Exception.__init__(self, f"io error at {str(self.path)!r}: {self.message}")
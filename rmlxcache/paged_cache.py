"""Paged KV cache block manager with reference counting and copy-on-write."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import CacheCorruptedError, CapacityExceededError, InvalidBlockIdError


@dataclass
class KVCacheBlock:
    """One fixed-size block of token positions in the paged cache."""

    block_id: int
    ref_count: int = 0
    content_hash: int | None = None
    tokens: list[int] = field(default_factory=list)
    num_filled: int = 0

    def is_full(self, block_size: int) -> bool:
        """Whether every position of the block has been filled."""
        return self.num_filled >= block_size

    def is_empty(self) -> bool:
        """Whether the block holds no data."""
        return self.num_filled == 0

    def reset(self) -> None:
        """Return the block to its empty state."""
        self.ref_count = 0
        self.content_hash = None
        self.tokens.clear()
        self.num_filled = 0


class PagedCacheManager:
    """Pool of cache blocks with a free list, ref counts and hash sharing.

    Only block bookkeeping is tracked here; tensor data lives elsewhere.
    """

    def __init__(self, block_size: int, num_blocks: int) -> None:
        self.block_size = block_size
        self.num_blocks = num_blocks
        self._blocks = [KVCacheBlock(block_id) for block_id in range(num_blocks)]
        self._free: deque[int] = deque(range(num_blocks))
        self._hash_to_block: dict[int, int] = {}

    def _check(self, block_id: int) -> KVCacheBlock:
        if not 0 <= block_id < self.num_blocks:
            raise InvalidBlockIdError(block_id)
        return self._blocks[block_id]

    def allocate(self) -> int | None:
        """Take a free block with ref count 1; None when the pool is exhausted."""
        if not self._free:
            return None
        block_id = self._free.popleft()
        block = self._blocks[block_id]
        block.reset()
        block.ref_count = 1
        return block_id

    def free(self, block_id: int) -> None:
        """Drop one reference; the block returns to the free list at zero."""
        block = self._check(block_id)
        if block.ref_count == 0:
            raise CacheCorruptedError(
                f"double free: block {block_id} already has ref_count 0"
            )
        block.ref_count -= 1
        if block.ref_count == 0:
            if (
                block.content_hash is not None
                and self._hash_to_block.get(block.content_hash) == block_id
            ):
                del self._hash_to_block[block.content_hash]
            block.reset()
            self._free.append(block_id)

    def ref_count(self, block_id: int) -> int:
        """Reference count of a block; 0 for free blocks."""
        return self._check(block_id).ref_count

    def increment_ref(self, block_id: int) -> None:
        """Add a reference to an allocated block so it can be shared."""
        block = self._check(block_id)
        if block.ref_count == 0:
            raise CacheCorruptedError(f"cannot increment ref on free block {block_id}")
        block.ref_count += 1

    def copy_on_write(self, block_id: int) -> int | None:
        """Copy a shared block and return the copy's id.

        Returns None when the block is not shared (write in place) or when
        no free block is left for the copy.
        """
        source = self._check(block_id)
        if source.ref_count <= 1:
            return None
        new_id = self.allocate()
        if new_id is None:
            return None
        copy = self._blocks[new_id]
        copy.tokens = list(source.tokens)
        copy.num_filled = source.num_filled
        copy.content_hash = None
        source.ref_count -= 1
        return new_id

    def num_free_blocks(self) -> int:
        """Number of blocks on the free list."""
        return len(self._free)

    def num_allocated_blocks(self) -> int:
        """Number of blocks in use."""
        return self.num_blocks - len(self._free)

    def get_block(self, block_id: int) -> KVCacheBlock | None:
        """The block with this id, or None when out of range."""
        if 0 <= block_id < self.num_blocks:
            return self._blocks[block_id]
        return None

    def register_hash(self, block_id: int, content_hash: int) -> None:
        """Record a content hash for a block, replacing any earlier holder."""
        block = self._check(block_id)
        block.content_hash = content_hash
        self._hash_to_block[content_hash] = block_id

    def lookup_hash(self, content_hash: int) -> int | None:
        """Id of the allocated block registered under this hash, if any."""
        block_id = self._hash_to_block.get(content_hash)
        if block_id is None or self._blocks[block_id].ref_count == 0:
            return None
        return block_id

    def append_tokens(self, block_id: int, tokens: Iterable[int]) -> None:
        """Append tokens to a block, invalidating its content hash."""
        block = self._check(block_id)
        new_tokens = list(tokens)
        if block.num_filled + len(new_tokens) > self.block_size:
            raise CapacityExceededError(
                f"block {block_id} overflow: {block.num_filled} filled + "
                f"{len(new_tokens)} new > {self.block_size} block_size"
            )
        block.tokens.extend(new_tokens)
        block.num_filled += len(new_tokens)
        block.content_hash = None
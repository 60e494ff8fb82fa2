"""Trie-based prefix cache mapping token prefixes to KV cache block ids."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field


@dataclass(eq=False)
class _TrieNode:
    children: dict[int, _TrieNode] = field(default_factory=dict)
    block_id: int | None = None
    last_access: int = 0
    parent: _TrieNode | None = None
    token: int | None = None


class PrefixCacheManager:
    """Finds the longest cached prefix of a token sequence.

    Each path from the root spells a token prefix; nodes at block
    boundaries carry the id of the cached block that ends there.
    Blocks are evicted least recently used first, leaves before
    internal nodes.
    """

    def __init__(self, max_blocks: int) -> None:
        self._root = _TrieNode()
        # Every node ever created, in creation order; pruned nodes stay here.
        self._nodes: list[_TrieNode] = [self._root]
        self._access_counter = 0
        self._max_blocks = max_blocks
        self._num_blocks = 0
        self._total_lookups = 0
        self._hit_tokens = 0
        self._lookup_tokens = 0

    def _tick(self) -> int:
        self._access_counter += 1
        return self._access_counter

    def lookup(self, tokens: Sequence[int]) -> list[int]:
        """Block ids along the longest matching prefix, in order."""
        tokens = list(tokens)
        self._total_lookups += 1
        self._lookup_tokens += len(tokens)
        access_time = self._tick()

        block_ids: list[int] = []
        node = self._root
        for token in tokens:
            child = node.children.get(token)
            if child is None:
                break
            node = child
            node.last_access = access_time
            if node.block_id is not None:
                block_ids.append(node.block_id)

        self._hit_tokens += len(block_ids)
        return block_ids

    def insert(self, tokens: Sequence[int], block_ids: Sequence[int]) -> None:
        """Record a token sequence split evenly across the given block ids.

        When the split is uneven, the last block covers the remaining tokens.
        """
        tokens = list(tokens)
        block_ids = list(block_ids)
        if not tokens or not block_ids:
            return

        num_ids = len(block_ids)
        tokens_per_block = len(tokens) if num_ids == 1 else len(tokens) // num_ids
        access_time = self._tick()

        node = self._root
        block_idx = 0
        last_pos = len(tokens) - 1
        for pos, token in enumerate(tokens):
            child = node.children.get(token)
            if child is None:
                child = _TrieNode(parent=node, token=token)
                node.children[token] = child
                self._nodes.append(child)
            child.last_access = access_time

            if block_idx < num_ids:
                if block_idx == num_ids - 1:
                    is_boundary = pos == last_pos
                else:
                    is_boundary = pos + 1 == (block_idx + 1) * tokens_per_block
                if is_boundary:
                    if child.block_id is None:
                        self._num_blocks += 1
                    child.block_id = block_ids[block_idx]
                    block_idx += 1

            node = child

    def evict_lru(self) -> int | None:
        """Remove and return the least recently used block id, or None."""
        if self._num_blocks == 0:
            return None

        best: _TrieNode | None = None
        best_is_leaf = False
        for node in self._nodes:
            if node.block_id is None:
                continue
            is_leaf = not node.children
            if best is None:
                better = True
            elif is_leaf != best_is_leaf:
                better = is_leaf
            else:
                better = node.last_access < best.last_access
            if better:
                best = node
                best_is_leaf = is_leaf

        if best is None:
            return None

        block_id = best.block_id
        best.block_id = None
        self._num_blocks -= 1
        if best_is_leaf:
            self._prune_leaf(best)
        return block_id

    def _prune_leaf(self, node: _TrieNode) -> None:
        if node is self._root or node.children or node.block_id is not None:
            return
        parent = node.parent
        if parent is not None and parent.children.get(node.token) is node:
            del parent.children[node.token]

    def hit_rate(self) -> float:
        """Ratio of hit blocks to looked-up tokens; 0.0 before any lookup."""
        if self._lookup_tokens == 0:
            return 0.0
        return self._hit_tokens / self._lookup_tokens

    def num_blocks(self) -> int:
        """Number of blocks currently stored."""
        return self._num_blocks

    def max_blocks(self) -> int:
        """Maximum number of blocks allowed."""
        return self._max_blocks

    def is_full(self) -> bool:
        """Whether the cache has reached its block capacity."""
        return self._num_blocks >= self._max_blocks

    def num_nodes(self) -> int:
        """Number of trie nodes ever created, root included."""
        return len(self._nodes)
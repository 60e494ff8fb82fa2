"""Multi-layer KV cache holding per-head key and value arrays."""

from __future__ import annotations

import numpy as np
from numpy.typing import DTypeLike


class LayerKVCache:
    """Keys and values of one transformer layer, one array per KV head.

    Each head array has shape ``[capacity, head_dim]``; only the first
    ``seq_len`` rows are live.
    """

    def __init__(self, num_kv_heads: int) -> None:
        self.num_kv_heads = num_kv_heads
        self.keys: list[np.ndarray] = []
        self.values: list[np.ndarray] = []
        self.seq_len = 0

    @classmethod
    def _preallocated(
        cls, num_kv_heads: int, head_dim: int, max_seq_len: int, dtype: DTypeLike
    ) -> LayerKVCache:
        layer = cls(num_kv_heads)
        layer.keys = [np.zeros((max_seq_len, head_dim), dtype=dtype) for _ in range(num_kv_heads)]
        layer.values = [
            np.zeros((max_seq_len, head_dim), dtype=dtype) for _ in range(num_kv_heads)
        ]
        return layer

    def is_empty(self) -> bool:
        """Whether no tokens are cached."""
        return self.seq_len == 0

    def cached_keys(self, head: int) -> np.ndarray:
        """Live keys of one head, shape ``[seq_len, head_dim]``."""
        return self.keys[head][: self.seq_len]

    def cached_values(self, head: int) -> np.ndarray:
        """Live values of one head, shape ``[seq_len, head_dim]``."""
        return self.values[head][: self.seq_len]


class KVCache:
    """KV cache for transformer inference, one ``LayerKVCache`` per layer."""

    def __init__(self, num_layers: int, num_kv_heads: int) -> None:
        self.inner: list[LayerKVCache] = [LayerKVCache(num_kv_heads) for _ in range(num_layers)]

    @classmethod
    def preallocated(
        cls,
        num_layers: int,
        num_kv_heads: int,
        head_dim: int,
        max_seq_len: int,
        dtype: DTypeLike = np.float32,
    ) -> KVCache:
        """A cache with ``[max_seq_len, head_dim]`` buffers allocated up front."""
        cache = cls(0, num_kv_heads)
        cache.inner = [
            LayerKVCache._preallocated(num_kv_heads, head_dim, max_seq_len, dtype)
            for _ in range(num_layers)
        ]
        return cache

    def seq_len(self) -> int:
        """Number of cached tokens, taken from the first layer."""
        return self.inner[0].seq_len if self.inner else 0

    def is_empty(self) -> bool:
        """Whether no tokens are cached."""
        return self.inner[0].is_empty() if self.inner else True

    def num_layers(self) -> int:
        """Number of transformer layers."""
        return len(self.inner)

    def layer(self, idx: int) -> LayerKVCache:
        """The cache of one layer; raises IndexError when out of range."""
        if not 0 <= idx < len(self.inner):
            raise IndexError(f"layer index {idx} out of range for {len(self.inner)} layers")
        return self.inner[idx]

    def layers(self) -> list[LayerKVCache]:
        """All layer caches, in order."""
        return self.inner
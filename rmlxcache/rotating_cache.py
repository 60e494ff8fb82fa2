"""Rotating (circular buffer) KV cache with pinned leading tokens."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


class RotatingKVCache:
    """KV cache of fixed maximum size that overwrites its oldest entries.

    The first ``keep`` tokens (typically a system prompt) are pinned and
    never overwritten. Once the buffer is full, each new token replaces
    the oldest token of the rotating region behind them. The write position
    is shared by all layers, so every layer is expected to receive the same
    tokens in turn.
    """

    def __init__(
        self,
        num_layers: int,
        num_kv_heads: int,
        head_dim: int,
        max_size: int,
        keep: int,
    ) -> None:
        if keep >= max_size:
            raise ValueError(f"keep ({keep}) must be less than max_size ({max_size})")
        self._num_layers = num_layers
        self._num_kv_heads = num_kv_heads
        self._head_dim = head_dim
        self._max_size = max_size
        self._keep = keep
        shape = (num_layers, num_kv_heads, max_size, head_dim)
        self._keys = np.zeros(shape, dtype=np.float32)
        self._values = np.zeros(shape, dtype=np.float32)
        # Write offset within the rotating region.
        self._offset = 0
        # Total number of tokens written; may exceed max_size.
        self._written = 0

    def _check_layer(self, layer: int) -> None:
        if not 0 <= layer < self._num_layers:
            raise IndexError(f"layer index {layer} out of range for {self._num_layers} layers")

    def _reshape_input(self, name: str, data: Sequence[float], new_tokens: int) -> np.ndarray:
        arr = np.asarray(data, dtype=np.float32).ravel()
        expected_len = self._num_kv_heads * new_tokens * self._head_dim
        if arr.size != expected_len:
            raise ValueError(f"{name} length mismatch: expected {expected_len}, got {arr.size}")
        return arr.reshape(self._num_kv_heads, new_tokens, self._head_dim)

    def append(
        self,
        layer: int,
        new_keys: Sequence[float],
        new_values: Sequence[float],
        new_tokens: int,
    ) -> None:
        """Append keys and values for one layer.

        Inputs are flat, of length ``num_kv_heads * new_tokens * head_dim``,
        laid out head by head: all tokens of head 0, then head 1, and so on.
        """
        self._check_layer(layer)
        keys = self._reshape_input("new_keys", new_keys, new_tokens)
        values = self._reshape_input("new_values", new_values, new_tokens)
        rotating_size = self._max_size - self._keep

        for tok in range(new_tokens):
            rotating = self._written >= self._max_size
            write_pos = self._keep + self._offset if rotating else self._written
            self._keys[layer, :, write_pos] = keys[:, tok]
            self._values[layer, :, write_pos] = values[:, tok]
            if rotating:
                self._offset = (self._offset + 1) % rotating_size
            self._written += 1

    def get_keys(self, layer: int) -> list[np.ndarray]:
        """Cached keys of a layer in logical order, one flat array per head."""
        self._check_layer(layer)
        return self._logical_order(self._keys[layer])

    def get_values(self, layer: int) -> list[np.ndarray]:
        """Cached values of a layer in logical order, one flat array per head."""
        self._check_layer(layer)
        return self._logical_order(self._values[layer])

    def _logical_order(self, heads: np.ndarray) -> list[np.ndarray]:
        if self._written <= self._max_size:
            return [buf[: self.seq_len()].ravel().copy() for buf in heads]
        result = []
        for buf in heads:
            pinned = buf[: self._keep]
            rotating = np.roll(buf[self._keep :], -self._offset, axis=0)
            result.append(np.concatenate([pinned, rotating]).ravel())
        return result

    def seq_len(self) -> int:
        """Effective number of cached tokens, capped at ``max_size``."""
        return min(self._written, self._max_size)

    def trim(self, n: int) -> None:
        """Forget the ``n`` oldest tokens after the pinned region."""
        trimmable = max(self.seq_len() - self._keep, 0)
        if n < 0 or n > trimmable:
            raise ValueError(f"cannot trim {n} tokens: only {trimmable} trimmable")

        if self._written <= self._max_size:
            src = self._keep + n
            remaining = self._written - self._keep - n
            if remaining > 0:
                dst = self._keep
                for storage in (self._keys, self._values):
                    storage[:, :, dst : dst + remaining] = storage[
                        :, :, src : src + remaining
                    ].copy()
        else:
            rotating_size = self._max_size - self._keep
            self._offset = (self._offset + n) % rotating_size
        self._written -= n

    def can_trim(self) -> bool:
        """Whether there are tokens beyond the pinned region."""
        return self.seq_len() > self._keep

    def num_layers(self) -> int:
        """Number of transformer layers."""
        return self._num_layers

    @property
    def num_kv_heads(self) -> int:
        """Number of KV heads per layer."""
        return self._num_kv_heads

    @property
    def head_dim(self) -> int:
        """Dimension of each head."""
        return self._head_dim

    @property
    def max_size(self) -> int:
        """Maximum number of tokens held."""
        return self._max_size

    @property
    def keep(self) -> int:
        """Number of pinned leading tokens."""
        return self._keep
"""KV cache with 4-bit or 8-bit min-max quantized storage."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

_SUPPORTED_BITS = (4, 8)


def _check_bits(bits: int) -> None:
    if bits not in _SUPPORTED_BITS:
        raise ValueError(f"bits must be 4 or 8, got {bits}")


def _quantize_levels(values: np.ndarray, min_val: np.float32, scale: np.float32, qmax: float) -> np.ndarray:
    # Values are non-negative here, so floor(x + 0.5) rounds half away from zero.
    scaled = (values - min_val) / scale
    return np.clip(np.floor(scaled + np.float32(0.5)), 0.0, qmax).astype(np.uint8)


def quantize_group(data: Sequence[float], bits: int) -> tuple[bytes, float, float]:
    """Quantize one group of values with asymmetric min-max quantization.

    Returns the packed bytes, the scale and the zero point (the group minimum).
    With 4 bits two values share a byte, low nibble first.
    """
    _check_bits(bits)
    values = np.asarray(data, dtype=np.float32).ravel()
    if values.size == 0:
        return b"", 0.0, 0.0

    min_val = values.min()
    max_val = values.max()
    qmax = float((1 << bits) - 1)
    value_range = np.float32(max_val - min_val)
    scale = np.float32(1.0) if value_range == 0.0 else np.float32(value_range / np.float32(qmax))

    levels = _quantize_levels(values, min_val, scale, qmax)
    if bits == 4:
        if levels.size % 2:
            levels = np.append(levels, np.uint8(0))
        packed = levels[0::2] | (levels[1::2] << 4)
    else:
        packed = levels
    return packed.astype(np.uint8).tobytes(), float(scale), float(min_val)


def dequantize_group(data: bytes, scale: float, zero: float, bits: int) -> np.ndarray:
    """Reverse ``quantize_group``: value = level * scale + zero.

    With 4 bits every byte yields two values, so an odd-sized group comes
    back with one padding value at the end.
    """
    _check_bits(bits)
    raw = np.frombuffer(bytes(data), dtype=np.uint8)
    if bits == 4:
        levels = np.empty(raw.size * 2, dtype=np.uint8)
        levels[0::2] = raw & 0x0F
        levels[1::2] = (raw >> 4) & 0x0F
    else:
        levels = raw
    return levels.astype(np.float32) * np.float32(scale) + np.float32(zero)


class QuantizedKVCache:
    """Per-layer quantized key/value storage with per-group scales and zeros.

    Each append is split into groups of ``group_size`` elements; every group
    carries its own scale and zero point.
    """

    def __init__(
        self,
        num_layers: int,
        num_kv_heads: int,
        head_dim: int,
        bits: int,
        group_size: int,
    ) -> None:
        _check_bits(bits)
        if group_size <= 0:
            raise ValueError(f"group_size must be positive, got {group_size}")
        if head_dim % group_size != 0 and group_size <= head_dim:
            raise ValueError(
                f"head_dim ({head_dim}) should be divisible by group_size ({group_size}) "
                "for optimal quantization"
            )
        self._num_layers = num_layers
        self._num_kv_heads = num_kv_heads
        self._head_dim = head_dim
        self._bits = bits
        self._group_size = group_size
        self._seq_len = 0
        self._keys = [bytearray() for _ in range(num_layers)]
        self._values = [bytearray() for _ in range(num_layers)]
        self._key_scales: list[list[float]] = [[] for _ in range(num_layers)]
        self._value_scales: list[list[float]] = [[] for _ in range(num_layers)]
        self._key_zeros: list[list[float]] = [[] for _ in range(num_layers)]
        self._value_zeros: list[list[float]] = [[] for _ in range(num_layers)]

    def append(
        self,
        layer: int,
        keys: Sequence[float],
        values: Sequence[float],
        new_tokens: int,
    ) -> None:
        """Quantize and append keys and values for one layer.

        Both inputs are flat, of length ``num_kv_heads * new_tokens * head_dim``.
        The sequence length advances when layer 0 is appended.
        """
        if not 0 <= layer < self._num_layers:
            raise IndexError(f"layer index {layer} out of range for {self._num_layers} layers")
        key_arr = np.asarray(keys, dtype=np.float32).ravel()
        value_arr = np.asarray(values, dtype=np.float32).ravel()
        expected_len = self._num_kv_heads * new_tokens * self._head_dim
        if key_arr.size != expected_len:
            raise ValueError(f"keys length mismatch: expected {expected_len}, got {key_arr.size}")
        if value_arr.size != expected_len:
            raise ValueError(
                f"values length mismatch: expected {expected_len}, got {value_arr.size}"
            )

        k_bytes, k_scales, k_zeros = self._quantize(key_arr)
        v_bytes, v_scales, v_zeros = self._quantize(value_arr)

        self._keys[layer].extend(k_bytes)
        self._values[layer].extend(v_bytes)
        self._key_scales[layer].extend(k_scales)
        self._value_scales[layer].extend(v_scales)
        self._key_zeros[layer].extend(k_zeros)
        self._value_zeros[layer].extend(v_zeros)

        if layer == 0:
            self._seq_len += new_tokens

    def get_keys_dequantized(self, layer: int) -> np.ndarray:
        """All cached keys of a layer as a flat float32 array."""
        return self._dequantize(self._keys[layer], self._key_scales[layer], self._key_zeros[layer])

    def get_values_dequantized(self, layer: int) -> np.ndarray:
        """All cached values of a layer as a flat float32 array."""
        return self._dequantize(
            self._values[layer], self._value_scales[layer], self._value_zeros[layer]
        )

    def seq_len(self) -> int:
        """Number of cached tokens."""
        return self._seq_len

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
    def bits(self) -> int:
        """Quantization bit width."""
        return self._bits

    @property
    def group_size(self) -> int:
        """Number of elements per quantization group."""
        return self._group_size

    def _quantize(self, data: np.ndarray) -> tuple[bytes, list[float], list[float]]:
        packed = bytearray()
        scales: list[float] = []
        zeros: list[float] = []
        for start in range(0, data.size, self._group_size):
            group_bytes, scale, zero = quantize_group(
                data[start : start + self._group_size], self._bits
            )
            packed.extend(group_bytes)
            scales.append(scale)
            zeros.append(zero)
        return bytes(packed), scales, zeros

    def _dequantize(self, packed: bytearray, scales: list[float], zeros: list[float]) -> np.ndarray:
        if not packed:
            return np.empty(0, dtype=np.float32)
        bytes_per_group = (
            (self._group_size + 1) // 2 if self._bits == 4 else self._group_size
        )
        parts = [
            dequantize_group(
                packed[g * bytes_per_group : (g + 1) * bytes_per_group], scale, zero, self._bits
            )
            for g, (scale, zero) in enumerate(zip(scales, zeros))
        ]
        return np.concatenate(parts) if parts else np.empty(0, dtype=np.float32)
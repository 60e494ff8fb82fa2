"""Saving, loading and trimming prompt KV caches.

Caches are stored in the safetensors format: an 8-byte little-endian
header length, a JSON header, then the raw tensor bytes. Each head of
each layer is stored as ``layer_{l}_head_{h}_keys`` and
``layer_{l}_head_{h}_values`` with shape ``[seq_len, head_dim]``.
"""

from __future__ import annotations

import json
import logging
import math
import os
import struct
from collections.abc import Mapping

import numpy as np
from numpy.typing import DTypeLike

from .errors import CacheIOError, CacheSerializationError
from .kv_cache import KVCache

logger = logging.getLogger(__name__)

_HEADER_LEN = struct.Struct("<Q")
_METADATA_KEY = "__metadata__"

_NUMPY_TO_SAFETENSORS = {
    np.dtype(np.float64): "F64",
    np.dtype(np.float32): "F32",
    np.dtype(np.float16): "F16",
    np.dtype(np.int64): "I64",
    np.dtype(np.int32): "I32",
    np.dtype(np.int16): "I16",
    np.dtype(np.int8): "I8",
    np.dtype(np.uint64): "U64",
    np.dtype(np.uint32): "U32",
    np.dtype(np.uint16): "U16",
    np.dtype(np.uint8): "U8",
    np.dtype(np.bool_): "BOOL",
}
_SAFETENSORS_TO_NUMPY = {name: dtype for dtype, name in _NUMPY_TO_SAFETENSORS.items()}


def make_prompt_cache(
    num_layers: int,
    num_kv_heads: int,
    head_dim: int,
    max_kv_size: int | None = None,
    dtype: DTypeLike = np.float32,
) -> KVCache:
    """A cache for prompt reuse: preallocated when ``max_kv_size`` is given."""
    if max_kv_size is None:
        return KVCache(num_layers, num_kv_heads)
    return KVCache.preallocated(num_layers, num_kv_heads, head_dim, max_kv_size, dtype)


def _tensor_name(layer: int, head: int, kind: str) -> str:
    return f"layer_{layer}_head_{head}_{kind}"


def _safetensors_dtype(dtype: np.dtype) -> str:
    name = _NUMPY_TO_SAFETENSORS.get(np.dtype(dtype))
    if name is None:
        raise CacheSerializationError(f"unsupported dtype {dtype}")
    return name


def _encode(tensors: dict[str, np.ndarray], metadata: Mapping[str, str] | None) -> bytes:
    header: dict[str, object] = {}
    if metadata is not None:
        header[_METADATA_KEY] = {str(k): str(v) for k, v in metadata.items()}
    chunks: list[bytes] = []
    offset = 0
    for name, array in tensors.items():
        dtype_name = _safetensors_dtype(array.dtype)
        raw = np.ascontiguousarray(array, dtype=array.dtype.newbyteorder("<")).tobytes()
        header[name] = {
            "dtype": dtype_name,
            "shape": list(array.shape),
            "data_offsets": [offset, offset + len(raw)],
        }
        chunks.append(raw)
        offset += len(raw)
    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    header_bytes += b" " * (-len(header_bytes) % 8)
    return _HEADER_LEN.pack(len(header_bytes)) + header_bytes + b"".join(chunks)


def save_prompt_cache(
    path: str | os.PathLike[str],
    cache: KVCache,
    metadata: Mapping[str, str] | None = None,
) -> None:
    """Write the live part of a cache to a safetensors file."""
    if cache.is_empty():
        logger.warning("saving empty prompt cache to %s", os.fspath(path))

    tensors: dict[str, np.ndarray] = {}
    for l, layer in enumerate(cache.layers()):
        if layer.seq_len <= 0:
            continue
        for h in range(len(layer.keys)):
            tensors[_tensor_name(l, h, "keys")] = layer.cached_keys(h)
            tensors[_tensor_name(l, h, "values")] = layer.cached_values(h)

    payload = _encode(tensors, metadata)
    try:
        with open(path, "wb") as fh:
            fh.write(payload)
    except OSError as exc:
        raise CacheIOError(path, exc) from exc

    logger.info(
        "saved prompt cache (%d layers, seq_len=%d) to %s",
        cache.num_layers(),
        cache.seq_len(),
        os.fspath(path),
    )


def _decode_tensor(name: str, info: object, body: memoryview) -> np.ndarray:
    if not isinstance(info, dict):
        raise CacheSerializationError(f"invalid header entry for {name!r}")
    try:
        dtype_name = info["dtype"]
        shape = [int(dim) for dim in info["shape"]]
        start, end = (int(o) for o in info["data_offsets"])
    except (KeyError, TypeError, ValueError) as exc:
        raise CacheSerializationError(f"invalid header entry for {name!r}: {exc}") from exc
    if not 0 <= start <= end <= len(body):
        raise CacheSerializationError(f"data offsets of {name!r} out of bounds")
    raw = body[start:end]
    count = math.prod(shape)

    if dtype_name == "BF16":
        if len(raw) != count * 2:
            raise CacheSerializationError(f"size mismatch for tensor {name!r}")
        halves = np.frombuffer(raw, dtype="<u2").astype(np.uint32) << 16
        return halves.view(np.float32).reshape(shape)

    dtype = _SAFETENSORS_TO_NUMPY.get(dtype_name)
    if dtype is None:
        raise CacheSerializationError(f"unsupported dtype {dtype_name!r} for {name!r}")
    if len(raw) != count * dtype.itemsize:
        raise CacheSerializationError(f"size mismatch for tensor {name!r}")
    array = np.frombuffer(raw, dtype=dtype.newbyteorder("<")).reshape(shape)
    return array.astype(dtype)


def _decode(data: bytes) -> dict[str, np.ndarray]:
    if len(data) < _HEADER_LEN.size:
        raise CacheSerializationError("file too short for a safetensors header")
    (header_len,) = _HEADER_LEN.unpack_from(data)
    header_end = _HEADER_LEN.size + header_len
    if header_end > len(data):
        raise CacheSerializationError("header length exceeds file size")
    try:
        header = json.loads(data[_HEADER_LEN.size : header_end].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CacheSerializationError(f"invalid header: {exc}") from exc
    if not isinstance(header, dict):
        raise CacheSerializationError("header is not a JSON object")
    body = memoryview(data)[header_end:]
    return {
        name: _decode_tensor(name, info, body)
        for name, info in header.items()
        if name != _METADATA_KEY
    }


def _layer_and_head(name: str) -> tuple[int, int] | None:
    parts = name.split("_")
    if len(parts) >= 4 and parts[0] == "layer" and parts[2] == "head":
        try:
            return int(parts[1]), int(parts[3])
        except ValueError:
            return None
    return None


def load_prompt_cache(path: str | os.PathLike[str]) -> KVCache:
    """Read a cache written by ``save_prompt_cache``."""
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as exc:
        raise CacheIOError(path, exc) from exc

    tensors = _decode(data)

    max_layer = 0
    max_head = 0
    for name in tensors:
        indices = _layer_and_head(name)
        if indices is not None:
            max_layer = max(max_layer, indices[0])
            max_head = max(max_head, indices[1])
    num_layers = max_layer + 1
    num_kv_heads = max_head + 1

    cache = KVCache(num_layers, num_kv_heads)
    for l, layer in enumerate(cache.layers()):
        for h in range(num_kv_heads):
            keys = tensors.get(_tensor_name(l, h, "keys"))
            values = tensors.get(_tensor_name(l, h, "values"))
            if keys is None or values is None:
                continue
            layer.keys.append(keys)
            layer.values.append(values)
            if h == 0 and keys.ndim > 0:
                layer.seq_len = keys.shape[0]

    logger.info(
        "loaded prompt cache (%d layers, seq_len=%d) from %s",
        num_layers,
        cache.seq_len(),
        os.fspath(path),
    )
    return cache


def trim_prompt_cache(cache: KVCache, n: int) -> None:
    """Drop the last ``n`` tokens from every layer; buffers are kept."""
    for layer in cache.layers():
        layer.seq_len = max(layer.seq_len - n, 0)


def can_trim_prompt_cache(cache: KVCache) -> bool:
    """Whether any layer holds tokens."""
    return any(layer.seq_len > 0 for layer in cache.layers())
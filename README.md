# rmlxcache

Key/value cache bookkeeping for transformer inference. The package holds
the data structures an inference server keeps around its attention caches.

| Module | What it provides |
| --- | --- |
| `rmlxcache.paged_cache` | `PagedCacheManager` and `KVCacheBlock`: a fixed pool of token blocks with a free list, reference counts, copy-on-write and content-hash lookup. |
| `rmlxcache.prefix_cache` | `PrefixCacheManager`: a token trie that returns the block ids along the longest cached prefix and evicts least-recently-used blocks, leaves first. |
| `rmlxcache.memory` | `MemoryAwarePrefixCache`: a prefix cache with a memory budget (a fixed estimate of bytes per block, 4096 by default) that evicts when the budget, the block limit or the system's available memory (read with psutil) runs low. |
| `rmlxcache.kv_cache` | `KVCache` and `LayerKVCache`: per-layer, per-head numpy key/value arrays, empty or preallocated. |
| `rmlxcache.rotating_cache` | `RotatingKVCache`: a fixed-size circular float32 cache that keeps the first `keep` tokens pinned. |
| `rmlxcache.quantized_cache` | `QuantizedKVCache`, `quantize_group`, `dequantize_group`: 4-bit or 8-bit min-max quantization with a scale and zero point per group. |
| `rmlxcache.batch_cache` | `BatchKVCache`: numbered slots of per-sequence `KVCache`s with removal and compaction. |
| `rmlxcache.prompt_cache` | `make_prompt_cache`, `save_prompt_cache`, `load_prompt_cache`, `trim_prompt_cache`, `can_trim_prompt_cache`. |
| `rmlxcache.errors` | `CacheError` and its subclasses. |

## Install

```
pip install .
```

Run the tests with:

```
pip install ".[test]"
pytest
```

## Examples

Paged blocks with sharing and copy-on-write:

```python
from rmlxcache.paged_cache import PagedCacheManager

mgr = PagedCacheManager(block_size=16, num_blocks=4)
block = mgr.allocate()              # None once the pool is exhausted
mgr.append_tokens(block, [1, 2, 3])
mgr.increment_ref(block)            # shared by a second sequence
copy = mgr.copy_on_write(block)     # private copy for the writer
assert mgr.get_block(copy).tokens == [1, 2, 3]
assert mgr.ref_count(block) == 1
```

Prefix reuse:

```python
from rmlxcache.prefix_cache import PrefixCacheManager

cache = PrefixCacheManager(max_blocks=100)
cache.insert([10, 20, 30, 40], [0, 1])
assert cache.lookup([10, 20, 30, 40]) == [0, 1]
assert cache.lookup([10, 20]) == [0]
assert cache.evict_lru() == 1
```

A memory budget around a prefix cache:

```python
from rmlxcache.memory import MemoryAwarePrefixCache

cache = MemoryAwarePrefixCache(max_blocks=100, memory_limit_mb=1, bytes_per_block=1024)
cache.insert([1, 2], [10])
assert cache.current_usage_bytes == 1024
```

A rotating cache that pins the first token:

```python
from rmlxcache.rotating_cache import RotatingKVCache

cache = RotatingKVCache(num_layers=1, num_kv_heads=1, head_dim=1, max_size=3, keep=1)
for value in (1.0, 2.0, 3.0, 4.0):
    cache.append(0, [value], [value * 10], 1)
assert cache.get_keys(0)[0].tolist() == [1.0, 3.0, 4.0]
```

8-bit quantized storage:

```python
from rmlxcache.quantized_cache import QuantizedKVCache

cache = QuantizedKVCache(num_layers=1, num_kv_heads=1, head_dim=8, bits=8, group_size=8)
cache.append(0, [float(i) for i in range(8)], [float(i) * 10 for i in range(8)], 1)
keys = cache.get_keys_dequantized(0)   # flat float32 array of 8 values
```

Saving and loading a prompt cache:

```python
import numpy as np
from rmlxcache.prompt_cache import make_prompt_cache, save_prompt_cache, load_prompt_cache

cache = make_prompt_cache(2, 4, 64, max_kv_size=128)
for layer in cache.layers():
    for head in range(4):
        layer.keys[head][:3] = np.ones((3, 64), dtype=np.float32)
        layer.values[head][:3] = np.zeros((3, 64), dtype=np.float32)
    layer.seq_len = 3

save_prompt_cache("prompt.safetensors", cache, {"model": "example"})
restored = load_prompt_cache("prompt.safetensors")
assert restored.seq_len() == 3
```

Files are written in the safetensors layout by the package itself: one
tensor per head, named `layer_{l}_head_{h}_keys` and
`layer_{l}_head_{h}_values`, each of shape `[seq_len, head_dim]`. Only
the live rows are written. On loading, `BF16` tensors come back as float32.

## Errors

Everything raised on purpose derives from `rmlxcache.errors.CacheError`:
`InvalidBlockIdError` for a block id outside the pool,
`CacheCorruptedError` for a double free or a reference added to a free
block, `CapacityExceededError` when appended tokens would overflow a block,
`CacheSerializationError` for an unreadable or unsupported cache file, and
`CacheIOError` when a cache file cannot be read or written. Invalid
arguments to the rotating, quantized and batch caches raise `ValueError`
or `IndexError`.

## What it does not do

The package keeps bookkeeping and plain numpy arrays only. It runs no
model, computes no attention, allocates no GPU memory and offers no
server or command line. `PagedCacheManager` and `PrefixCacheManager`
track block ids, not tensor data, and `MemoryAwarePrefixCache` estimates
its memory use rather than measuring it.
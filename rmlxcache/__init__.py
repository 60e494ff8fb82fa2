"""KV cache bookkeeping for transformer inference: paged, prefix, rotating,
quantized and batch caches, and prompt cache files."""

__version__ = "0.1.0"

__all__ = [
    "batch_cache",
    "errors",
    "kv_cache",
    "memory",
    "paged_cache",
    "prefix_cache",
    "prompt_cache",
    "quantized_cache",
    "rotating_cache",
]
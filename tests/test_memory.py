import sys
from types import SimpleNamespace
from unittest.mock import patch

import psutil

from rmlxcache.memory import MemoryAwarePrefixCache

MIB = 1024 * 1024


def _memory(available, free=0):
    return patch.object(
        psutil, "virtual_memory", return_value=SimpleNamespace(available=available, free=free)
    )


def test_new_memory_aware_cache():
    cache = MemoryAwarePrefixCache(100, 512)
    assert cache.memory_limit_bytes == 512 * MIB
    assert cache.current_usage_bytes == 0
    assert cache.num_blocks() == 0
    assert cache.bytes_per_block == 4096


def test_insert_and_lookup():
    cache = MemoryAwarePrefixCache(100, 512)
    cache.insert([1, 2, 3], [10])
    cache.insert([1, 2, 3, 4, 5, 6], [10, 20])
    assert cache.lookup([1, 2, 3, 4, 5, 6]) == [10, 20]


def test_memory_tracking():
    cache = MemoryAwarePrefixCache(100, 1, 1024)
    cache.insert([1, 2], [10])
    assert cache.current_usage_bytes == 1024
    cache.insert([3, 4], [20])
    assert cache.current_usage_bytes == 2048


def test_eviction_on_zero_limit():
    cache = MemoryAwarePrefixCache(100, 0, 512)
    cache.insert([1, 2], [10])
    assert cache.current_usage_bytes == 512
    assert cache.num_blocks() == 1

    cache.insert([3, 4], [20])
    assert cache.num_blocks() == 1
    assert cache.current_usage_bytes == 512
    assert cache.lookup([1, 2]) == []
    assert cache.lookup([3, 4]) == [20]


def test_eviction_when_budget_reached():
    cache = MemoryAwarePrefixCache(100, 1, MIB)
    cache.insert([1, 2], [10])
    assert cache.current_usage_bytes == MIB
    cache.insert([3, 4], [20])
    assert cache.num_blocks() == 1
    assert cache.current_usage_bytes == MIB
    assert cache.lookup([3, 4]) == [20]


def test_manual_evict():
    cache = MemoryAwarePrefixCache(100, 512, 4096)
    cache.insert([1, 2], [10])
    cache.insert([3, 4], [20])
    assert cache.evict_lru() == 10
    assert cache.current_usage_bytes == 4096


def test_evict_empty():
    cache = MemoryAwarePrefixCache(10, 512)
    assert cache.evict_lru() is None
    assert cache.current_usage_bytes == 0


def test_hit_rate_delegates():
    cache = MemoryAwarePrefixCache(100, 512)
    cache.insert([1, 2, 3], [10])
    cache.lookup([1, 2, 3])
    assert abs(cache.hit_rate() - 1 / 3) < 1e-12
    assert cache.prefix_cache.num_blocks() == 1


def test_available_memory_uses_available():
    with _memory(2048 * MIB, 10 * MIB):
        assert MemoryAwarePrefixCache.available_memory_mb() == 2048


def test_available_memory_falls_back_to_free():
    with _memory(0, 1024 * MIB):
        assert MemoryAwarePrefixCache.available_memory_mb() == 1024


def test_available_memory_unknown_is_unbounded():
    with _memory(0, 0):
        assert MemoryAwarePrefixCache.available_memory_mb() == sys.maxsize


def test_should_evict_false_with_room():
    cache = MemoryAwarePrefixCache(10, 512)
    with _memory(16 * 1024 * MIB):
        assert cache.should_evict() is False


def test_should_evict_when_full():
    cache = MemoryAwarePrefixCache(1, 512)
    cache.insert([1, 2], [10])
    with _memory(16 * 1024 * MIB):
        assert cache.should_evict() is True


def test_should_evict_over_budget():
    cache = MemoryAwarePrefixCache(10, 1, MIB)
    cache.insert([1, 2], [10])
    with _memory(16 * 1024 * MIB):
        assert cache.should_evict() is True


def test_should_evict_on_low_system_memory():
    cache = MemoryAwarePrefixCache(10, 512)
    with _memory(100 * MIB):
        assert cache.should_evict() is True


def test_low_system_memory_threshold_scales_with_limit():
    cache = MemoryAwarePrefixCache(10, 10 * 1024)
    with _memory(1000 * MIB):
        assert cache.should_evict() is True
    with _memory(1100 * MIB):
        assert cache.should_evict() is False
import numpy as np
import pytest

from rmlxcache.quantized_cache import QuantizedKVCache, dequantize_group, quantize_group


def test_new_quantized_cache():
    cache = QuantizedKVCache(32, 8, 128, 4, 32)
    assert cache.seq_len() == 0
    assert cache.num_layers() == 32
    assert cache.bits == 4
    assert cache.group_size == 32


def test_quantize_dequantize_8bit_roundtrip():
    data = [0.0, 0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5]
    packed, scale, zero = quantize_group(data, 8)
    recovered = dequantize_group(packed, scale, zero, 8)
    assert len(recovered) == len(data)
    for orig, rec in zip(data, recovered):
        assert abs(orig - rec) < 0.02


def test_quantize_dequantize_4bit_roundtrip():
    data = [0.0, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0]
    packed, scale, zero = quantize_group(data, 4)
    recovered = dequantize_group(packed, scale, zero, 4)
    assert len(recovered) == len(data)
    for orig, rec in zip(data, recovered):
        assert abs(orig - rec) < 0.6


def test_append_and_retrieve():
    cache = QuantizedKVCache(1, 1, 8, 8, 8)
    keys = [float(i) for i in range(8)]
    values = [float(i) * 10.0 for i in range(8)]
    cache.append(0, keys, values, 1)
    assert cache.seq_len() == 1

    dk = cache.get_keys_dequantized(0)
    assert len(dk) == 8
    for orig, rec in zip(keys, dk):
        assert abs(orig - rec) < 0.1

    dv = cache.get_values_dequantized(0)
    assert len(dv) == 8
    for orig, rec in zip(values, dv):
        assert abs(orig - rec) < 1.0


def test_constant_values():
    data = [42.0] * 8
    packed, scale, zero = quantize_group(data, 8)
    recovered = dequantize_group(packed, scale, zero, 8)
    assert len(recovered) == 8
    for v in recovered:
        assert abs(v - 42.0) < 0.01


def test_invalid_bits():
    with pytest.raises(ValueError, match="bits must be 4 or 8"):
        QuantizedKVCache(1, 1, 8, 3, 8)


def test_quantize_group_invalid_bits():
    with pytest.raises(ValueError, match="bits must be 4 or 8"):
        quantize_group([1.0, 2.0], 2)


def test_8bit_extremes_map_to_full_range():
    packed, scale, zero = quantize_group([0.0, 255.0], 8)
    assert packed == bytes([0, 255])
    assert scale == pytest.approx(1.0)
    assert zero == 0.0


def test_4bit_packs_low_nibble_first():
    packed, scale, zero = quantize_group([0.0, 1.0, 2.0, 3.0], 4)
    assert packed == bytes([0 | (5 << 4), 10 | (15 << 4)])
    assert scale == pytest.approx(0.2)
    assert zero == 0.0


def test_4bit_odd_group_gets_padding_value():
    packed, scale, zero = quantize_group([1.0, 2.0, 3.0], 4)
    assert len(packed) == 2
    recovered = dequantize_group(packed, scale, zero, 4)
    assert len(recovered) == 4
    assert recovered[3] == pytest.approx(1.0)


def test_empty_group():
    assert quantize_group([], 8) == (b"", 0.0, 0.0)


def test_length_mismatch_raises():
    cache = QuantizedKVCache(1, 2, 4, 8, 4)
    with pytest.raises(ValueError, match="keys length mismatch"):
        cache.append(0, [0.0] * 4, [0.0] * 8, 1)
    with pytest.raises(ValueError, match="values length mismatch"):
        cache.append(0, [0.0] * 8, [0.0] * 4, 1)


def test_seq_len_follows_layer_zero():
    cache = QuantizedKVCache(2, 1, 4, 8, 4)
    data = [1.0, 2.0, 3.0, 4.0]
    cache.append(0, data, data, 1)
    cache.append(1, data, data, 1)
    assert cache.seq_len() == 1
    cache.append(0, data * 2, data * 2, 2)
    assert cache.seq_len() == 3


def test_multiple_groups_and_appends_4bit():
    cache = QuantizedKVCache(1, 2, 8, 4, 4)
    rng = np.random.default_rng(0)
    first = rng.uniform(-1.0, 1.0, 2 * 1 * 8).astype(np.float32)
    second = rng.uniform(-1.0, 1.0, 2 * 2 * 8).astype(np.float32)
    cache.append(0, first, first, 1)
    cache.append(0, second, second, 2)
    assert cache.seq_len() == 3
    restored = cache.get_values_dequantized(0)
    expected = np.concatenate([first, second])
    assert restored.shape == expected.shape
    # Each group spans at most 2.0, split into 15 steps.
    assert np.max(np.abs(restored - expected)) <= 2.0 / 15 / 2 + 1e-5


def test_empty_layer_dequantizes_to_nothing():
    cache = QuantizedKVCache(2, 1, 8, 8, 8)
    assert len(cache.get_keys_dequantized(1)) == 0


def test_layer_out_of_range():
    cache = QuantizedKVCache(1, 1, 4, 8, 4)
    with pytest.raises(IndexError):
        cache.append(1, [0.0] * 4, [0.0] * 4, 1)


def test_head_dim_not_divisible_raises():
    with pytest.raises(ValueError, match="divisible by group_size"):
        QuantizedKVCache(1, 1, 10, 8, 4)
from pathlib import Path

import pytest

from rmlxcache.errors import (
    AllocationFailedError,
    CacheCorruptedError,
    CacheError,
    CacheIOError,
    CacheSerializationError,
    CapacityExceededError,
    EvictionFailedError,
    InvalidBlockIdError,
)


@pytest.mark.parametrize(
    "cls, prefix",
    [
        (AllocationFailedError, "allocation failed"),
        (CapacityExceededError, "capacity exceeded"),
        (CacheCorruptedError, "cache corrupted"),
        (EvictionFailedError, "eviction failed"),
        (CacheSerializationError, "serialization error"),
    ],
)
def test_message_prefix(cls, prefix):
    err = cls("details here")
    assert str(err) == f"{prefix}: details here"
    assert err.detail == "details here"


@pytest.mark.parametrize(
    "cls",
    [
        AllocationFailedError,
        CapacityExceededError,
        CacheCorruptedError,
        EvictionFailedError,
        CacheSerializationError,
    ],
)
def test_subclasses_caught_as_cache_error(cls):
    with pytest.raises(CacheError) as excinfo:
        raise cls("boom")
    assert type(excinfo.value) is cls
    assert excinfo.value.detail == "boom"
    assert str(excinfo.value).endswith(": boom")


def test_invalid_block_id_keeps_id():
    err = InvalidBlockIdError(7)
    assert err.block_id == 7
    assert str(err) == "invalid block id: 7"
    assert isinstance(err, CacheError)


def test_io_error_carries_path_and_message():
    err = CacheIOError("some/file.bin", "disk full")
    assert err.path == Path("some/file.bin")
    assert err.message == "disk full"
    assert "disk full" in str(err)
    assert str(err).startswith("io error at ")
    with pytest.raises(CacheError):
        raise err


def test_io_error_accepts_exception_as_message():
    err = CacheIOError(Path("x"), OSError("denied"))
    assert err.message == "denied"
    assert "denied" in str(err)
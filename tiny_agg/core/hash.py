"""
Hashing functions for tiny-agg.

This module provides a dependency free MurmurHash3 implementation used by the
cardinality estimator. Numeric keys are canonicalised before hashing so that
values which compare equal in a database column (``1`` and ``1.0``, ``0.0``
and ``-0.0``) land in the same register.
"""

import math
import struct
from typing import Any

_F64 = struct.Struct("<d")


def key_to_bytes(key: Any) -> bytes:
    """
    Convert a key into the byte string that gets hashed.

    Args:
        key: str, bytes, int, float or any object with a stable repr().

    Returns:
        The canonical byte representation of the key.
    """
    if isinstance(key, bytes):
        return key
    if isinstance(key, str):
        return key.encode("utf-8")
    if isinstance(key, bool):
        return repr(key).encode("utf-8")
    if isinstance(key, float) or (isinstance(key, int) and abs(key) < 2**53):
        value = float(key)
        if value == 0.0:
            value = 0.0  # folds -0.0 onto 0.0
        if math.isnan(value):
            raise ValueError("NaN cannot be hashed as a key")
        return _F64.pack(value)
    return repr(key).encode("utf-8")


def murmurhash3_32(key: Any, seed: int = 0) -> int:
    """
    Hash a key with the x86 32-bit variant of MurmurHash3.

    The seed is part of a HyperLogLog's persisted parameters, so two states
    only agree on register positions when they were built with the same seed.

    Args:
        key: Value to hash, canonicalised with key_to_bytes.
        seed: 32-bit seed.

    Returns:
        Unsigned 32-bit hash.
    """
    key_bytes = key_to_bytes(key)
    length = len(key_bytes)

    c1 = 0xCC9E2D51
    c2 = 0x1B873593

    h = seed & 0xFFFFFFFF

    # Body: 4 byte little endian blocks
    nblocks = length // 4
    for (k,) in struct.iter_unpack("<I", key_bytes[: nblocks * 4]):
        k = (k * c1) & 0xFFFFFFFF
        k = ((k << 15) | (k >> 17)) & 0xFFFFFFFF  # rotl32(k, 15)
        k = (k * c2) & 0xFFFFFFFF

        h ^= k
        h = ((h << 13) | (h >> 19)) & 0xFFFFFFFF  # rotl32(h, 13)
        h = (h * 5 + 0xE6546B64) & 0xFFFFFFFF

    # Tail
    k = 0
    idx = nblocks * 4
    tail = length & 3
    if tail >= 3:
        k ^= key_bytes[idx + 2] << 16
    if tail >= 2:
        k ^= key_bytes[idx + 1] << 8
    if tail >= 1:
        k ^= key_bytes[idx]
        k = (k * c1) & 0xFFFFFFFF
        k = ((k << 15) | (k >> 17)) & 0xFFFFFFFF
        k = (k * c2) & 0xFFFFFFFF
        h ^= k

    # Finalization mix
    h ^= length
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & 0xFFFFFFFF
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & 0xFFFFFFFF
    h ^= h >> 16

    return h & 0xFFFFFFFF

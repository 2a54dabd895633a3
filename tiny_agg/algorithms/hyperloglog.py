"""
HyperLogLog cardinality estimation.

The registers are a plain ``array('B')`` so that the binary payload is the
register array itself; HyperLogLogView exploits that to estimate and merge
straight from serialized bytes without copying them.
"""

import array
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Union

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import BytesLike, ByteReader, ByteWriter, read_header
from tiny_agg.core.errors import InvalidObservation, UnsupportedFormat
from tiny_agg.core.hash import murmurhash3_32

logger = logging.getLogger(__name__)

HASH_BITS = 32
MIN_PRECISION = 4
MAX_PRECISION = 16

# Bias constants keyed by the number of registers (m). From m = 128 up the
# asymptotic form 0.7213 / (1 + 1.079 / m) applies.
_ALPHA_BY_M = {16: 0.673, 32: 0.697, 64: 0.709}


def _alpha(m: int) -> float:
    return _ALPHA_BY_M.get(m, 0.7213 / (1.0 + 1.079 / m))

# Bias correction thresholds (Flajolet et al. 2007)
SMALL_RANGE_FACTOR = 2.5  # raw estimate <= 2.5 * m -> linear counting
LARGE_RANGE_THRESHOLD = (1 << HASH_BITS) / 30.0  # raw estimate > 2^32 / 30


def _count_leading_zeros(x: int, bits: int = 32) -> int:
    """
    Count the number of leading zeros in the binary representation of x.

    Args:
        x: The integer to analyze
        bits: The total number of bits to consider

    Returns:
        The number of leading zeros
    """
    if x == 0:
        return bits
    return bits - x.bit_length()


def estimate_from_registers(registers: Sequence[int], precision: int) -> int:
    """
    Apply the HyperLogLog estimator with small and large range corrections.

    Args:
        registers: The 2^precision register values.
        precision: The precision the registers were built with.

    Returns:
        The estimated number of distinct values.
    """
    m = 1 << precision
    sum_of_inverses = 0.0
    zero_registers = 0
    for register_value in registers:
        sum_of_inverses += math.ldexp(1.0, -register_value)
        if register_value == 0:
            zero_registers += 1

    if zero_registers == m:
        return 0

    raw_estimate = _alpha(m) * m * m / sum_of_inverses

    # Small range: linear counting while empty registers remain
    if raw_estimate <= SMALL_RANGE_FACTOR * m and zero_registers > 0:
        return int(round(m * math.log(m / zero_registers)))

    # Large range: correct for hash collisions in the 32-bit space
    if raw_estimate > LARGE_RANGE_THRESHOLD:
        two_32 = float(1 << HASH_BITS)
        return int(round(-two_32 * math.log(1.0 - raw_estimate / two_32)))

    return int(round(raw_estimate))


def _validate_precision(precision: int) -> None:
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise ValueError("Precision must be an integer")
    if not MIN_PRECISION <= precision <= MAX_PRECISION:
        raise ValueError(
            f"Precision must be between {MIN_PRECISION} and {MAX_PRECISION} (inclusive)"
        )


class HyperLogLog(AggregateState):
    """
    HyperLogLog for cardinality estimation in data streams.

    HyperLogLog estimates the number of distinct values in a stream using
    2^p small registers. Each value is hashed; the low p bits select a
    register and the register keeps the longest run of leading zeros (plus
    one) seen in the remaining bits.

    The precision parameter (p) determines both the accuracy and the memory usage:
    - Memory usage is 2^p bytes of registers
    - The standard error is roughly 1.04/sqrt(2^p)

    For common use cases:
    - p=10: ~1KB, ~3.25% error
    - p=12: ~4KB, ~1.62% error
    - p=14: ~16KB, ~0.81% error
    - p=16: ~64KB, ~0.40% error

    Merging takes the element-wise maximum of the registers, which is exact:
    the merged state equals the state that would have seen both streams.

    References:
        - Flajolet, P., Fusy, E., Gandouet, O., & Meunier, F. (2007).
          HyperLogLog: the analysis of a near-optimal cardinality estimation algorithm.
    """

    KIND = 3

    def __init__(self, precision: int, seed: int):
        """
        Initialize a new HyperLogLog estimator.

        Args:
            precision: The precision parameter (p), between 4 and 16.
            seed: Seed for the hash function. States built with different
                  seeds cannot be merged.

        Raises:
            ValueError: If precision is outside the valid range or the seed
                        is not a 32-bit unsigned integer.
        """
        super().__init__()
        _validate_precision(precision)
        if isinstance(seed, bool) or not isinstance(seed, int) or not 0 <= seed <= 0xFFFFFFFF:
            raise ValueError("Seed must be a 32-bit unsigned integer")

        self._precision = precision
        self._m = 1 << precision
        self._alpha = _alpha(self._m)
        self._index_mask = self._m - 1
        self._seed = seed

        # 'B' typecode gives unsigned char; ranks never exceed 33 - p
        self._registers = array.array("B", bytes(self._m))

    @property
    def precision(self) -> int:
        return self._precision

    @property
    def seed(self) -> int:
        return self._seed

    def params(self) -> Dict[str, Any]:
        return {"precision": self._precision, "seed": self._seed}

    def accumulate(self, observation: Observation) -> None:
        self.update(observation.value)

    def update(self, item: Any) -> None:
        """
        Add a value to the estimator.

        This method:
        1. Hashes the value to a 32-bit integer
        2. Uses the low 'p' bits to pick the register
        3. Counts the leading zeros in the remaining bits, plus one
        4. Keeps the maximum rank seen in that register

        Args:
            item: The value to add. Numbers, strings and bytes are supported.

        Raises:
            InvalidObservation: If the value is None or NaN.
        """
        self._check_mutable()
        if item is None:
            raise InvalidObservation("HyperLogLog cannot count None")
        if isinstance(item, float) and math.isnan(item):
            raise InvalidObservation("HyperLogLog cannot count NaN")

        hash_value = murmurhash3_32(item, seed=self._seed)
        register_index = hash_value & self._index_mask
        remaining_hash = hash_value >> self._precision
        rank = _count_leading_zeros(remaining_hash, HASH_BITS - self._precision) + 1

        self._items_processed += 1
        if rank > self._registers[register_index]:
            self._registers[register_index] = rank

    def estimate_cardinality(self) -> int:
        """
        Estimate the number of distinct values in the stream.

        Returns:
            The estimated cardinality, 0 for an empty state.
        """
        return estimate_from_registers(self._registers, self._precision)

    def finalize(self, **options: Any) -> int:
        """Freeze the state and return the estimated distinct count."""
        self._mark_finalized()
        return self.estimate_cardinality()

    def stderror(self) -> float:
        """The documented relative standard error, 1.04/sqrt(m)."""
        return 1.04 / math.sqrt(self._m)

    def merge(self, other: Union["HyperLogLog", "HyperLogLogView"]) -> "HyperLogLog":
        """
        Merge this HyperLogLog with another one (or with a read-only view).

        Args:
            other: Another HyperLogLog or HyperLogLogView.

        Returns:
            A new merged HyperLogLog estimator.

        Raises:
            IncompatibleState: If the estimators have different precision or seed.
        """
        self._check_compatible(other)

        result = HyperLogLog(precision=self._precision, seed=self._seed)
        result._registers = array.array(
            "B", map(max, self._registers, other.registers)
        )
        result._items_processed = self._items_processed + other.items_processed
        logger.debug(
            "Merged HyperLogLog p=%d (%d + %d observations)",
            self._precision,
            self._items_processed,
            other.items_processed,
        )
        return result

    @property
    def registers(self) -> Sequence[int]:
        return self._registers

    def get_register_values(self) -> List[int]:
        """Get the current values of all registers, for inspection."""
        return list(self._registers)

    def _write_params(self, writer: ByteWriter) -> None:
        writer.u8(self._precision).u32(self._seed)

    def _write_payload(self, writer: ByteWriter) -> None:
        writer.varint(self._items_processed)
        writer.raw(self._registers.tobytes())

    @classmethod
    def _read(cls, reader: ByteReader) -> "HyperLogLog":
        precision, seed, items = _read_fixed(reader)
        estimator = cls(precision=precision, seed=seed)
        registers = reader.raw(estimator._m)
        _check_registers(registers, precision)
        estimator._registers = array.array("B", registers)
        estimator._items_processed = items
        return estimator

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "precision": self._precision,
                "seed": self._seed,
                "registers": list(self._registers),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HyperLogLog":
        """
        Create a HyperLogLog estimator from a dictionary representation.

        Raises:
            UnsupportedFormat: If the dictionary is malformed.
        """
        cls._check_dict(data, "precision", "seed", "registers", "items_processed")
        estimator = cls(precision=data["precision"], seed=data["seed"])
        if len(data["registers"]) != estimator._m:
            raise UnsupportedFormat(
                f"Expected {estimator._m} registers, got {len(data['registers'])}"
            )
        _check_registers(data["registers"], estimator._precision)
        estimator._registers = array.array("B", data["registers"])
        estimator._items_processed = data["items_processed"]
        return estimator

    def error_bounds(self) -> Dict[str, float]:
        """
        Calculate the theoretical error bounds for this estimator.

        Returns:
            A dictionary with the error bounds:
            - relative_error: The standard error (approximately 1.04/sqrt(m))
            - confidence_95pct: Error range for 95% confidence (2 sigma)
            - confidence_99pct: Error range for 99% confidence (3 sigma)
        """
        std_error = self.stderror()
        return {
            "relative_error": std_error,
            "confidence_95pct": std_error * 1.96,
            "confidence_99pct": std_error * 2.58,
        }

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update(
            {
                "precision": self._precision,
                "num_registers": self._m,
                "alpha_value": self._alpha,
                "empty_registers": self._registers.count(0),
                "max_register_value": max(self._registers),
                "estimate": self.estimate_cardinality(),
            }
        )
        return stats


def _read_fixed(reader: ByteReader):
    precision = reader.u8()
    try:
        _validate_precision(precision)
    except ValueError as e:
        raise UnsupportedFormat(str(e)) from e
    seed = reader.u32()
    items = reader.varint()
    return precision, seed, items


def _check_registers(registers: Sequence[int], precision: int) -> None:
    limit = HASH_BITS - precision + 1
    if any(r > limit for r in registers):
        raise UnsupportedFormat(f"Register value exceeds the maximum rank {limit}")


class HyperLogLogView:
    """
    Read-only view over a serialized HyperLogLog.

    The header is validated on construction; the registers stay a zero-copy
    memoryview slice of the caller's buffer. A view can be finalized directly
    or passed as the other argument of HyperLogLog.merge().
    """

    KIND = HyperLogLog.KIND
    FORMAT_VERSION = HyperLogLog.FORMAT_VERSION

    def __init__(self, data: BytesLike):
        reader = read_header(data, self.KIND, self.FORMAT_VERSION)
        self._precision, self._seed, self._items = _read_fixed(reader)
        self._registers = reader.raw(1 << self._precision)
        reader.expect_end()

    def params(self) -> Dict[str, Any]:
        return {"precision": self._precision, "seed": self._seed}

    @property
    def registers(self) -> memoryview:
        return self._registers

    @property
    def items_processed(self) -> int:
        return self._items

    def estimate_cardinality(self) -> int:
        return estimate_from_registers(self._registers, self._precision)

    def finalize(self, **options: Any) -> int:
        return self.estimate_cardinality()

    def to_state(self) -> HyperLogLog:
        """Copy the view into an owned, mutable HyperLogLog."""
        state = HyperLogLog(precision=self._precision, seed=self._seed)
        _check_registers(self._registers, self._precision)
        state._registers = array.array("B", self._registers)
        state._items_processed = self._items
        return state

"""
UDDSketch: uniform collapsing DDSketch.

Values are counted in logarithmic buckets so that every reconstructed quantile
is within a relative error ``alpha`` of the true value, whatever the shape of
the distribution. When the bucket count exceeds ``max_buckets`` the sketch
collapses pairs of neighbouring buckets, squaring gamma and growing alpha to
``2*alpha / (1 + alpha^2)``; the error guarantee degrades but memory stays
bounded.

References:
    - Epicoco, I., Melle, C., Cafaro, M., Pulimeno, M., & Morleo, G. (2020).
      UDDSketch: Accurate Tracking of Quantiles in Data Streams.
"""

import logging
import math
import sys
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import BytesLike, ByteReader, ByteWriter, read_header
from tiny_agg.core.errors import ResourceExceeded, UnsupportedFormat
from tiny_agg.core.time_series import check_value

logger = logging.getLogger(__name__)

Bucket = Tuple[int, int]  # (key, count)

# Repeated ceil(k / 2) ends at keys {0, 1} in each store, so collapsing can
# always get back under four buckets.
MIN_BUCKETS = 4

_MAX_LOG_GAMMA = math.log(sys.float_info.max)


def _gamma(alpha: float) -> float:
    return (1.0 + alpha) / (1.0 - alpha)


def _max_compactions(alpha: float) -> int:
    """Deepest collapse level whose gamma is still a finite float."""
    return int(math.log2(_MAX_LOG_GAMMA / math.log(_gamma(alpha))))


def _collapsed_alpha(alpha: float, compactions: int) -> float:
    for _ in range(compactions):
        alpha = 2.0 * alpha / (1.0 + alpha * alpha)
    return alpha


def _compact_key(key: int) -> int:
    # ceil(key / 2) for negative keys as well
    return -((-key) // 2)


def _compact(buckets: Dict[int, int], times: int = 1) -> Dict[int, int]:
    for _ in range(times):
        collapsed: Dict[int, int] = {}
        for key, count in buckets.items():
            new_key = _compact_key(key)
            collapsed[new_key] = collapsed.get(new_key, 0) + count
        buckets = collapsed
    return buckets


def _collapse_to_fit(
    negative: Dict[int, int],
    positive: Dict[int, int],
    level: int,
    alpha: float,
    max_buckets: int,
) -> Tuple[Dict[int, int], Dict[int, int], int]:
    """
    Collapse both stores until they hold at most max_buckets buckets.

    Returns the new stores and collapse level; the inputs are not modified.

    Raises:
        ResourceExceeded: If the required level would overflow gamma.
    """
    start = level
    while len(negative) + len(positive) > max_buckets:
        negative = _compact(negative)
        positive = _compact(positive)
        level += 1
    if level > _max_compactions(alpha):
        raise ResourceExceeded(
            f"UDDSketch would need {level} collapses, gamma overflows beyond "
            f"{_max_compactions(alpha)}"
        )
    if level != start:
        logger.debug(
            "UDDSketch collapsed from level %d to %d (%d buckets)",
            start,
            level,
            len(negative) + len(positive),
        )
    return negative, positive, level


def _validate_params(alpha: float, max_buckets: int) -> None:
    if isinstance(alpha, bool) or not isinstance(alpha, (int, float)):
        raise ValueError("Alpha must be a number")
    if not (0.0 < alpha < 1.0):
        raise ValueError("Alpha must be between 0 and 1")
    if isinstance(max_buckets, bool) or not isinstance(max_buckets, int):
        raise ValueError("max_buckets must be an integer")
    if max_buckets < MIN_BUCKETS:
        raise ValueError(f"max_buckets must be at least {MIN_BUCKETS}")


class _BucketMath:
    """Key and value arithmetic for a given initial alpha and collapse level."""

    def __init__(self, alpha: float, compactions: int):
        self.log_gamma = math.log(_gamma(alpha)) * (1 << compactions)
        self.gamma = math.exp(self.log_gamma)
        self.alpha = _collapsed_alpha(alpha, compactions)

    def key(self, magnitude: float) -> int:
        return math.ceil(math.log(magnitude) / self.log_gamma)

    def value(self, key: int) -> float:
        # Midpoint (in the relative error sense) of (gamma^(k-1), gamma^k]
        exponent = key * self.log_gamma
        if exponent > _MAX_LOG_GAMMA:
            return math.inf
        return 2.0 * math.exp(exponent) / (1.0 + self.gamma)


def _ordered_buckets(
    negative: List[Bucket], zero_count: int, positive: List[Bucket]
) -> Iterator[Tuple[int, int, int]]:
    """Yield (sign, key, count) from the smallest value to the largest."""
    for key, count in sorted(negative, reverse=True):
        yield -1, key, count
    if zero_count:
        yield 0, 0, zero_count
    for key, count in sorted(positive):
        yield 1, key, count


def _quantile(
    bucket_math: _BucketMath,
    negative: List[Bucket],
    zero_count: int,
    positive: List[Bucket],
    total: int,
    quantile: float,
) -> float:
    if not (0.0 <= quantile <= 1.0):
        raise ValueError("Quantile must be between 0.0 and 1.0")
    if total == 0:
        return float("nan")

    remaining = min(int(total * quantile), total - 1) + 1
    for sign, key, count in _ordered_buckets(negative, zero_count, positive):
        remaining -= count
        if remaining <= 0:
            if sign == 0:
                return 0.0
            return sign * bucket_math.value(key)
    raise UnsupportedFormat("Bucket counts do not add up to the value count")


def _rank(
    bucket_math: _BucketMath,
    negative: List[Bucket],
    zero_count: int,
    positive: List[Bucket],
    total: int,
    value: float,
) -> float:
    if total == 0:
        return float("nan")
    if value > 0:
        target = (1, bucket_math.key(value))
    elif value < 0:
        target = (-1, -bucket_math.key(-value))
    else:
        target = (0, 0)

    below = 0
    for sign, key, count in _ordered_buckets(negative, zero_count, positive):
        position = (sign, -key if sign < 0 else key)
        if position > target:
            break
        below += count
    return below / total


class UDDSketch(AggregateState):
    """
    UDDSketch for quantile estimation with a relative error guarantee.

    A positive value v lands in bucket ``ceil(log_gamma(v))``; negative
    values use the same rule on |v| in a separate store and zeros are
    counted apart. The estimate for a bucket is ``2 * gamma^k / (1 + gamma)``,
    whose relative distance to any value in the bucket is at most alpha.

    Merging adds bucket counts after bringing both sketches to the same
    collapse level. Because collapsing commutes with addition, merging is
    exact: any partitioning of the input yields the same buckets as a single
    sketch over all of it.
    """

    KIND = 2

    def __init__(self, alpha: float, max_buckets: int):
        """
        Initialize an empty sketch.

        Args:
            alpha: Initial relative error bound, between 0 and 1.
            max_buckets: Maximum number of non-zero buckets before collapsing.

        Raises:
            ValueError: If a parameter is out of range.
        """
        super().__init__()
        _validate_params(alpha, max_buckets)
        self._initial_alpha = float(alpha)
        self._max_buckets = max_buckets
        self._compactions = 0
        self._math = _BucketMath(self._initial_alpha, 0)
        self._negative: Dict[int, int] = {}
        self._positive: Dict[int, int] = {}
        self._zero_count = 0
        self._sum = 0.0

    def params(self) -> Dict[str, Any]:
        return {"alpha": self._initial_alpha, "max_buckets": self._max_buckets}

    @property
    def compactions(self) -> int:
        return self._compactions

    @property
    def zero_count(self) -> int:
        return self._zero_count

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def num_buckets(self) -> int:
        return len(self._negative) + len(self._positive)

    def error(self) -> float:
        """The relative error currently guaranteed (alpha after collapses)."""
        return self._math.alpha

    def iter_negative(self) -> Iterator[Bucket]:
        return iter(sorted(self._negative.items()))

    def iter_positive(self) -> Iterator[Bucket]:
        return iter(sorted(self._positive.items()))

    def accumulate(self, observation: Observation) -> None:
        self.update(observation.value)

    def update(self, item: float) -> None:
        """
        Add a value to the sketch.

        Raises:
            InvalidObservation: If the value is not a finite number.
            ResourceExceeded: If fitting the value would overflow gamma.
        """
        self._check_mutable()
        value = check_value(item)

        if value == 0:
            self._zero_count += 1
        else:
            key = self._math.key(abs(value))
            is_positive = value > 0
            store = self._positive if is_positive else self._negative
            if key in store or self.num_buckets < self._max_buckets:
                store[key] = store.get(key, 0) + 1
            else:
                negative = dict(self._negative)
                positive = dict(self._positive)
                (positive if is_positive else negative)[key] = 1
                self._install(
                    *_collapse_to_fit(
                        negative,
                        positive,
                        self._compactions,
                        self._initial_alpha,
                        self._max_buckets,
                    )
                )
        self._items_processed += 1
        self._sum += value

    def _install(
        self, negative: Dict[int, int], positive: Dict[int, int], level: int
    ) -> None:
        self._math = _BucketMath(self._initial_alpha, level)
        self._negative = negative
        self._positive = positive
        self._compactions = level

    def quantile(self, quantile: float) -> float:
        """
        Estimate the value at the given quantile.

        The rank used is ``floor(quantile * count)`` (0-based, clamped to the
        last value).

        Returns:
            The estimated value, NaN for an empty sketch.
        """
        return _quantile(
            self._math,
            list(self._negative.items()),
            self._zero_count,
            list(self._positive.items()),
            self._items_processed,
            quantile,
        )

    def rank(self, value: float) -> float:
        """Estimate the fraction of values less than or equal to value."""
        return _rank(
            self._math,
            list(self._negative.items()),
            self._zero_count,
            list(self._positive.items()),
            self._items_processed,
            check_value(value),
        )

    def mean(self) -> float:
        if self._items_processed == 0:
            return float("nan")
        return self._sum / self._items_processed

    def finalize(self, quantile: Optional[float] = None, **options: Any) -> Any:
        """
        Freeze the sketch. With ``quantile`` return that quantile, otherwise
        return the sketch for repeated accessor calls.
        """
        self._mark_finalized()
        if quantile is None:
            return self
        return self.quantile(quantile)

    def merge(self, other: Union["UDDSketch", "UDDSketchView"]) -> "UDDSketch":
        """
        Merge two sketches by adding bucket counts.

        The sketch with fewer collapses is first collapsed to the level of the
        other; the sum is then collapsed further if it exceeds max_buckets.

        Raises:
            IncompatibleState: If alpha or max_buckets differ.
            ResourceExceeded: If the merged sketch would overflow gamma.
        """
        self._check_compatible(other)

        level = max(self._compactions, other.compactions)
        negative: Dict[int, int] = {}
        positive: Dict[int, int] = {}
        for source in (self, other):
            shift = level - source.compactions
            for target, buckets in (
                (negative, dict(source.iter_negative())),
                (positive, dict(source.iter_positive())),
            ):
                for key, count in _compact(buckets, shift).items():
                    target[key] = target.get(key, 0) + count

        merged = UDDSketch(self._initial_alpha, self._max_buckets)
        merged._install(
            *_collapse_to_fit(
                negative, positive, level, self._initial_alpha, self._max_buckets
            )
        )
        merged._zero_count = self._zero_count + other.zero_count
        merged._sum = self._sum + other.sum
        merged._items_processed = self._items_processed + other.items_processed
        return merged

    def _write_params(self, writer: ByteWriter) -> None:
        writer.f64(self._initial_alpha).varint(self._max_buckets)

    def _write_payload(self, writer: ByteWriter) -> None:
        writer.varint(self._compactions)
        writer.varint(self._items_processed)
        writer.varint(self._zero_count)
        writer.f64(self._sum)
        for store in (self._negative, self._positive):
            keys = sorted(store)
            writer.deltas(keys)
            for key in keys:
                writer.varint(store[key])

    @classmethod
    def _read(cls, reader: ByteReader) -> "UDDSketch":
        header = _read_fixed(reader)
        alpha, max_buckets, compactions, items, zero_count, total = header
        sketch = cls(alpha, max_buckets)
        sketch._compactions = compactions
        sketch._math = _BucketMath(alpha, compactions)
        sketch._zero_count = zero_count
        sketch._sum = total
        for attr in ("_negative", "_positive"):
            keys = reader.deltas()
            setattr(sketch, attr, {key: reader.varint() for key in keys})
        sketch._items_processed = items
        _check_counts(sketch, items)
        return sketch

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "alpha": self._initial_alpha,
                "max_buckets": self._max_buckets,
                "compactions": self._compactions,
                "zero_count": self._zero_count,
                "sum": self._sum,
                "negative": [[k, c] for k, c in self.iter_negative()],
                "positive": [[k, c] for k, c in self.iter_positive()],
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UDDSketch":
        cls._check_dict(
            data,
            "alpha",
            "max_buckets",
            "compactions",
            "zero_count",
            "sum",
            "negative",
            "positive",
            "items_processed",
        )
        sketch = cls(data["alpha"], data["max_buckets"])
        _check_level(sketch._initial_alpha, data["compactions"])
        sketch._compactions = data["compactions"]
        sketch._math = _BucketMath(sketch._initial_alpha, sketch._compactions)
        sketch._zero_count = data["zero_count"]
        sketch._sum = data["sum"]
        sketch._negative = {int(k): int(c) for k, c in data["negative"]}
        sketch._positive = {int(k): int(c) for k, c in data["positive"]}
        sketch._items_processed = data["items_processed"]
        _check_counts(sketch, sketch._items_processed)
        return sketch

    def error_bounds(self) -> Dict[str, float]:
        return {"relative_error": self.error(), "initial_alpha": self._initial_alpha}

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update(
            {
                "max_buckets": self._max_buckets,
                "num_buckets": self.num_buckets,
                "compactions": self._compactions,
                "zero_count": self._zero_count,
            }
        )
        return stats


def _check_counts(sketch: UDDSketch, items: int) -> None:
    counted = (
        sum(sketch._negative.values())
        + sum(sketch._positive.values())
        + sketch._zero_count
    )
    if counted != items:
        raise UnsupportedFormat(f"Bucket counts sum to {counted}, expected {items}")


def _read_fixed(reader: ByteReader):
    alpha = reader.f64()
    max_buckets = reader.varint()
    try:
        _validate_params(alpha, max_buckets)
    except ValueError as e:
        raise UnsupportedFormat(str(e)) from e
    compactions = reader.varint()
    _check_level(alpha, compactions)
    return (
        alpha,
        max_buckets,
        compactions,
        reader.varint(),
        reader.varint(),
        reader.f64(),
    )


def _check_level(alpha: float, compactions: Any) -> None:
    if isinstance(compactions, bool) or not isinstance(compactions, int):
        raise UnsupportedFormat("Collapse level must be an integer")
    if not 0 <= compactions <= _max_compactions(alpha):
        raise UnsupportedFormat(f"Invalid collapse level {compactions}")


class UDDSketchView:
    """
    Read-only view over a serialized UDDSketch.

    The header and scalar fields are read on construction; bucket keys and
    counts are decoded lazily from the borrowed buffer.
    """

    KIND = UDDSketch.KIND
    FORMAT_VERSION = UDDSketch.FORMAT_VERSION

    def __init__(self, data: BytesLike):
        reader = read_header(data, self.KIND, self.FORMAT_VERSION)
        self._data = data
        (
            self._alpha,
            self._max_buckets,
            self.compactions,
            self._items,
            self.zero_count,
            self.sum,
        ) = _read_fixed(reader)
        self._math = _BucketMath(self._alpha, self.compactions)
        self._sections = []
        for _ in range(2):
            count = reader.varint()
            self._sections.append((reader.position, count))
            reader.skip_varints(2 * count)
        reader.expect_end()

    def params(self) -> Dict[str, Any]:
        return {"alpha": self._alpha, "max_buckets": self._max_buckets}

    @property
    def items_processed(self) -> int:
        return self._items

    def _iter_section(self, index: int) -> Iterator[Bucket]:
        offset, count = self._sections[index]
        keys = ByteReader(self._data, offset)
        key_list = list(keys.iter_deltas(count))
        for key in key_list:
            yield key, keys.varint()

    def iter_negative(self) -> Iterator[Bucket]:
        return self._iter_section(0)

    def iter_positive(self) -> Iterator[Bucket]:
        return self._iter_section(1)

    def error(self) -> float:
        return self._math.alpha

    def quantile(self, quantile: float) -> float:
        return _quantile(
            self._math,
            list(self.iter_negative()),
            self.zero_count,
            list(self.iter_positive()),
            self._items,
            quantile,
        )

    def rank(self, value: float) -> float:
        return _rank(
            self._math,
            list(self.iter_negative()),
            self.zero_count,
            list(self.iter_positive()),
            self._items,
            value,
        )

    def finalize(self, quantile: Optional[float] = None, **options: Any) -> Any:
        if quantile is None:
            return self
        return self.quantile(quantile)

    def to_state(self) -> UDDSketch:
        return UDDSketch.from_bytes(self._data)

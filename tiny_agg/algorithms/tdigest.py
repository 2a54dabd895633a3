"""
T-Digest quantile sketch.

Values are buffered and periodically folded into a bounded list of weighted
centroids. Cluster sizes are governed by the k1 scale function, which keeps
clusters small near the tails and lets them grow toward the median, so tail
quantiles stay accurate.
"""

import bisect
import logging
import math
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import BytesLike, ByteReader, ByteWriter, read_header
from tiny_agg.core.errors import ResourceExceeded, UnsupportedFormat
from tiny_agg.core.time_series import check_value

logger = logging.getLogger(__name__)

MIN_COMPRESSION = 20
BUFFER_FACTOR = 5


class _Centroid:
    """Internal representation of a centroid in the T-Digest algorithm."""

    __slots__ = ["mean", "weight"]

    def __init__(self, mean: float, weight: float = 1.0):
        """Initialize a centroid with a mean value and weight."""
        if weight < 0:
            raise ValueError("Centroid weight cannot be negative")
        self.mean = float(mean)
        self.weight = float(weight)

    def add(self, other: "_Centroid") -> None:
        """Absorb another centroid, keeping the weighted mean."""
        self.weight += other.weight
        self.mean += (other.mean - self.mean) * other.weight / self.weight

    def sort_key(self) -> Tuple[float, float]:
        return (self.mean, self.weight)

    def __repr__(self) -> str:
        return f"Centroid(mean={self.mean:.4g}, weight={self.weight:.4g})"

    def to_dict(self) -> Dict[str, float]:
        return {"mean": self.mean, "weight": self.weight}

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "_Centroid":
        if "mean" not in data or "weight" not in data:
            raise UnsupportedFormat("Centroid dictionary missing 'mean' or 'weight'")
        if data["weight"] < 0:
            raise UnsupportedFormat(
                f"Invalid serialized data: Centroid weight cannot be negative ({data['weight']})"
            )
        return cls(mean=data["mean"], weight=data["weight"])


def _anchors(
    centroids: Iterable[Tuple[float, float]], min_val: float, max_val: float
) -> Tuple[List[float], List[float]]:
    """
    Build the piecewise linear map between cumulative weight and value.

    The first anchor is (0, min), each centroid contributes (midpoint weight,
    mean) and the last anchor is (total, max).
    """
    weights = [0.0]
    values = [min_val]
    cumulative = 0.0
    for mean, weight in centroids:
        weights.append(cumulative + weight / 2.0)
        values.append(mean)
        cumulative += weight
    weights.append(cumulative)
    values.append(max_val)
    return weights, values


def _quantile(
    centroids: Iterable[Tuple[float, float]],
    total_weight: float,
    min_val: float,
    max_val: float,
    quantile: float,
) -> float:
    if not (0.0 <= quantile <= 1.0):
        raise ValueError("Quantile must be between 0.0 and 1.0")
    if total_weight == 0:
        return float("nan")
    if quantile == 0.0:
        return min_val
    if quantile == 1.0:
        return max_val

    weights, values = _anchors(centroids, min_val, max_val)
    target_weight = quantile * total_weight
    i = bisect.bisect_left(weights, target_weight)
    if i == 0:
        return values[0]
    weight_diff = weights[i] - weights[i - 1]
    if weight_diff <= 1e-12:
        return values[i]
    fraction = (target_weight - weights[i - 1]) / weight_diff
    fraction = max(0.0, min(1.0, fraction))
    return values[i - 1] + fraction * (values[i] - values[i - 1])


def _rank(
    centroids: Iterable[Tuple[float, float]],
    total_weight: float,
    min_val: float,
    max_val: float,
    value: float,
) -> float:
    if total_weight == 0:
        return float("nan")
    if value < min_val:
        return 0.0
    if value >= max_val:
        return 1.0

    weights, values = _anchors(centroids, min_val, max_val)
    i = bisect.bisect_right(values, value)
    value_diff = values[i] - values[i - 1]
    if value_diff <= 0:
        return weights[i] / total_weight
    fraction = (value - values[i - 1]) / value_diff
    return (weights[i - 1] + fraction * (weights[i] - weights[i - 1])) / total_weight


def _validate_compression(compression: int) -> None:
    if isinstance(compression, bool) or not isinstance(compression, int):
        raise ValueError("Compression factor must be an integer >= 20")
    if compression < MIN_COMPRESSION:
        raise ValueError("Compression factor must be an integer >= 20")


class TDigest(AggregateState):
    """
    T-Digest for efficient and accurate quantile estimation over data streams.

    The T-Digest (Dunning, 2019) provides accurate quantile estimates with
    bounded memory. Key properties:

    1. Memory is controlled by the compression parameter, not data size:
       after compression there are at most ``compression + 1`` centroids
    2. Accuracy is non-uniform: extreme quantiles are more precise
    3. Mergeable: digests of separate partitions combine into a digest of
       the union, equivalent to a direct digest within the error bound but
       not bit-for-bit identical

    Adjacent clusters are merged only while the k1 scale function
    ``k(q) = compression / (2*pi) * asin(2q - 1)`` spans at most 1 across
    the combined cluster.
    """

    KIND = 1

    def __init__(self, compression: int):
        """
        Initialize a TDigest sketch.

        Args:
            compression: Controls accuracy and memory usage. Higher values
                improve accuracy at the cost of more centroids. Must be an
                integer >= 20.

        Raises:
            ValueError: If compression is less than 20 or not an integer.
        """
        super().__init__()
        _validate_compression(compression)

        self.compression: int = compression
        self._centroids: List[_Centroid] = []
        self._unmerged_buffer: List[float] = []
        self._buffer_size: int = BUFFER_FACTOR * compression
        self._min_val: Optional[float] = None
        self._max_val: Optional[float] = None

    def params(self) -> Dict[str, Any]:
        return {"compression": self.compression}

    def accumulate(self, observation: Observation) -> None:
        self.update(observation.value)

    def update(self, item: float) -> None:
        """
        Add a value to the sketch.

        The value is initially added to a buffer. When the buffer reaches
        a threshold size, values are folded into the centroids.

        Args:
            item: Finite numeric value to add.

        Raises:
            InvalidObservation: If the value is not finite.
        """
        self._check_mutable()
        item = check_value(item)

        self._items_processed += 1
        self._unmerged_buffer.append(item)

        if self._min_val is None or item < self._min_val:
            self._min_val = item
        if self._max_val is None or item > self._max_val:
            self._max_val = item

        if len(self._unmerged_buffer) >= self._buffer_size:
            self._process_buffer()

    def _process_buffer(self) -> None:
        """Fold buffered values into the centroids."""
        if not self._unmerged_buffer:
            return
        self._centroids.extend(_Centroid(val) for val in self._unmerged_buffer)
        self._unmerged_buffer = []
        self._compress()

    def _k(self, q: float) -> float:
        return self.compression / (2.0 * math.pi) * math.asin(2.0 * q - 1.0)

    def _compress(self) -> None:
        self._centroids = self._cluster(self._centroids)

    def _cluster(self, centroids: List[_Centroid]) -> List[_Centroid]:
        """
        Re-cluster centroids in one sorted pass and return the new list.

        Centroids are visited in (mean, weight) order and absorbed into the
        current cluster while the k-span of the grown cluster stays <= 1.
        The pass is deterministic for a given input multiset and leaves the
        given centroids untouched.

        Raises:
            ResourceExceeded: If the result breaks the centroid cap.
        """
        if len(centroids) <= 1:
            return list(centroids)

        ordered = sorted(centroids, key=_Centroid.sort_key)
        total = sum(c.weight for c in ordered)

        merged: List[_Centroid] = []
        current = _Centroid(ordered[0].mean, ordered[0].weight)
        weight_before = 0.0
        k_lower = self._k(0.0)
        for c in ordered[1:]:
            q_upper = min(1.0, (weight_before + current.weight + c.weight) / total)
            if self._k(q_upper) - k_lower <= 1.0:
                current.add(c)
            else:
                merged.append(current)
                weight_before += current.weight
                k_lower = self._k(min(1.0, weight_before / total))
                current = _Centroid(c.mean, c.weight)
        merged.append(current)

        if len(merged) > 2 * self.compression:
            raise ResourceExceeded(
                f"T-Digest produced {len(merged)} centroids, cap is {2 * self.compression}"
            )
        logger.debug(
            "Compressed T-Digest from %d to %d centroids", len(ordered), len(merged)
        )
        return merged

    def iter_centroids(self) -> Iterator[Tuple[float, float]]:
        """
        Yield (mean, weight) for every centroid, buffered values included as
        unit weight centroids. Does not modify the sketch.
        """
        for c in self._centroids:
            yield c.mean, c.weight
        for val in self._unmerged_buffer:
            yield val, 1.0

    def _clustered(self) -> List[_Centroid]:
        # Buffered values are clustered into a copy so that reads and
        # serialization never change how later updates are clustered.
        if not self._unmerged_buffer:
            return self._centroids
        pending = self._centroids + [_Centroid(val) for val in self._unmerged_buffer]
        return self._cluster(pending)

    def _sorted_centroids(self) -> List[Tuple[float, float]]:
        return [(c.mean, c.weight) for c in self._clustered()]

    @property
    def total_weight(self) -> float:
        return float(self._items_processed)

    @property
    def min(self) -> Optional[float]:
        return self._min_val

    @property
    def max(self) -> Optional[float]:
        return self._max_val

    def quantile(self, quantile: float) -> float:
        """
        Estimate the value at the given quantile.

        Args:
            quantile: Target quantile between 0.0 and 1.0. 0.0 returns the
                      exact minimum and 1.0 the exact maximum.

        Returns:
            Estimated value at the specified quantile, NaN if the sketch is empty.

        Raises:
            ValueError: If quantile is not between 0.0 and 1.0.
        """
        if self._items_processed == 0:
            return _quantile([], 0, 0.0, 0.0, quantile)
        return _quantile(
            self._sorted_centroids(),
            self.total_weight,
            self._min_val,
            self._max_val,
            quantile,
        )

    def rank(self, value: float) -> float:
        """Estimate the fraction of observations less than or equal to value."""
        if self._items_processed == 0:
            return float("nan")
        return _rank(
            self._sorted_centroids(),
            self.total_weight,
            self._min_val,
            self._max_val,
            check_value(value),
        )

    def mean(self) -> float:
        """Exact mean of the observations (centroids preserve the sum)."""
        if self._items_processed == 0:
            return float("nan")
        return sum(m * w for m, w in self.iter_centroids()) / self.total_weight

    def finalize(self, quantile: Optional[float] = None, **options: Any) -> Any:
        """
        Freeze the sketch. With ``quantile`` return that quantile, otherwise
        return the sketch itself for repeated accessor calls.
        """
        self._process_buffer()
        self._mark_finalized()
        if quantile is None:
            return self
        return self.quantile(quantile)

    def merge(self, other: Union["TDigest", "TDigestView"]) -> "TDigest":
        """
        Merge this sketch with another T-Digest (or a read-only view).

        Creates a new sketch that represents the combined data from both
        inputs; the inputs are not modified.

        Raises:
            IncompatibleState: If the compression parameters don't match.
        """
        self._check_compatible(other)

        merged = TDigest(compression=self.compression)
        merged._centroids = [
            _Centroid(mean, weight)
            for source in (self, other)
            for mean, weight in source.iter_centroids()
        ]
        merged._items_processed = self._items_processed + other.items_processed

        bounds = [b for b in (self.min, other.min) if b is not None]
        merged._min_val = min(bounds) if bounds else None
        bounds = [b for b in (self.max, other.max) if b is not None]
        merged._max_val = max(bounds) if bounds else None

        merged._compress()
        return merged

    def get_centroids(self) -> List[Tuple[float, float]]:
        """Return the current centroids as (mean, weight) tuples, sorted by mean."""
        return self._sorted_centroids()

    def __len__(self) -> int:
        """Return the number of values processed by the sketch."""
        return self._items_processed

    @property
    def is_empty(self) -> bool:
        return self._items_processed == 0

    def _write_params(self, writer: ByteWriter) -> None:
        writer.varint(self.compression)

    def _write_payload(self, writer: ByteWriter) -> None:
        centroids = self._sorted_centroids()
        writer.varint(self._items_processed)
        writer.f64(self._min_val if self._min_val is not None else float("nan"))
        writer.f64(self._max_val if self._max_val is not None else float("nan"))
        writer.float_deltas([mean for mean, _ in centroids])
        for _, weight in centroids:
            if not weight.is_integer():
                raise ResourceExceeded(f"Centroid weight {weight} is not integral")
            writer.varint(int(weight))

    @classmethod
    def _read(cls, reader: ByteReader) -> "TDigest":
        compression, items, min_val, max_val = _read_fixed(reader)
        digest = cls(compression=compression)
        means = reader.float_deltas()
        weights = [float(reader.varint()) for _ in means]
        if sum(weights) != items:
            raise UnsupportedFormat(
                f"Centroid weights sum to {sum(weights)}, expected {items}"
            )
        digest._centroids = [_Centroid(m, w) for m, w in zip(means, weights)]
        digest._items_processed = items
        if items:
            digest._min_val = min_val
            digest._max_val = max_val
        return digest

    def to_dict(self) -> Dict[str, Any]:
        state = self._base_dict()
        state.update(
            {
                "compression": self.compression,
                "min_val": self._min_val,
                "max_val": self._max_val,
                "centroids": [c.to_dict() for c in self._clustered()],
            }
        )
        return state

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TDigest":
        """
        Deserialize a T-Digest from a dictionary representation.

        Raises:
            UnsupportedFormat: If the dictionary is missing keys or has invalid data.
        """
        cls._check_dict(data, "compression", "centroids", "items_processed")
        instance = cls(compression=data["compression"])
        instance._items_processed = data["items_processed"]
        instance._min_val = data.get("min_val")
        instance._max_val = data.get("max_val")
        instance._centroids = [_Centroid.from_dict(c) for c in data["centroids"]]
        instance._centroids.sort(key=_Centroid.sort_key)
        return instance

    def error_bounds(self) -> Dict[str, float]:
        """
        Approximate rank error at a few quantiles.

        T-Digest error is non-uniform; the rank error at quantile q is roughly
        proportional to q(1-q)/compression.
        """
        c = self.compression
        return {
            f"rank_error_q{q:g}": q * (1 - q) / c * 4
            for q in (0.01, 0.5, 0.99)
        }

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        centroids = self._sorted_centroids()
        stats.update(
            {
                "compression": self.compression,
                "num_centroids": len(centroids),
                "buffer_size": self._buffer_size,
            }
        )
        if centroids:
            weights = [w for _, w in centroids]
            stats.update(
                {
                    "min_value": self._min_val,
                    "max_value": self._max_val,
                    "min_weight": min(weights),
                    "max_weight": max(weights),
                }
            )
        return stats


def _read_fixed(reader: ByteReader):
    compression = reader.varint()
    try:
        _validate_compression(compression)
    except ValueError as e:
        raise UnsupportedFormat(str(e)) from e
    items = reader.varint()
    min_val = reader.f64()
    max_val = reader.f64()
    return compression, items, min_val, max_val


class TDigestView:
    """
    Read-only view over a serialized T-Digest.

    Construction validates the header and records where the centroid means
    and weights start; centroids are then decoded lazily, straight from the
    borrowed buffer, each time they are iterated.
    """

    KIND = TDigest.KIND
    FORMAT_VERSION = TDigest.FORMAT_VERSION

    def __init__(self, data: BytesLike):
        reader = read_header(data, self.KIND, self.FORMAT_VERSION)
        self._data = data
        self.compression, self._items, min_val, max_val = _read_fixed(reader)
        self._min_val = min_val if self._items else None
        self._max_val = max_val if self._items else None
        self._count = reader.varint()
        self._means_offset = reader.position
        reader.skip_varints(self._count)
        self._weights_offset = reader.position
        reader.skip_varints(self._count)
        reader.expect_end()

    def params(self) -> Dict[str, Any]:
        return {"compression": self.compression}

    @property
    def items_processed(self) -> int:
        return self._items

    @property
    def min(self) -> Optional[float]:
        return self._min_val

    @property
    def max(self) -> Optional[float]:
        return self._max_val

    def iter_centroids(self) -> Iterator[Tuple[float, float]]:
        means = ByteReader(self._data, self._means_offset).iter_float_deltas(self._count)
        weights = ByteReader(self._data, self._weights_offset)
        for mean in means:
            yield mean, float(weights.varint())

    def __len__(self) -> int:
        return self._count

    def quantile(self, quantile: float) -> float:
        if self._items == 0:
            return _quantile([], 0, 0, 0, quantile)
        return _quantile(
            self.iter_centroids(), self._items, self._min_val, self._max_val, quantile
        )

    def rank(self, value: float) -> float:
        if self._items == 0:
            return float("nan")
        return _rank(
            self.iter_centroids(), self._items, self._min_val, self._max_val, value
        )

    def finalize(self, quantile: Optional[float] = None, **options: Any) -> Any:
        if quantile is None:
            return self
        return self.quantile(quantile)

    def to_state(self) -> TDigest:
        """Decode the view into an owned TDigest."""
        return TDigest.from_bytes(self._data)

"""
Shared time-series helpers.

Timestamps are integers counting microseconds since the Unix epoch, the same
resolution a database ``timestamptz`` column uses. Helpers here convert
datetimes into that representation, validate observations, and resample an
irregular series into normal form (evenly spaced buckets) for the smoothing
algorithms.
"""

import enum
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, NamedTuple, Optional, Sequence, Union

from tiny_agg.core.errors import InvalidObservation

MICROS_PER_SECOND = 1_000_000
MIN_TIMESTAMP = -(2**63)
MAX_TIMESTAMP = 2**63 - 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Timestamp = Union[int, datetime]


class TSPoint(NamedTuple):
    """A single (time, value) sample."""

    time: int
    value: float


@dataclass
class NormalSeries:
    """
    A series with evenly spaced timestamps.

    Attributes:
        start_time: Timestamp of the first value.
        step: Distance between successive timestamps.
        values: The sampled values.
    """

    start_time: int
    step: int
    values: List[float]

    def points(self) -> List[TSPoint]:
        """Expand the series into explicit points."""
        return [
            TSPoint(self.start_time + i * self.step, value)
            for i, value in enumerate(self.values)
        ]

    def __len__(self) -> int:
        return len(self.values)


class GapfillMethod(enum.Enum):
    """How empty buckets are filled when resampling to normal form."""

    LINEAR = "linear"
    LOCF = "locf"


def to_timestamp(value: Timestamp) -> int:
    """
    Convert a timestamp argument into integer microseconds since the epoch.

    Naive datetimes are interpreted as UTC.

    Raises:
        InvalidObservation: If the value is not an integer or datetime, or
                            falls outside the signed 64-bit range.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        delta = value - _EPOCH
        return (
            delta.days * 86_400 + delta.seconds
        ) * MICROS_PER_SECOND + delta.microseconds
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidObservation(
            f"Timestamp must be an int (microseconds) or datetime, got {type(value).__name__}"
        )
    if not MIN_TIMESTAMP <= value <= MAX_TIMESTAMP:
        raise InvalidObservation(f"Timestamp {value} is outside the 64-bit range")
    return value


def check_value(value: Any, allow_negative: bool = True) -> float:
    """
    Validate a numeric observation and return it as a float.

    Raises:
        InvalidObservation: For non-numeric, NaN, infinite, or (optionally)
            negative values.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidObservation(
            f"Value must be numeric, got {type(value).__name__}"
        )
    value = float(value)
    if not math.isfinite(value):
        raise InvalidObservation(f"Value must be finite, got {value}")
    if not allow_negative and value < 0:
        raise InvalidObservation(f"Value must be non-negative, got {value}")
    return value


def check_point(time: Optional[Timestamp], value: Any, allow_negative: bool = True) -> TSPoint:
    """Validate a timestamped observation."""
    if time is None:
        raise InvalidObservation("This aggregate requires a timestamp")
    return TSPoint(to_timestamp(time), check_value(value, allow_negative))


def sort_points(points: Sequence[TSPoint]) -> List[TSPoint]:
    """Sort points by (time, value), giving a result independent of input order."""
    return sorted(points)


def median_delta(points: Sequence[TSPoint]) -> int:
    """Median distance between successive timestamps of a sorted series."""
    diffs = sorted(b.time - a.time for a, b in zip(points, points[1:]))
    return diffs[len(diffs) // 2]


def downsample_to_normal_form(
    points: Sequence[TSPoint],
    interval: int,
    method: GapfillMethod = GapfillMethod.LINEAR,
) -> NormalSeries:
    """
    Resample a sorted series into evenly spaced buckets.

    Bucket ``i`` covers ``[start + i*interval, start + (i+1)*interval)`` and
    takes the mean of the points that fall inside it. Buckets with no points
    are filled according to ``method``.

    Args:
        points: At least two points sorted by time.
        interval: Bucket width, must be positive.
        method: Gap filling rule for empty buckets.

    Returns:
        The normal form series.

    Raises:
        ValueError: If fewer than two points are given or interval is not positive.
    """
    if len(points) < 2:
        raise ValueError("At least two points are required to build a normal series")
    if interval <= 0:
        raise ValueError(f"Interval must be positive, got {interval}")

    start = points[0].time
    num_buckets = (points[-1].time - start) // interval + 1
    sums = [0.0] * num_buckets
    counts = [0] * num_buckets
    for point in points:
        bucket = (point.time - start) // interval
        sums[bucket] += point.value
        counts[bucket] += 1

    values: List[Optional[float]] = [
        s / c if c else None for s, c in zip(sums, counts)
    ]
    return NormalSeries(start, interval, _gapfill(values, method))


def _gapfill(values: List[Optional[float]], method: GapfillMethod) -> List[float]:
    # First and last buckets always hold a point.
    filled: List[float] = []
    i = 0
    while i < len(values):
        value = values[i]
        if value is not None:
            filled.append(value)
            i += 1
            continue
        left = filled[-1]
        j = i
        while values[j] is None:
            j += 1
        right = values[j]
        gap = j - i + 1
        for k in range(1, gap):
            if method is GapfillMethod.LINEAR:
                filled.append(left + (right - left) * k / gap)
            else:
                filled.append(left)
        i = j
    return filled

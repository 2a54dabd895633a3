"""
Time-weighted average.

Each sample is weighted by how long it was in effect rather than counted
once, so irregular sampling does not skew the result. Two interpolation
methods are supported:

- LOCF (last observation carried forward): a value holds until the next
  sample. The final sample contributes no duration, so (t=0, v=10),
  (t=10, v=20) averages 10.
- LINEAR: values change linearly between samples (trapezoidal rule); the
  same two samples average 15.

Merging bridges the gap between two disjoint states with the same rule used
between consecutive samples, so the merged state equals the state a single
pass over the concatenated series would produce.
"""

import enum
from typing import Any, Dict, Optional

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import ByteReader, ByteWriter
from tiny_agg.core.errors import OutOfOrderInput, OverlappingRanges, UnsupportedFormat
from tiny_agg.core.time_series import Timestamp, TSPoint, check_point


class InterpolationMethod(enum.IntEnum):
    """Rule used for the area between two successive samples."""

    LOCF = 1
    LINEAR = 2


def _area(method: InterpolationMethod, left: TSPoint, right: TSPoint) -> float:
    duration = right.time - left.time
    if method is InterpolationMethod.LOCF:
        return left.value * duration
    return (left.value + right.value) / 2.0 * duration


class TimeWeightedAvg(AggregateState):
    """
    Running time-weighted sum over strictly increasing timestamps.

    The state is the interpolation method, the first and last samples and the
    weighted sum accumulated between them; the covered duration is
    ``last.time - first.time``.
    """

    KIND = 5

    def __init__(self, method: InterpolationMethod):
        """
        Args:
            method: InterpolationMethod.LOCF or InterpolationMethod.LINEAR.

        Raises:
            ValueError: If method is not an InterpolationMethod.
        """
        super().__init__()
        try:
            self._method = InterpolationMethod(method)
        except ValueError as e:
            raise ValueError(f"Unknown interpolation method: {method!r}") from e
        self._first: Optional[TSPoint] = None
        self._last: Optional[TSPoint] = None
        self._weighted_sum = 0.0

    @property
    def method(self) -> InterpolationMethod:
        return self._method

    def params(self) -> Dict[str, Any]:
        return {"method": self._method.name}

    def accumulate(self, observation: Observation) -> None:
        self.update(observation.time, observation.value)

    def update(self, time: Timestamp, value: float) -> None:
        """
        Add a sample.

        Raises:
            InvalidObservation: If the timestamp is missing or the value is
                not finite.
            OutOfOrderInput: If time is not strictly after the previous sample.
        """
        self._check_mutable()
        point = check_point(time, value)
        if self._last is not None and point.time <= self._last.time:
            raise OutOfOrderInput(
                f"Sample at {point.time} is not after the previous sample at {self._last.time}"
            )

        self._items_processed += 1
        if self._last is None:
            self._first = point
        else:
            self._weighted_sum += _area(self._method, self._last, point)
        self._last = point

    @property
    def first(self) -> Optional[TSPoint]:
        return self._first

    @property
    def last(self) -> Optional[TSPoint]:
        return self._last

    @property
    def weighted_sum(self) -> float:
        return self._weighted_sum

    def duration(self) -> int:
        if self._first is None:
            return 0
        return self._last.time - self._first.time

    def average(self) -> Optional[float]:
        """
        The time-weighted average.

        Returns:
            None for an empty state, the sample value for a single sample.
        """
        if self._first is None:
            return None
        duration = self.duration()
        if duration == 0:
            return self._first.value
        return self._weighted_sum / duration

    def finalize(self, **options: Any) -> Optional[float]:
        self._mark_finalized()
        return self.average()

    def merge(self, other: "TimeWeightedAvg") -> "TimeWeightedAvg":
        """
        Combine two states covering disjoint time ranges.

        The gap between the earlier state's last sample and the later state's
        first sample is bridged with the interpolation method.

        Raises:
            IncompatibleState: If the interpolation methods differ.
            OverlappingRanges: If the time ranges are not disjoint.
        """
        self._check_compatible(other)
        if other._first is None:
            return self._copy()
        if self._first is None:
            return other._copy()

        earlier, later = (self, other) if self._first.time <= other._first.time else (other, self)
        if earlier._last.time >= later._first.time:
            raise OverlappingRanges(
                f"Time ranges [{earlier._first.time}, {earlier._last.time}] and "
                f"[{later._first.time}, {later._last.time}] overlap"
            )

        merged = earlier._copy()
        merged._weighted_sum += (
            _area(self._method, earlier._last, later._first) + later._weighted_sum
        )
        merged._last = later._last
        merged._items_processed += later._items_processed
        return merged

    def _copy(self) -> "TimeWeightedAvg":
        copy = TimeWeightedAvg(self._method)
        copy._first = self._first
        copy._last = self._last
        copy._weighted_sum = self._weighted_sum
        copy._items_processed = self._items_processed
        return copy

    def _write_params(self, writer: ByteWriter) -> None:
        writer.u8(self._method.value)

    def _write_payload(self, writer: ByteWriter) -> None:
        writer.varint(self._items_processed)
        if self._first is None:
            return
        writer.f64(self._weighted_sum)
        writer.deltas([self._first.time, self._last.time])
        writer.f64(self._first.value).f64(self._last.value)

    @classmethod
    def _read(cls, reader: ByteReader) -> "TimeWeightedAvg":
        code = reader.u8()
        try:
            method = InterpolationMethod(code)
        except ValueError as e:
            raise UnsupportedFormat(f"Unknown interpolation method {code}") from e
        state = cls(method)
        state._items_processed = reader.varint()
        if state._items_processed == 0:
            return state
        state._weighted_sum = reader.f64()
        times = reader.deltas()
        if len(times) != 2:
            raise UnsupportedFormat(f"Expected 2 timestamps, got {len(times)}")
        state._first = TSPoint(times[0], reader.f64())
        state._last = TSPoint(times[1], reader.f64())
        return state

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "method": self._method.name,
                "first": self._first,
                "last": self._last,
                "weighted_sum": self._weighted_sum,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeWeightedAvg":
        cls._check_dict(data, "method", "first", "last", "weighted_sum", "items_processed")
        try:
            method = InterpolationMethod[data["method"]]
        except KeyError as e:
            raise UnsupportedFormat(f"Unknown interpolation method {data['method']}") from e
        state = cls(method)
        state._first = TSPoint(*data["first"]) if data["first"] is not None else None
        state._last = TSPoint(*data["last"]) if data["last"] is not None else None
        state._weighted_sum = data["weighted_sum"]
        state._items_processed = data["items_processed"]
        return state

"""
Shared state for aggregates that need the whole ordered series.

Downsamplers such as ASAP and LTTB look at every point at once, so they
cannot fold observations into a running summary. Their state retains the
points and a target resolution; merging concatenates the retained points and
all of the work happens in finalize. Memory therefore grows with the number
of observations, unlike the sketches.
"""

from typing import Any, Dict, List, Type, TypeVar

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import ByteReader, ByteWriter
from tiny_agg.core.errors import UnsupportedFormat
from tiny_agg.core.time_series import Timestamp, TSPoint, check_point, sort_points

P = TypeVar("P", bound="PointSeriesState")


class PointSeriesState(AggregateState):
    """
    Base class for full-series states: a list of points plus a resolution.

    Points may arrive in any order; subclasses sort them by (time, value) in
    finalize so the result does not depend on how rows were partitioned.
    """

    MIN_RESOLUTION = 1

    def __init__(self, resolution: int):
        super().__init__()
        if isinstance(resolution, bool) or not isinstance(resolution, int):
            raise ValueError("Resolution must be an integer")
        if resolution < self.MIN_RESOLUTION:
            raise ValueError(f"Resolution must be at least {self.MIN_RESOLUTION}")
        self._resolution = resolution
        self._points: List[TSPoint] = []

    @property
    def resolution(self) -> int:
        return self._resolution

    def params(self) -> Dict[str, Any]:
        return {"resolution": self._resolution}

    def accumulate(self, observation: Observation) -> None:
        self.update(observation.time, observation.value)

    def update(self, time: Timestamp, value: float) -> None:
        """
        Retain a point.

        Raises:
            InvalidObservation: If the timestamp is missing or the value is
                not finite.
        """
        self._check_mutable()
        point = check_point(time, value)
        self._points.append(point)
        self._items_processed += 1

    def sorted_points(self) -> List[TSPoint]:
        return sort_points(self._points)

    def merge(self: P, other: P) -> P:
        """
        Concatenate the retained points of two states.

        Raises:
            IncompatibleState: If the kinds or resolutions differ.
        """
        self._check_compatible(other)
        merged = self.__class__(self._resolution)
        merged._points = self._points + other._points
        merged._items_processed = self._items_processed + other._items_processed
        return merged

    def _write_params(self, writer: ByteWriter) -> None:
        writer.varint(self._resolution)

    def _write_payload(self, writer: ByteWriter) -> None:
        writer.delta_of_deltas([p.time for p in self._points])
        writer.f64_array([p.value for p in self._points])

    @classmethod
    def _read(cls: Type[P], reader: ByteReader) -> P:
        resolution = reader.varint()
        try:
            state = cls(resolution)
        except ValueError as e:
            raise UnsupportedFormat(str(e)) from e
        times = reader.delta_of_deltas()
        values = reader.f64_array()
        if len(times) != len(values):
            raise UnsupportedFormat(
                f"Series has {len(times)} timestamps but {len(values)} values"
            )
        state._points = [TSPoint(t, v) for t, v in zip(times, values)]
        state._items_processed = len(state._points)
        return state

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "resolution": self._resolution,
                "points": [list(p) for p in self._points],
            }
        )
        return data

    @classmethod
    def from_dict(cls: Type[P], data: Dict[str, Any]) -> P:
        cls._check_dict(data, "resolution", "points")
        state = cls(data["resolution"])
        state._points = [TSPoint(int(t), float(v)) for t, v in data["points"]]
        state._items_processed = len(state._points)
        return state

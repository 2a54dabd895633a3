"""
Counter aggregate: rates over monotonic counters that may reset.

A counter (requests served, bytes sent) only grows until its process
restarts, at which point it starts again from a small value. The aggregate
keeps the increase observed across the whole series, treating every drop as a
reset: the sample after a drop becomes the baseline of a new segment and the
drop itself contributes nothing.

For the samples ``[5, 7, 2, 9]`` the total is ``(7 - 5) + (9 - 2) = 9`` with
one reset.
"""

import enum
import logging
from typing import Any, Dict, NamedTuple, Optional

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import ByteReader, ByteWriter
from tiny_agg.core.errors import OutOfOrderInput, OverlappingRanges, UnsupportedFormat
from tiny_agg.core.time_series import (
    MICROS_PER_SECOND,
    Timestamp,
    TSPoint,
    check_point,
    to_timestamp,
)

logger = logging.getLogger(__name__)


class ExtrapolationPolicy(enum.Enum):
    """
    How a rate is extended to the edges of a query window.

    NONE: report the increase between the first and last samples only.
    FLAT: hold the observed rate constant out to the window edges. The
          backward extension stops where the counter would reach zero.
    """

    NONE = "none"
    FLAT = "flat"


class Bounds(NamedTuple):
    """Half-open time window ``[start, end)`` used for extrapolation."""

    start: int
    end: int

    @classmethod
    def of(cls, start: Timestamp, end: Timestamp) -> "Bounds":
        bounds = cls(to_timestamp(start), to_timestamp(end))
        if bounds.end <= bounds.start:
            raise ValueError("Bounds end must be after start")
        return bounds


class CounterAgg(AggregateState):
    """
    Reset-aware summary of a monotonic counter.

    The state keeps the first, second, penultimate and last samples, the
    cumulative increase, and the number of resets and value changes. Samples
    must arrive with strictly increasing timestamps.

    Merging orders the two states by time and requires disjoint time ranges.
    The reset rule is applied again at the stitch point, so merging is
    associative and commutative and gives the same result as accumulating
    the whole series at once.
    """

    KIND = 4

    def __init__(self) -> None:
        super().__init__()
        self._first: Optional[TSPoint] = None
        self._second: Optional[TSPoint] = None
        self._penultimate: Optional[TSPoint] = None
        self._last: Optional[TSPoint] = None
        self._total = 0.0
        self._num_resets = 0
        self._num_changes = 0

    def params(self) -> Dict[str, Any]:
        return {}

    def accumulate(self, observation: Observation) -> None:
        self.update(observation.time, observation.value)

    def update(self, time: Timestamp, value: float) -> None:
        """
        Add a counter sample.

        Raises:
            InvalidObservation: If the value is negative, NaN or infinite, or
                the timestamp is missing.
            OutOfOrderInput: If time does not strictly increase.
        """
        self._check_mutable()
        point = check_point(time, value, allow_negative=False)
        if self._last is not None and point.time <= self._last.time:
            raise OutOfOrderInput(
                f"Counter sample at {point.time} is not after the previous sample "
                f"at {self._last.time}"
            )

        self._items_processed += 1
        if self._last is None:
            self._first = point
        else:
            self._step(self._last, point)
            if self._second is None:
                self._second = point
            self._penultimate = self._last
        self._last = point

    def _step(self, previous: TSPoint, current: TSPoint) -> None:
        if current.value < previous.value:
            self._num_resets += 1
            logger.debug(
                "Counter reset at %d: %g -> %g", current.time, previous.value, current.value
            )
        else:
            self._total += current.value - previous.value
        if current.value != previous.value:
            self._num_changes += 1

    @property
    def first(self) -> Optional[TSPoint]:
        return self._first

    @property
    def last(self) -> Optional[TSPoint]:
        return self._last

    @property
    def num_resets(self) -> int:
        return self._num_resets

    @property
    def num_changes(self) -> int:
        return self._num_changes

    def delta(self) -> float:
        """Reset-adjusted increase between the first and last samples."""
        return self._total

    def time_delta(self) -> float:
        """Seconds between the first and last samples."""
        if self._first is None:
            return 0.0
        return (self._last.time - self._first.time) / MICROS_PER_SECOND

    def rate(self) -> Optional[float]:
        """Increase per second, or None with fewer than two samples."""
        duration = self.time_delta()
        if duration == 0:
            return None
        return self._total / duration

    def idelta_left(self) -> Optional[float]:
        """Increase between the first two samples (0 across a reset)."""
        if self._second is None:
            return None
        return max(0.0, self._second.value - self._first.value)

    def idelta_right(self) -> Optional[float]:
        """Increase between the last two samples (0 across a reset)."""
        if self._penultimate is None:
            return None
        return max(0.0, self._last.value - self._penultimate.value)

    def irate_left(self) -> Optional[float]:
        if self._second is None:
            return None
        seconds = (self._second.time - self._first.time) / MICROS_PER_SECOND
        return self.idelta_left() / seconds

    def irate_right(self) -> Optional[float]:
        if self._penultimate is None:
            return None
        seconds = (self._last.time - self._penultimate.time) / MICROS_PER_SECOND
        return self.idelta_right() / seconds

    def extrapolated_delta(
        self, bounds: Bounds, policy: ExtrapolationPolicy
    ) -> Optional[float]:
        """
        Increase over ``bounds`` under an explicit extrapolation policy.

        Args:
            bounds: Query window that must contain every sample.
            policy: ExtrapolationPolicy.NONE or ExtrapolationPolicy.FLAT.

        Returns:
            The (possibly extrapolated) increase, None with fewer than two samples.

        Raises:
            ValueError: If the samples fall outside the bounds.
        """
        if not isinstance(policy, ExtrapolationPolicy):
            raise ValueError(f"Unknown extrapolation policy: {policy!r}")
        rate = self.rate()
        if rate is None:
            return None
        if self._first.time < bounds.start or self._last.time >= bounds.end:
            raise ValueError(
                f"Samples [{self._first.time}, {self._last.time}] fall outside bounds "
                f"[{bounds.start}, {bounds.end})"
            )
        if policy is ExtrapolationPolicy.NONE:
            return self._total

        to_start = (self._first.time - bounds.start) / MICROS_PER_SECOND
        to_end = (bounds.end - self._last.time) / MICROS_PER_SECOND
        if rate > 0:
            to_start = min(to_start, self._first.value / rate)
        return self._total + rate * (to_start + to_end)

    def extrapolated_rate(
        self, bounds: Bounds, policy: ExtrapolationPolicy
    ) -> Optional[float]:
        """Increase per second over the whole bounds window."""
        delta = self.extrapolated_delta(bounds, policy)
        if delta is None:
            return None
        if policy is ExtrapolationPolicy.NONE:
            return self.rate()
        return delta / ((bounds.end - bounds.start) / MICROS_PER_SECOND)

    def finalize(
        self,
        policy: ExtrapolationPolicy = ExtrapolationPolicy.NONE,
        bounds: Optional[Bounds] = None,
        **options: Any,
    ) -> Optional[float]:
        """
        Freeze the state and return its rate per second.

        Extrapolation only happens when the caller passes
        ``policy=ExtrapolationPolicy.FLAT`` together with ``bounds``.
        """
        if policy is not ExtrapolationPolicy.NONE and bounds is None:
            raise ValueError(f"Extrapolation policy {policy.value} requires bounds")
        self._mark_finalized()
        if policy is ExtrapolationPolicy.NONE:
            return self.rate()
        return self.extrapolated_rate(bounds, policy)

    def merge(self, other: "CounterAgg") -> "CounterAgg":
        """
        Concatenate two counter states in time order.

        Raises:
            IncompatibleState: If other is not a CounterAgg.
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
                f"Counter ranges [{earlier._first.time}, {earlier._last.time}] and "
                f"[{later._first.time}, {later._last.time}] overlap"
            )

        merged = earlier._copy()
        merged._total += later._total
        merged._num_resets += later._num_resets
        merged._num_changes += later._num_changes
        merged._step(earlier._last, later._first)
        if merged._second is None:
            merged._second = later._first
        merged._penultimate = later._penultimate or earlier._last
        merged._last = later._last
        merged._items_processed += later._items_processed
        return merged

    def _copy(self) -> "CounterAgg":
        copy = CounterAgg()
        copy.__dict__.update(self.__dict__)
        copy._finalized = False
        return copy

    def _write_params(self, writer: ByteWriter) -> None:
        pass

    def _write_payload(self, writer: ByteWriter) -> None:
        writer.varint(self._items_processed)
        if self._first is None:
            return
        writer.varint(self._num_resets).varint(self._num_changes).f64(self._total)
        # first, second, penultimate, last; absent ones repeat the previous point
        points = [
            self._first,
            self._second or self._first,
            self._penultimate or self._first,
            self._last,
        ]
        writer.deltas([p.time for p in points])
        for p in points:
            writer.f64(p.value)

    @classmethod
    def _read(cls, reader: ByteReader) -> "CounterAgg":
        state = cls()
        state._items_processed = reader.varint()
        if state._items_processed == 0:
            return state
        state._num_resets = reader.varint()
        state._num_changes = reader.varint()
        state._total = reader.f64()
        times = reader.deltas()
        if len(times) != 4:
            raise UnsupportedFormat(f"Expected 4 counter points, got {len(times)}")
        first, second, penultimate, last = [TSPoint(t, reader.f64()) for t in times]
        state._first = first
        state._last = last
        if state._items_processed >= 2:
            state._second = second
            state._penultimate = penultimate
        return state

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "first": self._first,
                "second": self._second,
                "penultimate": self._penultimate,
                "last": self._last,
                "total": self._total,
                "num_resets": self._num_resets,
                "num_changes": self._num_changes,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CounterAgg":
        cls._check_dict(
            data,
            "first",
            "second",
            "penultimate",
            "last",
            "total",
            "num_resets",
            "items_processed",
        )
        state = cls()
        for name in ("first", "second", "penultimate", "last"):
            point = data[name]
            setattr(state, f"_{name}", TSPoint(*point) if point is not None else None)
        state._total = data["total"]
        state._num_resets = data["num_resets"]
        state._num_changes = data.get("num_changes", 0)
        state._items_processed = data["items_processed"]
        return state

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update(
            {
                "delta": self._total,
                "num_resets": self._num_resets,
                "num_changes": self._num_changes,
                "time_delta_s": self.time_delta(),
            }
        )
        return stats

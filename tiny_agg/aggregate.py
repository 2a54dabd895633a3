"""
Aggregate state machine entry points.

Every algorithm follows the same lifecycle, driven by a host such as a query
engine running one worker per partition:

    state = init(AggregateKind.TDIGEST, compression=100)
    for row in partition:
        state = accumulate(state, Observation(row.time, row.value))
    blob = to_bytes(state)                 # ship to the coordinator
    total = combine(from_bytes(blob), other_state)
    p99 = finalize(total, quantile=0.99)

The set of algorithms is closed: ``AggregateKind`` enumerates them and the
dispatch tables below map each kind to its state and view classes.
"""

import enum
import logging
from typing import Any, Dict, Type, Union

from tiny_agg.algorithms.asap import ASAP
from tiny_agg.algorithms.counter_agg import CounterAgg
from tiny_agg.algorithms.hyperloglog import HyperLogLog, HyperLogLogView
from tiny_agg.algorithms.lttb import LTTB
from tiny_agg.algorithms.tdigest import TDigest, TDigestView
from tiny_agg.algorithms.time_weighted import TimeWeightedAvg
from tiny_agg.algorithms.uddsketch import UDDSketch, UDDSketchView
from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.encoding import BytesLike, peek_header
from tiny_agg.core.errors import IncompatibleState, InvalidObservation, UnsupportedFormat

logger = logging.getLogger(__name__)

StateView = Union[TDigestView, UDDSketchView, HyperLogLogView]


class AggregateKind(enum.IntEnum):
    """The closed set of aggregate algorithms; values are the format tags."""

    TDIGEST = TDigest.KIND
    UDDSKETCH = UDDSketch.KIND
    HYPERLOGLOG = HyperLogLog.KIND
    COUNTER_AGG = CounterAgg.KIND
    TIME_WEIGHTED_AVG = TimeWeightedAvg.KIND
    ASAP = ASAP.KIND
    LTTB = LTTB.KIND


_STATE_CLASSES: Dict[AggregateKind, Type[AggregateState]] = {
    AggregateKind.TDIGEST: TDigest,
    AggregateKind.UDDSKETCH: UDDSketch,
    AggregateKind.HYPERLOGLOG: HyperLogLog,
    AggregateKind.COUNTER_AGG: CounterAgg,
    AggregateKind.TIME_WEIGHTED_AVG: TimeWeightedAvg,
    AggregateKind.ASAP: ASAP,
    AggregateKind.LTTB: LTTB,
}

_VIEW_CLASSES: Dict[AggregateKind, type] = {
    AggregateKind.TDIGEST: TDigestView,
    AggregateKind.UDDSKETCH: UDDSketchView,
    AggregateKind.HYPERLOGLOG: HyperLogLogView,
}


def _kind_from_tag(tag: int) -> AggregateKind:
    try:
        return AggregateKind(tag)
    except ValueError as e:
        raise UnsupportedFormat(f"Unknown aggregate tag {tag}") from e


def init(kind: Union[AggregateKind, int], **params: Any) -> AggregateState:
    """
    Create an empty state.

    Args:
        kind: The algorithm to use.
        **params: Construction parameters of that algorithm, for example
                  ``compression`` for TDigest or ``alpha`` and ``max_buckets``
                  for UDDSketch.

    Raises:
        ValueError: For an unknown kind or missing or invalid parameters.
    """
    try:
        kind = AggregateKind(kind)
    except ValueError as e:
        raise ValueError(f"Unknown aggregate kind: {kind!r}") from e
    cls = _STATE_CLASSES[kind]
    try:
        return cls(**params)
    except TypeError as e:
        raise ValueError(f"Invalid parameters for {cls.__name__}: {e}") from e


def accumulate(state: AggregateState, observation: Any) -> AggregateState:
    """
    Feed one observation into a state and return the state.

    A bare value is accepted for the algorithms that ignore time.

    Raises:
        InvalidObservation: If the observation is rejected; the state is
            left unchanged.
        StateFinalized: If the state was already finalized.
    """
    if not isinstance(observation, Observation):
        if isinstance(observation, tuple):
            if len(observation) != 2:
                raise InvalidObservation(
                    f"Observation tuples are (time, value), got {len(observation)} fields"
                )
            observation = Observation(*observation)
        else:
            observation = Observation(None, observation)
    state.accumulate(observation)
    return state


def combine(
    a: Union[AggregateState, StateView], b: Union[AggregateState, StateView]
) -> AggregateState:
    """
    Merge two partial states into a new one.

    Neither input is modified. Either side may be a read-only view.

    Raises:
        IncompatibleState: On kind, format version or parameter mismatch.
        OverlappingRanges: For time-ordered aggregates whose ranges overlap.
    """
    if isinstance(a, AggregateState):
        return a.merge(b)
    if isinstance(b, AggregateState):
        return b.merge(a)
    if not hasattr(a, "to_state"):
        raise IncompatibleState(f"Cannot combine {type(a).__name__} values")
    return a.to_state().merge(b)


def finalize(state: Union[AggregateState, StateView], **options: Any) -> Any:
    """
    Produce the result of a state.

    Options are algorithm specific, e.g. ``quantile=0.5`` for the quantile
    sketches or ``policy`` and ``bounds`` for CounterAgg.
    """
    return state.finalize(**options)


def to_bytes(state: AggregateState) -> bytes:
    return state.to_bytes()


def from_bytes(data: BytesLike) -> AggregateState:
    """
    Decode a serialized state of any kind.

    Raises:
        UnsupportedFormat: For an unknown tag, a different format version or
            a malformed payload.
    """
    header = peek_header(data)
    kind = _kind_from_tag(header.tag)
    return _STATE_CLASSES[kind].from_bytes(data)


def view(data: BytesLike) -> StateView:
    """
    Open a read-only view over a serialized sketch without copying it.

    Views exist for TDigest, UDDSketch and HyperLogLog; the time-series
    aggregates are small or must be decoded anyway and use from_bytes().

    Raises:
        UnsupportedFormat: For an unknown tag or a kind without a view.
    """
    header = peek_header(data)
    kind = _kind_from_tag(header.tag)
    if kind not in _VIEW_CLASSES:
        raise UnsupportedFormat(f"{kind.name} has no read-only view; use from_bytes()")
    return _VIEW_CLASSES[kind](data)

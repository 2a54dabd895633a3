"""
tiny-agg - Mergeable Aggregate States

tiny-agg is a Python library of aggregate algorithms for time series and
analytical queries. Each aggregate is a partial state that can be built on
independent workers, combined, serialized to compact bytes, and finalized.
"""

__version__ = "0.1.0"

# Import main entry points to make them available at the top level
from tiny_agg.aggregate import (
    AggregateKind,
    accumulate,
    combine,
    finalize,
    from_bytes,
    init,
    to_bytes,
    view,
)
from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.errors import (
    AggregateError,
    IncompatibleState,
    InvalidObservation,
    OutOfOrderInput,
    OverlappingRanges,
    ResourceExceeded,
    StateFinalized,
    UnsupportedFormat,
)

__all__ = [
    # State machine
    "AggregateKind",
    "init",
    "accumulate",
    "combine",
    "finalize",
    "to_bytes",
    "from_bytes",
    "view",
    # Core types
    "AggregateState",
    "Observation",
    # Errors
    "AggregateError",
    "InvalidObservation",
    "OutOfOrderInput",
    "IncompatibleState",
    "OverlappingRanges",
    "UnsupportedFormat",
    "ResourceExceeded",
    "StateFinalized",
]

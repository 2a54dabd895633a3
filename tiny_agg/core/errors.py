"""
Error taxonomy for tiny-agg aggregate states.

Every failure raised by an aggregate operation derives from AggregateError so a
host adapter can translate the whole family into its own failure type with a
single ``except`` clause. The concrete classes also inherit from the builtin
exception a caller would naturally expect (ValueError or RuntimeError).
"""


class AggregateError(Exception):
    """Base class for all aggregate state errors."""


class InvalidObservation(AggregateError, ValueError):
    """An observation was rejected (NaN, infinity, wrong sign, missing time)."""


class OutOfOrderInput(InvalidObservation):
    """A timestamp did not strictly increase where the algorithm requires it."""


class IncompatibleState(AggregateError, ValueError):
    """Two states cannot be combined (tag, version or parameter mismatch)."""


class OverlappingRanges(IncompatibleState):
    """Two time-ordered states cover overlapping time ranges."""


class UnsupportedFormat(AggregateError, ValueError):
    """Serialized bytes carry an unknown tag or version, or are malformed."""


class ResourceExceeded(AggregateError, RuntimeError):
    """An internal size invariant was violated. Indicates a defect, not bad input."""


class StateFinalized(AggregateError, RuntimeError):
    """The state was finalized and can no longer accept observations."""

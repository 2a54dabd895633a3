"""
Core functionality for tiny-agg.
"""

from tiny_agg.core.base import AggregateState, Observation
from tiny_agg.core.hash import murmurhash3_32
from tiny_agg.core.time_series import NormalSeries, TSPoint, to_timestamp

__all__ = [
    "AggregateState",
    "Observation",
    "murmurhash3_32",
    "TSPoint",
    "NormalSeries",
    "to_timestamp",
]

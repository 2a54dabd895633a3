"""
Algorithm implementations for tiny-agg.
"""

from tiny_agg.algorithms.asap import ASAP, asap_smooth
from tiny_agg.algorithms.counter_agg import Bounds, CounterAgg, ExtrapolationPolicy
from tiny_agg.algorithms.hyperloglog import HyperLogLog, HyperLogLogView
from tiny_agg.algorithms.lttb import LTTB, lttb
from tiny_agg.algorithms.tdigest import TDigest, TDigestView
from tiny_agg.algorithms.time_weighted import InterpolationMethod, TimeWeightedAvg
from tiny_agg.algorithms.uddsketch import UDDSketch, UDDSketchView

__all__ = [
    "TDigest",
    "TDigestView",
    "UDDSketch",
    "UDDSketchView",
    "HyperLogLog",
    "HyperLogLogView",
    "CounterAgg",
    "ExtrapolationPolicy",
    "Bounds",
    "TimeWeightedAvg",
    "InterpolationMethod",
    "ASAP",
    "asap_smooth",
    "LTTB",
    "lttb",
]

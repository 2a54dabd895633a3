"""
Unit tests for the time-weighted average.
"""

import random
import unittest

from tiny_agg.algorithms.time_weighted import InterpolationMethod, TimeWeightedAvg
from tiny_agg.core.errors import (
    IncompatibleState,
    InvalidObservation,
    OutOfOrderInput,
    OverlappingRanges,
    StateFinalized,
    UnsupportedFormat,
)
from tiny_agg.core.time_series import TSPoint


def _twa(method, samples):
    agg = TimeWeightedAvg(method)
    for t, v in samples:
        agg.update(t, v)
    return agg


class TestTimeWeightedAvg(unittest.TestCase):
    """Test cases for LOCF and linear time weighting."""

    def test_locf(self):
        agg = _twa(InterpolationMethod.LOCF, [(0, 10.0), (10, 20.0)])
        self.assertEqual(agg.average(), 10.0)
        self.assertEqual(agg.duration(), 10)
        self.assertEqual(agg.weighted_sum, 100.0)

    def test_linear(self):
        agg = _twa(InterpolationMethod.LINEAR, [(0, 10.0), (10, 20.0)])
        self.assertEqual(agg.average(), 15.0)

    def test_irregular_sampling(self):
        """A value held for longer weighs more."""
        samples = [(0, 1.0), (90, 5.0), (100, 1.0)]
        self.assertAlmostEqual(
            _twa(InterpolationMethod.LOCF, samples).average(), (90 * 1 + 10 * 5) / 100
        )
        self.assertAlmostEqual(
            _twa(InterpolationMethod.LINEAR, samples).average(),
            (90 * 3.0 + 10 * 3.0) / 100,
        )

    def test_empty_and_single(self):
        self.assertIsNone(TimeWeightedAvg(InterpolationMethod.LOCF).average())
        single = _twa(InterpolationMethod.LINEAR, [(5, 42.0)])
        self.assertEqual(single.average(), 42.0)
        self.assertEqual(single.duration(), 0)

    def test_invalid_method(self):
        with self.assertRaises(ValueError):
            TimeWeightedAvg("cubic")
        self.assertEqual(TimeWeightedAvg(2).method, InterpolationMethod.LINEAR)

    def test_invalid_samples(self):
        agg = _twa(InterpolationMethod.LOCF, [(0, 1.0), (10, 2.0)])
        with self.assertRaises(OutOfOrderInput):
            agg.update(10, 3.0)
        with self.assertRaises(InvalidObservation):
            agg.update(20, float("inf"))
        with self.assertRaises(InvalidObservation):
            agg.update(None, 3.0)
        self.assertEqual(agg.items_processed, 2)
        self.assertEqual(agg.last, TSPoint(10, 2.0))

    def test_negative_values_allowed(self):
        agg = _twa(InterpolationMethod.LINEAR, [(0, -10.0), (10, 10.0)])
        self.assertEqual(agg.average(), 0.0)

    def test_finalize(self):
        agg = _twa(InterpolationMethod.LOCF, [(0, 10.0), (10, 20.0)])
        self.assertEqual(agg.finalize(), 10.0)
        with self.assertRaises(StateFinalized):
            agg.update(20, 1.0)

    def test_merge_matches_single_pass(self):
        rng = random.Random(5)
        samples = []
        t = 0
        for _ in range(200):
            t += rng.randint(1, 60)
            samples.append((t, rng.uniform(-50, 50)))

        for method in InterpolationMethod:
            whole = _twa(method, samples)
            parts = [
                _twa(method, samples[:70]),
                _twa(method, samples[70:150]),
                _twa(method, samples[150:]),
            ]
            for merged in (
                parts[0].merge(parts[1]).merge(parts[2]),
                parts[2].merge(parts[1]).merge(parts[0]),
                parts[0].merge(parts[2].merge(parts[1])),
            ):
                self.assertEqual(merged.first, whole.first)
                self.assertEqual(merged.last, whole.last)
                self.assertEqual(merged.items_processed, 200)
                self.assertAlmostEqual(merged.average(), whole.average(), places=9)

            # The outer chunks combined first span the middle one
            outer = parts[2].merge(parts[0])
            with self.assertRaises(OverlappingRanges):
                parts[1].merge(outer)

    def test_merge_bridges_gap(self):
        left = _twa(InterpolationMethod.LOCF, [(0, 10.0), (10, 20.0)])
        right = _twa(InterpolationMethod.LOCF, [(20, 30.0), (30, 0.0)])
        merged = right.merge(left)
        # 10*10 + 20*10 (gap carries 20 forward) + 30*10
        self.assertEqual(merged.weighted_sum, 600.0)
        self.assertEqual(merged.average(), 20.0)

    def test_merge_with_empty(self):
        agg = _twa(InterpolationMethod.LOCF, [(0, 10.0), (10, 20.0)])
        empty = TimeWeightedAvg(InterpolationMethod.LOCF)
        self.assertEqual(agg.merge(empty).average(), 10.0)
        self.assertEqual(empty.merge(agg).average(), 10.0)
        self.assertIsNone(empty.merge(empty).average())

    def test_merge_errors(self):
        locf = _twa(InterpolationMethod.LOCF, [(0, 1.0), (10, 2.0)])
        linear = _twa(InterpolationMethod.LINEAR, [(20, 1.0)])
        with self.assertRaises(IncompatibleState):
            locf.merge(linear)
        overlapping = _twa(InterpolationMethod.LOCF, [(5, 1.0), (15, 2.0)])
        with self.assertRaises(OverlappingRanges):
            locf.merge(overlapping)
        touching = _twa(InterpolationMethod.LOCF, [(10, 1.0)])
        with self.assertRaises(OverlappingRanges):
            locf.merge(touching)

    def test_serialization_round_trip(self):
        agg = _twa(InterpolationMethod.LINEAR, [(0, 1.5), (7, 2.5), (100, -3.0)])
        restored = TimeWeightedAvg.from_bytes(agg.to_bytes())
        self.assertEqual(restored.method, InterpolationMethod.LINEAR)
        self.assertEqual(restored.first, agg.first)
        self.assertEqual(restored.last, agg.last)
        self.assertEqual(restored.average(), agg.average())
        self.assertEqual(restored.items_processed, 3)

        restored = TimeWeightedAvg.deserialize(agg.serialize(format="json"), format="json")
        self.assertEqual(restored.average(), agg.average())

        empty = TimeWeightedAvg(InterpolationMethod.LOCF)
        self.assertIsNone(TimeWeightedAvg.from_bytes(empty.to_bytes()).average())

    def test_unknown_method_byte(self):
        data = bytearray(TimeWeightedAvg(InterpolationMethod.LOCF).to_bytes())
        data[2] = 9
        with self.assertRaises(UnsupportedFormat):
            TimeWeightedAvg.from_bytes(bytes(data))


if __name__ == "__main__":
    unittest.main()

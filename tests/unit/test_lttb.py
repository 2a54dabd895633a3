"""
Unit tests for LTTB downsampling.
"""

import math
import unittest

from tiny_agg.algorithms.lttb import LTTB, lttb
from tiny_agg.core.errors import IncompatibleState, InvalidObservation, StateFinalized
from tiny_agg.core.time_series import TSPoint


def _points(values):
    return [TSPoint(t, float(v)) for t, v in enumerate(values)]


class TestLTTBFunction(unittest.TestCase):
    """Test cases for the raw downsampler."""

    def test_picks_largest_triangles(self):
        points = _points([0, 1, 0, 5, 0, 1, 0])
        self.assertEqual(
            lttb(points, 4),
            [TSPoint(0, 0.0), TSPoint(2, 0.0), TSPoint(3, 5.0), TSPoint(6, 0.0)],
        )

    def test_keeps_endpoints_and_size(self):
        points = _points([math.sin(i / 10.0) for i in range(1000)])
        sampled = lttb(points, 50)
        self.assertEqual(len(sampled), 50)
        self.assertEqual(sampled[0], points[0])
        self.assertEqual(sampled[-1], points[-1])
        times = [p.time for p in sampled]
        self.assertEqual(times, sorted(set(times)))

    def test_spike_survives(self):
        values = [0.0] * 500
        values[321] = 100.0
        sampled = lttb(_points(values), 20)
        self.assertIn(TSPoint(321, 100.0), sampled)

    def test_passthrough(self):
        points = _points([3, 1, 2])
        self.assertEqual(lttb(points, 3), points)
        self.assertEqual(lttb(points, 10), points)
        self.assertEqual(lttb(points, 0), points)

    def test_invalid_threshold(self):
        points = _points(range(10))
        for threshold in (1, 2):
            with self.assertRaises(ValueError):
                lttb(points, threshold)


class TestLTTBAggregate(unittest.TestCase):
    """Test cases for the LTTB aggregate state."""

    def test_resolution_validation(self):
        for bad in (2, 0, 3.5):
            with self.assertRaises(ValueError):
                LTTB(bad)
        self.assertEqual(LTTB(3).params(), {"resolution": 3})

    def test_finalize_sorts_input(self):
        values = [0, 1, 0, 5, 0, 1, 0]
        state = LTTB(4)
        for t in (6, 2, 4, 0, 5, 3, 1):
            state.update(t, values[t])
        self.assertEqual(
            state.finalize(),
            [TSPoint(0, 0.0), TSPoint(2, 0.0), TSPoint(3, 5.0), TSPoint(6, 0.0)],
        )
        with self.assertRaises(StateFinalized):
            state.update(7, 1.0)

    def test_merge_is_order_independent(self):
        a, b, c = LTTB(10), LTTB(10), LTTB(10)
        for t in range(300):
            [a, b, c][t % 3].update(t * 1000, math.cos(t / 7.0))
        first = a.merge(b).merge(c).finalize()
        second = c.merge(a.merge(b)).finalize()
        self.assertEqual(first, second)
        self.assertEqual(len(first), 10)
        self.assertEqual(a.items_processed + b.items_processed + c.items_processed, 300)

    def test_merge_incompatible(self):
        with self.assertRaises(IncompatibleState):
            LTTB(10).merge(LTTB(11))

    def test_rejects_bad_points(self):
        state = LTTB(5)
        with self.assertRaises(InvalidObservation):
            state.update(None, 1.0)
        with self.assertRaises(InvalidObservation):
            state.update(1, float("nan"))
        self.assertEqual(state.items_processed, 0)

    def test_serialization_round_trip(self):
        state = LTTB(5)
        for t in (100, 50, 300, 200, 250, 400, 10):
            state.update(t, t / 10.0)
        restored = LTTB.from_bytes(state.to_bytes())
        self.assertEqual(restored.items_processed, 7)
        self.assertEqual(restored.finalize(), state.finalize())

        restored = LTTB.deserialize(LTTB(5).serialize(format="json"), format="json")
        self.assertEqual(restored.finalize(), [])


if __name__ == "__main__":
    unittest.main()

"""
Unit tests for the aggregate state machine entry points.
"""

import itertools
import random
import unittest

import tiny_agg
from tiny_agg import (
    AggregateKind,
    Observation,
    accumulate,
    combine,
    finalize,
    from_bytes,
    init,
    to_bytes,
    view,
)
from tiny_agg.algorithms.counter_agg import CounterAgg
from tiny_agg.algorithms.hyperloglog import HyperLogLogView
from tiny_agg.algorithms.tdigest import TDigest, TDigestView
from tiny_agg.algorithms.time_weighted import InterpolationMethod
from tiny_agg.algorithms.uddsketch import UDDSketchView
from tiny_agg.core.errors import (
    AggregateError,
    IncompatibleState,
    InvalidObservation,
    OverlappingRanges,
    StateFinalized,
    UnsupportedFormat,
)

PARAMS = {
    AggregateKind.TDIGEST: {"compression": 100},
    AggregateKind.UDDSKETCH: {"alpha": 0.01, "max_buckets": 200},
    AggregateKind.HYPERLOGLOG: {"precision": 12, "seed": 0},
    AggregateKind.COUNTER_AGG: {},
    AggregateKind.TIME_WEIGHTED_AVG: {"method": InterpolationMethod.LINEAR},
    AggregateKind.ASAP: {"resolution": 20},
    AggregateKind.LTTB: {"resolution": 20},
}


def _rows(n=600, seed=99):
    rng = random.Random(seed)
    counter = 0.0
    rows = []
    for i in range(n):
        counter += rng.randint(0, 10)
        rows.append(Observation(i * 1_000_000, counter))
    return rows


def _build(kind, rows):
    state = init(kind, **PARAMS[kind])
    for row in rows:
        state = accumulate(state, row)
    return state


def _summary(kind, state):
    """A comparable digest of a finalized result."""
    if kind in (AggregateKind.TDIGEST, AggregateKind.UDDSKETCH):
        result = finalize(state)
        return [result.quantile(q) for q in (0.1, 0.5, 0.9)]
    return finalize(state)


class TestAggregateKinds(unittest.TestCase):
    """Dispatch over the closed set of aggregate kinds."""

    def test_tags(self):
        self.assertEqual(
            [k.value for k in AggregateKind], [1, 2, 3, 4, 5, 6, 7]
        )

    def test_init_every_kind(self):
        for kind in AggregateKind:
            state = init(kind, **PARAMS[kind])
            self.assertEqual(state.KIND, kind)
            self.assertEqual(state.items_processed, 0)
            self.assertEqual(to_bytes(state)[0], kind)

    def test_init_errors(self):
        with self.assertRaises(ValueError):
            init(42)
        with self.assertRaises(ValueError):
            init(AggregateKind.TDIGEST)
        with self.assertRaises(ValueError):
            init(AggregateKind.TDIGEST, compression=5)
        with self.assertRaises(ValueError):
            init(AggregateKind.UDDSKETCH, alpha=0.01, buckets=10)

    def test_accumulate_forms(self):
        state = init(AggregateKind.TDIGEST, compression=50)
        state = accumulate(state, 1.0)
        state = accumulate(state, (None, 2.0))
        state = accumulate(state, Observation(None, 3.0))
        self.assertEqual(state.items_processed, 3)
        self.assertEqual(finalize(state, quantile=1.0), 3.0)

    def test_accumulate_rejects_malformed_tuples(self):
        state = init(AggregateKind.LTTB, resolution=5)
        for bad in ((1,), (1, 2.0, 3.0), ()):
            with self.assertRaises(InvalidObservation):
                accumulate(state, bad)
        self.assertEqual(state.items_processed, 0)

    def test_init_requires_every_parameter(self):
        with self.assertRaises(ValueError):
            init(AggregateKind.HYPERLOGLOG, precision=12)


class TestLifecycle(unittest.TestCase):
    """Accumulate, combine, serialize and finalize across every kind."""

    def setUp(self):
        self.rows = _rows()

    def test_round_trip_every_kind(self):
        for kind in AggregateKind:
            with self.subTest(kind=kind.name):
                state = _build(kind, self.rows)
                restored = from_bytes(to_bytes(state))
                self.assertIs(type(restored), type(state))
                self.assertEqual(restored.items_processed, len(self.rows))
                self.assertEqual(_summary(kind, restored), _summary(kind, state))

    def test_combine_partitions_in_any_order(self):
        """Partitions combine to the single-pass result whatever the order.

        Counter and time-weighted states need disjoint ranges, so combining
        two non-adjacent chunks first leaves a gap the middle chunk overlaps.
        """
        chunks = [self.rows[0:150], self.rows[150:400], self.rows[400:]]
        time_ordered = (AggregateKind.COUNTER_AGG, AggregateKind.TIME_WEIGHTED_AVG)
        for kind in AggregateKind:
            with self.subTest(kind=kind.name):
                direct = _summary(kind, _build(kind, self.rows))
                for order in itertools.permutations(range(3)):
                    states = [_build(kind, chunks[i]) for i in order]
                    partial = combine(states[0], states[1])
                    if kind in time_ordered and abs(order[0] - order[1]) != 1:
                        with self.assertRaises(OverlappingRanges):
                            combine(partial, states[2])
                        continue
                    combined = combine(partial, states[2])
                    self._assert_close(kind, _summary(kind, combined), direct)

    def test_combine_through_bytes(self):
        """Partial states shipped as bytes combine like the originals."""
        chunks = [self.rows[0:300], self.rows[300:]]
        for kind in AggregateKind:
            with self.subTest(kind=kind.name):
                blobs = [to_bytes(_build(kind, chunk)) for chunk in chunks]
                combined = combine(from_bytes(blobs[1]), from_bytes(blobs[0]))
                direct = _summary(kind, _build(kind, self.rows))
                self._assert_close(kind, _summary(kind, combined), direct)

    def _assert_close(self, kind, actual, expected):
        if kind is AggregateKind.TDIGEST:
            for a, e in zip(actual, expected):
                self.assertAlmostEqual(a, e, delta=0.02 * abs(e))
        elif kind in (AggregateKind.COUNTER_AGG, AggregateKind.TIME_WEIGHTED_AVG):
            self.assertAlmostEqual(actual, expected, places=6)
        else:
            self.assertEqual(actual, expected)

    def test_combine_leaves_inputs_untouched(self):
        for kind in AggregateKind:
            with self.subTest(kind=kind.name):
                a = _build(kind, self.rows[:300])
                b = _build(kind, self.rows[300:])
                a_bytes, b_bytes = to_bytes(a), to_bytes(b)
                combine(a, b)
                self.assertEqual(to_bytes(a), a_bytes)
                self.assertEqual(to_bytes(b), b_bytes)

    def test_combine_incompatible(self):
        tdigest = init(AggregateKind.TDIGEST, compression=100)
        with self.assertRaises(IncompatibleState):
            combine(tdigest, init(AggregateKind.TDIGEST, compression=200))
        with self.assertRaises(IncompatibleState):
            combine(tdigest, init(AggregateKind.UDDSKETCH, alpha=0.01, max_buckets=10))
        with self.assertRaises(IncompatibleState):
            combine(init(AggregateKind.COUNTER_AGG), tdigest)

    def test_failure_atomicity(self):
        """A rejected observation leaves the serialized state unchanged."""
        bad = {
            AggregateKind.TDIGEST: Observation(None, float("nan")),
            AggregateKind.UDDSKETCH: Observation(None, float("inf")),
            AggregateKind.HYPERLOGLOG: Observation(None, None),
            AggregateKind.COUNTER_AGG: Observation(10**9, -1.0),
            AggregateKind.TIME_WEIGHTED_AVG: Observation(0, 1.0),
            AggregateKind.ASAP: Observation(None, 1.0),
            AggregateKind.LTTB: Observation(1, float("nan")),
        }
        for kind in AggregateKind:
            with self.subTest(kind=kind.name):
                state = _build(kind, self.rows[:50])
                before = to_bytes(state)
                with self.assertRaises(InvalidObservation):
                    accumulate(state, bad[kind])
                self.assertEqual(to_bytes(state), before)

    def test_finalized_states_are_frozen(self):
        for kind in AggregateKind:
            with self.subTest(kind=kind.name):
                state = _build(kind, self.rows[:10])
                finalize(state)
                with self.assertRaises(StateFinalized):
                    accumulate(state, Observation(10**12, 1.0))


class TestSerializedAccess(unittest.TestCase):
    """Decoding and borrowing views over serialized states."""

    def setUp(self):
        self.rows = _rows(n=300)

    def test_from_bytes_rejects_bad_headers(self):
        data = to_bytes(_build(AggregateKind.COUNTER_AGG, self.rows))
        for bad in (b"", b"\x04", b"\x63\x01", data[:1] + b"\x02" + data[2:]):
            with self.assertRaises(UnsupportedFormat):
                from_bytes(bad)
        with self.assertRaises(UnsupportedFormat):
            from_bytes(data + b"\xff")

    def test_errors_share_a_base_class(self):
        self.assertTrue(issubclass(UnsupportedFormat, AggregateError))
        self.assertTrue(issubclass(UnsupportedFormat, ValueError))
        self.assertIs(tiny_agg.AggregateError, AggregateError)

    def test_views(self):
        expected = {
            AggregateKind.TDIGEST: TDigestView,
            AggregateKind.UDDSKETCH: UDDSketchView,
            AggregateKind.HYPERLOGLOG: HyperLogLogView,
        }
        for kind, view_class in expected.items():
            with self.subTest(kind=kind.name):
                state = _build(kind, self.rows)
                borrowed = view(to_bytes(state))
                self.assertIsInstance(borrowed, view_class)
                self.assertEqual(borrowed.items_processed, 300)
                if kind is AggregateKind.HYPERLOGLOG:
                    self.assertEqual(finalize(borrowed), finalize(state))
                else:
                    self.assertEqual(
                        finalize(borrowed, quantile=0.5), finalize(state, quantile=0.5)
                    )

    def test_views_combine_on_either_side(self):
        left = _build(AggregateKind.TDIGEST, self.rows[:150])
        right = _build(AggregateKind.TDIGEST, self.rows[150:])
        borrowed = view(to_bytes(right))
        left_bytes = to_bytes(left)
        expected = combine(left, right).quantile(0.5)

        self.assertIsInstance(combine(left, borrowed), TDigest)
        self.assertEqual(combine(left, borrowed).quantile(0.5), expected)
        self.assertEqual(combine(borrowed, left).quantile(0.5), expected)

        both = combine(view(left_bytes), borrowed)
        self.assertEqual(both.items_processed, 300)
        self.assertEqual(both.quantile(0.5), expected)

    def test_no_view_for_series_states(self):
        data = to_bytes(_build(AggregateKind.COUNTER_AGG, self.rows))
        with self.assertRaises(UnsupportedFormat):
            view(data)
        self.assertIsInstance(from_bytes(data), CounterAgg)


if __name__ == "__main__":
    unittest.main()

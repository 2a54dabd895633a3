"""
Time-series aggregates example for tiny-agg.

This example feeds a day of synthetic metrics to the counter, time-weighted
average, ASAP and LTTB aggregates and prints what each one finalizes to.
"""

import math
import random
from datetime import datetime, timedelta, timezone

from tiny_agg import AggregateKind, Observation, accumulate, combine, finalize, init
from tiny_agg.algorithms.counter_agg import Bounds, ExtrapolationPolicy
from tiny_agg.algorithms.time_weighted import InterpolationMethod

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def request_counter(minutes, seed=1):
    """Cumulative request count sampled once a minute, with two restarts."""
    rng = random.Random(seed)
    total = 0
    samples = []
    for minute in range(minutes):
        if minute in (400, 1100):
            total = 0  # process restart
        total += rng.randint(50, 150)
        samples.append((START + timedelta(minutes=minute), float(total)))
    return samples


def temperature(minutes, seed=2):
    """Temperature with a daily cycle, sampled at irregular intervals."""
    rng = random.Random(seed)
    samples = []
    minute = 0.0
    while minute < minutes:
        value = 20 + 5 * math.sin(2 * math.pi * minute / 1440) + rng.gauss(0, 0.3)
        samples.append((START + timedelta(minutes=minute), value))
        minute += rng.uniform(1, 15)
    return samples


def demonstrate_counter():
    print("\n=== Counter Rate Demo ===")
    samples = request_counter(1440)

    # Two workers each see half a day
    morning = init(AggregateKind.COUNTER_AGG)
    evening = init(AggregateKind.COUNTER_AGG)
    for when, value in samples:
        target = morning if when < START + timedelta(hours=12) else evening
        accumulate(target, Observation(when, value))

    state = combine(evening, morning)
    print(f"Requests served: {state.delta():.0f} across {state.num_resets} restarts")
    print(f"Average rate: {state.rate():.2f} requests/s")

    bounds = Bounds.of(START, START + timedelta(days=1))
    rate = finalize(state, policy=ExtrapolationPolicy.FLAT, bounds=bounds)
    print(f"Rate extrapolated to the whole day: {rate:.2f} requests/s")


def demonstrate_time_weighted():
    print("\n=== Time-Weighted Average Demo ===")
    samples = temperature(1440)
    naive = sum(v for _, v in samples) / len(samples)
    for method in InterpolationMethod:
        state = init(AggregateKind.TIME_WEIGHTED_AVG, method=method)
        for when, value in samples:
            accumulate(state, Observation(when, value))
        print(f"{method.name:>6}: {finalize(state):.3f} C (plain mean {naive:.3f} C)")


def demonstrate_downsampling():
    print("\n=== Downsampling Demo ===")
    samples = temperature(1440 * 7, seed=3)
    print(f"Raw series: {len(samples)} points")

    asap = init(AggregateKind.ASAP, resolution=100)
    lttb = init(AggregateKind.LTTB, resolution=100)
    for when, value in samples:
        accumulate(asap, Observation(when, value))
        accumulate(lttb, Observation(when, value))

    smoothed = finalize(asap)
    print(
        f"ASAP: {len(smoothed)} values every {smoothed.step / 60e6:.0f} minutes, "
        f"range {min(smoothed.values):.2f}..{max(smoothed.values):.2f}"
    )
    points = finalize(lttb)
    print(
        f"LTTB: {len(points)} points, "
        f"range {min(p.value for p in points):.2f}..{max(p.value for p in points):.2f}"
    )


if __name__ == "__main__":
    demonstrate_counter()
    demonstrate_time_weighted()
    demonstrate_downsampling()

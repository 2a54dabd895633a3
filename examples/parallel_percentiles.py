"""
Parallel percentile example for tiny-agg.

This example splits a stream of request latencies across several workers,
builds a partial state per worker, ships the states as bytes, and combines
them on a coordinator, the way a query engine runs a parallel aggregate.
"""

import random
import time

from tiny_agg import AggregateKind, Observation, accumulate, combine, finalize, init
from tiny_agg import from_bytes, to_bytes, view


def simulate_latencies(n, seed=42):
    """Log-normal request latencies in milliseconds with a slow tail."""
    rng = random.Random(seed)
    latencies = []
    for _ in range(n):
        value = rng.lognormvariate(3.0, 0.5)
        if rng.random() < 0.01:
            value *= 20  # occasional slow request
        latencies.append(value)
    return latencies


def run_workers(kind, params, latencies, num_workers):
    """Build one partial state per worker and return their serialized bytes."""
    blobs = []
    for worker in range(num_workers):
        state = init(kind, **params)
        for value in latencies[worker::num_workers]:
            state = accumulate(state, Observation(None, value))
        blobs.append(to_bytes(state))
    return blobs


def demonstrate_quantiles():
    print("\n=== Parallel Percentiles Demo ===")
    latencies = simulate_latencies(200_000)
    ordered = sorted(latencies)

    def exact(q):
        return ordered[min(int(q * len(ordered)), len(ordered) - 1)]

    for kind, params in (
        (AggregateKind.TDIGEST, {"compression": 100}),
        (AggregateKind.UDDSKETCH, {"alpha": 0.005, "max_buckets": 1000}),
    ):
        start = time.time()
        blobs = run_workers(kind, params, latencies, num_workers=4)
        print(f"\n{kind.name}: {[len(b) for b in blobs]} bytes per worker")

        # The coordinator combines the first blob as a borrowed view
        total = from_bytes(blobs[1])
        for blob in blobs[2:]:
            total = combine(total, from_bytes(blob))
        total = combine(view(blobs[0]), total)

        sketch = finalize(total)
        for q in (0.5, 0.9, 0.99, 0.999):
            estimate = sketch.quantile(q)
            true_value = exact(q)
            print(
                f"  p{q * 100:g}: {estimate:8.2f} ms (exact {true_value:8.2f}, "
                f"error {abs(estimate - true_value) / true_value:.2%})"
            )
        print(f"  Time: {time.time() - start:.2f}s")


def demonstrate_distinct_users():
    print("\n=== Distinct Users Demo ===")
    rng = random.Random(7)
    events = [f"user-{rng.randint(0, 50_000)}" for _ in range(150_000)]
    params = {"precision": 12, "seed": 0}
    blobs = run_workers(AggregateKind.HYPERLOGLOG, params, events, num_workers=3)

    total = from_bytes(blobs[0])
    for blob in blobs[1:]:
        total = combine(total, view(blob))

    estimate = finalize(total)
    true_count = len(set(events))
    print(f"Estimated distinct users: {estimate} (true: {true_count})")
    print(f"Relative error: {abs(estimate - true_count) / true_count:.2%}")
    print(f"Serialized size per worker: {len(blobs[0])} bytes")


if __name__ == "__main__":
    demonstrate_quantiles()
    demonstrate_distinct_users()

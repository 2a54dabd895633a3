"""
Largest-Triangle-Three-Buckets downsampling.

LTTB reduces a series to a fixed number of points while keeping its visual
shape. The first and last points are always kept; the points between them
are split into equal buckets and, walking left to right, each bucket
contributes the point that forms the largest triangle with the previously
selected point and the average of the next bucket.

Reference:
    Steinarsson, S. (2013). Downsampling Time Series for Visual
    Representation. MSc thesis, University of Iceland.
"""

from typing import List, Sequence

from tiny_agg.algorithms.series import PointSeriesState
from tiny_agg.core.time_series import TSPoint


def lttb(points: Sequence[TSPoint], threshold: int) -> List[TSPoint]:
    """
    Downsample sorted points to ``threshold`` points.

    Args:
        points: Points sorted by time.
        threshold: Number of points to keep. When it is 0 or not smaller
                   than the input, the input is returned unchanged.

    Returns:
        The selected points, in time order.

    Raises:
        ValueError: If threshold is 1 or 2, which cannot keep both ends
            and a bucket.
    """
    if threshold >= len(points) or threshold == 0:
        return list(points)
    if threshold <= 2:
        raise ValueError("Threshold must be greater than 2")

    sampled = [points[0]]
    every = (len(points) - 2) / (threshold - 2)
    a = 0

    for i in range(threshold - 2):
        # Average of the next bucket, the third triangle vertex
        avg_start = int((i + 1) * every) + 1
        avg_end = min(int((i + 2) * every) + 1, len(points))
        avg_len = avg_end - avg_start
        avg_time = 0.0
        avg_value = 0.0
        for point in points[avg_start:avg_end]:
            avg_time += point.time
            avg_value += point.value
        avg_time /= avg_len
        avg_value /= avg_len

        # Candidates from the current bucket
        range_start = int(i * every) + 1
        range_end = int((i + 1) * every) + 1
        point_a = points[a]

        max_area = -1.0
        next_a = range_start
        for j in range(range_start, range_end):
            candidate = points[j]
            area = abs(
                (point_a.time - avg_time) * (candidate.value - point_a.value)
                - (point_a.time - candidate.time) * (avg_value - point_a.value)
            ) * 0.5
            if area > max_area:
                max_area = area
                next_a = j

        sampled.append(points[next_a])
        a = next_a

    sampled.append(points[-1])
    return sampled


class LTTB(PointSeriesState):
    """
    LTTB downsampling aggregate.

    Example:
        >>> state = LTTB(resolution=500)
        >>> for t, v in readings:
        ...     state.update(t, v)
        >>> points = state.finalize()  # at most 500 TSPoints
    """

    KIND = 7
    MIN_RESOLUTION = 3

    def finalize(self, **options) -> List[TSPoint]:
        """Sort the retained points and downsample them to the resolution."""
        self._mark_finalized()
        return lttb(self.sorted_points(), self._resolution)

"""
ASAP (Automatic Smoothing for Attention Prioritization) for time series.

ASAP smooths a series for display: it picks the moving-average window that
makes the plot as smooth as possible (lowest roughness) while preserving its
large-scale deviations (kurtosis no lower than the original). Candidate
windows come from the peaks of the autocorrelation function, so periodic
structure is kept, and a binary search refines the choice.

Reference:
    Rong, K., & Bailis, P. (2017). ASAP: Prioritizing Attention via Time
    Series Smoothing. Proceedings of the VLDB Endowment, 10(11), 1358-1369.

The aggregate retains its points and does all of the work in finalize:

1. sort by (time, value);
2. resample to an evenly spaced series with linear gap filling;
3. smooth the values with asap_smooth and return them as a NormalSeries.
"""

import logging
import math
from typing import List, Sequence, Tuple

from tiny_agg.algorithms.series import PointSeriesState
from tiny_agg.core.time_series import (
    GapfillMethod,
    NormalSeries,
    TSPoint,
    downsample_to_normal_form,
    median_delta,
)

logger = logging.getLogger(__name__)

# Autocorrelation peaks below this value are not candidate windows
CORRELATION_THRESHOLD = 0.2


def _sma(data: Sequence[float], window: int, slide: int) -> List[float]:
    """Simple moving average with the given window and slide."""
    values = []
    window_start = 0
    total = 0.0
    count = 0
    for i, x in enumerate(data):
        if i - window_start >= window:
            values.append(total / count)
            old_start = window_start
            while window_start < len(data) and window_start - old_start < slide:
                total -= data[window_start]
                count -= 1
                window_start += 1
        total += x
        count += 1
    if count == window:
        values.append(total / count)
    return values


def _kurtosis(data: Sequence[float]) -> float:
    n = len(data)
    if n < 2:
        return 0.0
    mean = sum(data) / n
    variance = sum((x - mean) ** 2 for x in data) / n
    if variance == 0:
        return 0.0
    fourth = sum((x - mean) ** 4 for x in data) / n
    return fourth / (variance * variance)


def _roughness(data: Sequence[float]) -> float:
    """Standard deviation of the first differences."""
    diffs = [b - a for a, b in zip(data, data[1:])]
    if len(diffs) < 2:
        return 0.0
    mean = sum(diffs) / len(diffs)
    return math.sqrt(sum((d - mean) ** 2 for d in diffs) / len(diffs))


class _Autocorrelation:
    """Autocorrelation of a series up to max_lag, normalized by lag 0."""

    def __init__(self, data: Sequence[float], max_lag: int):
        n = len(data)
        mean = sum(data) / n if n else 0.0
        centered = [x - mean for x in data]
        denominator = sum(c * c for c in centered)

        self.correlations: List[float] = [0.0] * max_lag
        if max_lag > 0:
            self.correlations[0] = 1.0
        if denominator > 0:
            for lag in range(1, max_lag):
                numerator = sum(centered[i] * centered[i + lag] for i in range(n - lag))
                self.correlations[lag] = numerator / denominator
        self.max_acf = 0.0

    def find_peaks(self) -> List[int]:
        """Lags of local maxima above the correlation threshold."""
        peaks = []
        corr = self.correlations
        if len(corr) > 1:
            positive = corr[1] > corr[0]
            max_lag = 1
            for i in range(2, len(corr)):
                if not positive and corr[i] > corr[i - 1]:
                    max_lag = i
                    positive = not positive
                elif positive and corr[i] > corr[max_lag]:
                    max_lag = i
                elif positive and corr[i] < corr[i - 1]:
                    if max_lag > 1 and corr[max_lag] > CORRELATION_THRESHOLD:
                        peaks.append(max_lag)
                        if corr[max_lag] > self.max_acf:
                            self.max_acf = corr[max_lag]
                    positive = not positive
        # Without enough periodic structure every lag is a candidate
        if len(peaks) <= 1:
            peaks = list(range(2, len(corr)))
        return peaks


class _Search:
    """Mutable best-window bookkeeping shared by the peak scan and binary search."""

    def __init__(self, data: Sequence[float]):
        self.data = data
        self.original_kurtosis = _kurtosis(data)
        self.min_objective = _roughness(data)
        self.window_size = 1

    def is_feasible(self, window: int) -> Tuple[bool, float]:
        smoothed = _sma(self.data, window, 1)
        if not smoothed:
            return False, 0.0
        return _kurtosis(smoothed) >= self.original_kurtosis, _roughness(smoothed)

    def binary_search(self, head: int, tail: int) -> None:
        while head <= tail:
            window = int(round((head + tail) / 2.0))
            feasible, roughness = self.is_feasible(window)
            if feasible:
                if roughness < self.min_objective:
                    self.window_size = window
                    self.min_objective = roughness
                head = window + 1
            else:
                tail = window - 1


def asap_smooth(data: Sequence[float], resolution: int) -> List[float]:
    """
    Smooth a regularly spaced series with ASAP.

    Args:
        data: Evenly spaced values.
        resolution: Approximate number of values wanted back. Longer inputs
                    are first averaged down to about twice this size.

    Returns:
        The smoothed values.
    """
    if resolution <= 0:
        raise ValueError("Resolution must be positive")
    if len(data) > 2 * resolution:
        period = len(data) // resolution
        data = _sma(data, period, period)
    else:
        data = list(data)
    if len(data) < 2:
        return data

    acf = _Autocorrelation(data, int(round(len(data) / 10.0)))
    peaks = acf.find_peaks()
    search = _Search(data)
    corr = acf.correlations

    lower_bound = 1
    largest_feasible = -1
    tail = len(data) // 10
    for i in range(len(peaks) - 1, -1, -1):
        window = peaks[i]
        if window < lower_bound or window == 1:
            break
        if (
            math.sqrt(max(0.0, 1 - corr[window])) * search.window_size
            > math.sqrt(max(0.0, 1 - corr[search.window_size])) * window
        ):
            continue

        feasible, roughness = search.is_feasible(window)
        if feasible:
            if roughness < search.min_objective:
                search.min_objective = roughness
                search.window_size = window
            if corr[window] < 1:
                lower_bound = int(
                    round(
                        max(
                            window * math.sqrt((acf.max_acf - 1) / (corr[window] - 1)),
                            lower_bound,
                        )
                    )
                )
            if largest_feasible < 0:
                largest_feasible = i

    if largest_feasible >= 0:
        if largest_feasible < len(peaks) - 2:
            tail = peaks[largest_feasible + 1]
        lower_bound = max(lower_bound, peaks[largest_feasible] + 1)

    search.binary_search(lower_bound, min(tail, len(data)))
    logger.debug(
        "ASAP chose window %d for %d values (roughness %g)",
        search.window_size,
        len(data),
        search.min_objective,
    )
    return _sma(data, search.window_size, 1)


def find_downsample_interval(points: Sequence[TSPoint], resolution: int) -> int:
    """
    Bucket width for reducing a sorted series to about ``2 * resolution`` values.

    The width is truncated to a multiple of the median sample spacing so that
    buckets line up with the natural sampling of the series.
    """
    candidate = (points[-1].time - points[0].time) // resolution
    median = median_delta(points)
    if median <= 0:
        return candidate
    interval = candidate // median * median
    return interval if interval > 0 else candidate


class ASAP(PointSeriesState):
    """
    ASAP smoothing aggregate.

    Example:
        >>> state = ASAP(resolution=100)
        >>> for t, v in readings:
        ...     state.update(t, v)
        >>> smoothed = state.finalize()  # NormalSeries
    """

    KIND = 6

    def finalize(self, **options) -> NormalSeries:
        """
        Smooth the retained series.

        Returns:
            An evenly spaced NormalSeries. With fewer than two points (or a
            single distinct timestamp) the points are returned unsmoothed.
        """
        self._mark_finalized()
        points = self.sorted_points()
        if not points:
            return NormalSeries(0, 0, [])
        time_range = points[-1].time - points[0].time
        if len(points) < 2 or time_range == 0:
            return NormalSeries(points[0].time, 0, [p.value for p in points])

        if len(points) >= 2 * self._resolution:
            interval = find_downsample_interval(points, self._resolution)
        else:
            interval = time_range // len(points)
        interval = max(1, interval)

        normal = downsample_to_normal_form(points, interval, GapfillMethod.LINEAR)
        # The last bucket only covers the final point
        values = normal.values[:-1]
        smoothed = asap_smooth(values, self._resolution)
        if not smoothed:
            return NormalSeries(normal.start_time, normal.step, [])
        step = normal.step * len(values) // len(smoothed)
        return NormalSeries(normal.start_time, step, smoothed)

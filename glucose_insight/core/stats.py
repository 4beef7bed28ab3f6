"""
Glucose statistics for events and arbitrary time windows.

Pure functions over reading sets: no I/O, no shared state, deterministic
for identical inputs. Input order is never assumed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Iterable, Optional

import numpy as np

from glucose_insight.storage.models import Event, Reading

# Clinical target band in mg/dL (inclusive on both ends)
RANGE_LOW = 70.0
RANGE_HIGH = 180.0

DEFAULT_TOLERANCE = 0.01


@dataclass(frozen=True)
class EventStats:
    """Glucose statistics for one event's observation window."""
    glucose_at_event: Optional[float]
    min: Optional[float]
    max: Optional[float]
    avg: Optional[float]
    spike: Optional[float]
    peak_time: Optional[datetime]
    reading_count: int

    EMPTY: ClassVar["EventStats"]


EventStats.EMPTY = EventStats(None, None, None, None, None, None, 0)


@dataclass(frozen=True)
class PeriodStats:
    """Aggregate glucose statistics for an arbitrary window."""
    min: Optional[float]
    max: Optional[float]
    avg: Optional[float]
    std_dev: Optional[float]
    time_in_range_pct: Optional[float]
    time_above_range_pct: Optional[float]
    time_below_range_pct: Optional[float]
    reading_count: int
    first_reading: Optional[datetime]
    last_reading: Optional[datetime]

    EMPTY: ClassVar["PeriodStats"]


PeriodStats.EMPTY = PeriodStats(None, None, None, None, None, None, None, 0, None, None)


def _ordered(readings: Iterable[Reading]):
    """Readings sorted by time, with their values as a float array."""
    ordered = sorted(readings, key=lambda r: r.timestamp)
    return ordered, np.array([r.value for r in ordered], dtype=float)


def compute_event_stats(readings: Iterable[Reading], event_time: datetime) -> EventStats:
    """Compute statistics for readings relative to an event instant.

    The glucose value at the event is taken from the reading closest in
    time to ``event_time``; when two readings are equally close the
    earlier one wins. Spike and peak time only consider readings at or
    after the event instant.

    Args:
        readings: Readings in the event window, in any order
        event_time: Reference instant of the event

    Returns:
        EventStats, or EventStats.EMPTY when there are no readings
    """
    ordered, values = _ordered(readings)
    if not ordered:
        return EventStats.EMPTY

    offsets = np.array([(r.timestamp - event_time).total_seconds() for r in ordered])
    # argmin/argmax return the first hit, i.e. the earliest reading on ties
    glucose_at_event = float(values[np.argmin(np.abs(offsets))])

    spike = None
    peak_time = None
    after = np.flatnonzero(offsets >= 0)
    if after.size:
        peak = after[np.argmax(values[after])]
        peak_time = ordered[peak].timestamp
        spike = round(float(values[peak]) - glucose_at_event, 1)

    return EventStats(
        glucose_at_event=glucose_at_event,
        min=float(values.min()),
        max=float(values.max()),
        avg=round(float(np.mean(values)), 1),
        spike=spike,
        peak_time=peak_time,
        reading_count=len(ordered),
    )


def compute_period_stats(readings: Iterable[Reading]) -> PeriodStats:
    """Compute window statistics: extrema, mean, spread and time in range.

    Standard deviation is the population form (divides by n). Range
    percentages are rounded independently and need not sum to 100.

    Args:
        readings: Readings in the window, in any order

    Returns:
        PeriodStats, or PeriodStats.EMPTY when there are no readings
    """
    ordered, values = _ordered(readings)
    if not ordered:
        return PeriodStats.EMPTY

    n = values.size
    in_range = int(np.count_nonzero((values >= RANGE_LOW) & (values <= RANGE_HIGH)))
    above = int(np.count_nonzero(values > RANGE_HIGH))
    below = int(np.count_nonzero(values < RANGE_LOW))

    return PeriodStats(
        min=float(values.min()),
        max=float(values.max()),
        avg=round(float(np.mean(values)), 1),
        std_dev=round(float(np.std(values)), 1),
        time_in_range_pct=round(100.0 * in_range / n, 1),
        time_above_range_pct=round(100.0 * above / n, 1),
        time_below_range_pct=round(100.0 * below / n, 1),
        reading_count=n,
        first_reading=ordered[0].timestamp,
        last_reading=ordered[-1].timestamp,
    )


def stats_equal(
    a: Optional[float],
    b: Optional[float],
    tolerance: float = DEFAULT_TOLERANCE,
) -> bool:
    """Return True if two nullable stats are effectively equal.

    Both None counts as equal; one None does not.
    """
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return abs(a - b) < tolerance


def event_stats_changed(
    event: Event,
    stats: EventStats,
    tolerance: float = DEFAULT_TOLERANCE,
) -> bool:
    """Check whether freshly computed stats differ from those stored on an event.

    Callers use this to skip re-analysis and notifications when new
    readings did not move any statistic.
    """
    if event.reading_count != stats.reading_count:
        return True
    pairs = (
        (event.glucose_at_event, stats.glucose_at_event),
        (event.glucose_min, stats.min),
        (event.glucose_max, stats.max),
        (event.glucose_avg, stats.avg),
        (event.glucose_spike, stats.spike),
    )
    return not all(stats_equal(old, new, tolerance) for old, new in pairs)

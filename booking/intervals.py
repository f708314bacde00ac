"""
Time interval value type.

All intervals are half-open ``[start, end)``: an appointment ending at 10:30
and another starting at 10:30 do not overlap.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from booking.errors import ValidationError


@dataclass(frozen=True, order=True)
class TimeInterval:
    """Half-open ``[start, end)`` interval between two timezone-aware instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValidationError(
                "Interval start must be before its end",
                error_code="INVALID_INTERVAL",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "TimeInterval":
        return cls(start, start + timedelta(minutes=minutes))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        return overlaps(self, other)

    def contains(self, other: "TimeInterval") -> bool:
        return contains(self, other)


def overlaps(a: TimeInterval, b: TimeInterval) -> bool:
    """True iff the intervals share at least one instant (touching ends do not)."""
    return a.start < b.end and b.start < a.end


def contains(outer: TimeInterval, inner: TimeInterval) -> bool:
    """True iff ``inner`` lies entirely within ``outer``."""
    return outer.start <= inner.start and inner.end <= outer.end


def merge_intervals(intervals: Iterable[TimeInterval]) -> list[TimeInterval]:
    """
    Union of intervals as a sorted list of disjoint intervals.

    Overlapping and touching intervals are coalesced.

    Example:
        >>> merge_intervals([TimeInterval(t(10), t(11)), TimeInterval(t(10, 30), t(12))])
        [TimeInterval(t(10), t(12))]
    """
    merged: list[TimeInterval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = TimeInterval(last.start, interval.end)
        else:
            merged.append(interval)
    return merged


def subtract_intervals(
    window: TimeInterval, busy: Iterable[TimeInterval]
) -> list[TimeInterval]:
    """
    Parts of ``window`` not covered by any interval in ``busy``, in order.
    """
    free: list[TimeInterval] = []
    cursor = window.start
    for block in merge_intervals(busy):
        if block.end <= cursor:
            continue
        if block.start >= window.end:
            break
        if block.start > cursor:
            free.append(TimeInterval(cursor, block.start))
        cursor = max(cursor, block.end)
        if cursor >= window.end:
            break
    if cursor < window.end:
        free.append(TimeInterval(cursor, window.end))
    return free

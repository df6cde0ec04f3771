"""
Half-open time intervals and overlap detection.

Every booking occupies ``[start, start + duration)``. Two intervals overlap
when ``a.start < b.end and b.start < a.end``; touching intervals
(``a.end == b.start``) do not, and an empty interval overlaps nothing.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional


@dataclass(frozen=True, order=True)
class TimeInterval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"interval end {self.end} is before start {self.start}")
        for edge in (self.start, self.end):
            if edge.second or edge.microsecond:
                raise ValueError(f"interval edge {edge} is not on a minute boundary")

    @classmethod
    def from_start(cls, start: datetime, minutes: int) -> "TimeInterval":
        return cls(start, start + timedelta(minutes=minutes))

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def overlaps(self, other: "TimeInterval") -> bool:
        if self.is_empty or other.is_empty:
            return False
        return self.start < other.end and other.start < self.end

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def overlaps(a: TimeInterval, b: TimeInterval) -> bool:
    return a.overlaps(b)


def find_conflict(
    candidate: TimeInterval, occupied: Iterable[TimeInterval]
) -> Optional[TimeInterval]:
    """
    Return the earliest-starting interval in ``occupied`` that overlaps
    ``candidate``, or None when the candidate is free.
    """
    hits = [interval for interval in occupied if candidate.overlaps(interval)]
    if not hits:
        return None
    return min(hits)

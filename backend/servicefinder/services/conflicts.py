from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence

from servicefinder.services.errors import SchedulingConflictError, ValidationError


@dataclass(frozen=True)
class Interval:
    """Half-open time range [start, end)."""

    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return intervals_overlap(self.start, self.end, other.start, other.end)

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    # Adjacent intervals (e1 == s2) do not conflict.
    return s1 < e2 and s2 < e1


def validate_interval(start: datetime, end: datetime) -> Interval:
    if end <= start:
        raise ValidationError(f"End time must be after start time ({start.isoformat()} >= {end.isoformat()})")
    return Interval(start=start, end=end)


def find_conflicts(candidate: Interval, existing: Iterable[Any]) -> List[Any]:
    """Return every record in ``existing`` (anything with .start/.end) overlapping ``candidate``."""
    return [item for item in existing if intervals_overlap(candidate.start, candidate.end, item.start, item.end)]


def describe_slot_conflicts(conflicts: Sequence[Any]) -> List[Dict[str, Any]]:
    return [
        {
            "id": slot.id,
            "start": slot.start.isoformat(),
            "end": slot.end.isoformat(),
            "booked": bool(slot.is_booked),
        }
        for slot in conflicts
    ]


def describe_booking_conflicts(conflicts: Sequence[Any]) -> List[Dict[str, Any]]:
    return [
        {
            "id": booking.id,
            "start": booking.scheduled_at.isoformat(),
            "end": booking.estimated_end.isoformat(),
            "status": booking.status,
        }
        for booking in conflicts
    ]


def slot_conflict_error(conflicts: Sequence[Any]) -> SchedulingConflictError:
    details = describe_slot_conflicts(conflicts)
    parts = [
        f"[{item['start']} to {item['end']} ({'BOOKED' if item['booked'] else 'AVAILABLE'})]"
        for item in details
    ]
    return SchedulingConflictError(
        "Time slot conflicts with existing availability" + (": " + ", ".join(parts) if parts else ""),
        conflicts=details,
    )


def booking_conflict_error(conflicts: Sequence[Any]) -> SchedulingConflictError:
    details = describe_booking_conflicts(conflicts)
    parts = [f"[{item['start']} to {item['end']} ({item['status']})]" for item in details]
    return SchedulingConflictError(
        "Time slot not available; provider has a conflicting booking" + (": " + ", ".join(parts) if parts else ""),
        conflicts=details,
    )

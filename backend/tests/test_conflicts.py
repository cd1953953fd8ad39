from datetime import datetime
from types import SimpleNamespace

import pytest

from servicefinder.services.conflicts import (
    Interval,
    booking_conflict_error,
    find_conflicts,
    intervals_overlap,
    slot_conflict_error,
    validate_interval,
)
from servicefinder.services.errors import ValidationError


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2030, 5, 6, hour, minute)


def test_overlapping_intervals_conflict():
    assert intervals_overlap(at(10), at(12), at(11), at(13))
    assert Interval(at(11), at(13)).overlaps(Interval(at(10), at(12)))


def test_adjacent_intervals_do_not_conflict():
    assert not intervals_overlap(at(10), at(12), at(12), at(13))
    assert not intervals_overlap(at(12), at(13), at(10), at(12))


def test_contained_interval_conflicts():
    assert intervals_overlap(at(9), at(17), at(12), at(12, 30))


def test_validate_interval_rejects_empty_or_reversed():
    with pytest.raises(ValidationError):
        validate_interval(at(12), at(12))
    with pytest.raises(ValidationError):
        validate_interval(at(13), at(12))
    assert validate_interval(at(10), at(11, 30)).minutes == 90


def test_find_conflicts_returns_every_overlap():
    existing = [
        SimpleNamespace(id="a", start=at(8), end=at(10)),
        SimpleNamespace(id="b", start=at(10), end=at(11)),
        SimpleNamespace(id="c", start=at(11, 30), end=at(14)),
    ]
    conflicts = find_conflicts(Interval(at(10, 30), at(12)), existing)
    assert [item.id for item in conflicts] == ["b", "c"]


def test_slot_conflict_error_carries_detail():
    slot = SimpleNamespace(id="av_1", start=at(10), end=at(12), is_booked=True)
    error = slot_conflict_error([slot])
    assert "BOOKED" in str(error)
    assert error.conflicts == [
        {"id": "av_1", "start": at(10).isoformat(), "end": at(12).isoformat(), "booked": True}
    ]


def test_booking_conflict_error_names_status():
    booking = SimpleNamespace(id="bk_1", scheduled_at=at(10), estimated_end=at(11), status="CONFIRMED")
    error = booking_conflict_error([booking])
    assert "CONFIRMED" in str(error)
    assert error.conflicts[0]["id"] == "bk_1"

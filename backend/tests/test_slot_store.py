from datetime import date, datetime, time, timedelta

import pytest

from servicefinder.models import RecurrenceRule, TimeSlotTemplate
from servicefinder.services.errors import (
    AlreadyBookedError,
    AuthorizationError,
    BookedSlotError,
    NotFoundError,
    SchedulingConflictError,
    ValidationError,
)
from servicefinder.services.slot_store import day_name
from servicefinder.services.storage import utcnow

MONDAY = date(2030, 5, 6)


def test_create_slot_rejects_overlap_with_detail(stores, provider):
    stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 10),
        end=datetime(2030, 5, 6, 12),
    )
    with pytest.raises(SchedulingConflictError) as excinfo:
        stores.slots.create_slot(
            provider_id=provider.id,
            actor_user_id="pro_1",
            start=datetime(2030, 5, 6, 11),
            end=datetime(2030, 5, 6, 13),
        )
    assert excinfo.value.conflicts[0]["booked"] is False
    assert "AVAILABLE" in str(excinfo.value)


def test_adjacent_slots_are_allowed(stores, provider):
    first = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 10),
        end=datetime(2030, 5, 6, 12),
    )
    second = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 12),
        end=datetime(2030, 5, 6, 13),
    )
    assert first.duration_minutes == 120
    assert second.duration_minutes == 60
    assert [slot.id for slot in stores.slots.list_slots(provider.id)] == [first.id, second.id]


def test_create_slot_validates_before_writing(stores, provider):
    with pytest.raises(ValidationError):
        stores.slots.create_slot(
            provider_id=provider.id,
            actor_user_id="pro_1",
            start=datetime(2030, 5, 6, 12),
            end=datetime(2030, 5, 6, 10),
        )
    with pytest.raises(AuthorizationError):
        stores.slots.create_slot(
            provider_id=provider.id,
            actor_user_id="someone_else",
            start=datetime(2030, 5, 6, 10),
            end=datetime(2030, 5, 6, 11),
        )
    assert stores.slots.list_slots(provider.id) == []


def test_recurring_slot_is_listed_by_weekday(stores, provider):
    slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 9),
        end=datetime(2030, 5, 6, 11),
        recurrence=RecurrenceRule(day_of_week="Monday", start_time=time(9), end_time=time(11)),
    )
    assert slot.is_recurring
    recurring = stores.slots.list_recurring(provider.id, "Monday")
    assert [item.id for item in recurring] == [slot.id]
    assert recurring[0].recurrence.start_time == time(9)
    assert stores.slots.list_recurring(provider.id, "Tuesday") == []


def test_bulk_creation_skips_collisions_and_returns_created(stores, provider):
    stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 8, 9, 30),
        end=datetime(2030, 5, 8, 10, 30),
    )
    days = ["Monday", "Wednesday", "Friday"]
    end_date = MONDAY + timedelta(days=6)
    matching_days = sum(
        1 for offset in range(7) if day_name(MONDAY + timedelta(days=offset)) in days
    )

    created = stores.slots.create_bulk(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start_date=MONDAY,
        end_date=end_date,
        days_of_week=days,
        templates=[
            TimeSlotTemplate(start_time=time(9), end_time=time(10)),
            TimeSlotTemplate(start_time=time(14), end_time=time(15)),
        ],
    )

    assert matching_days == 3
    assert len(created) == matching_days * 2 - 1
    assert {day_name(slot.start.date()) for slot in created} == set(days)
    assert len(stores.slots.list_slots(provider.id)) == len(created) + 1


def test_bulk_creation_rejects_bad_templates_without_writing(stores, provider):
    with pytest.raises(ValidationError):
        stores.slots.create_bulk(
            provider_id=provider.id,
            actor_user_id="pro_1",
            start_date=MONDAY,
            end_date=MONDAY + timedelta(days=6),
            days_of_week=["Monday"],
            templates=[
                TimeSlotTemplate(start_time=time(9), end_time=time(10)),
                TimeSlotTemplate(start_time=time(15), end_time=time(14)),
            ],
        )
    assert stores.slots.list_slots(provider.id) == []


def test_mark_booked_twice_raises(stores, provider):
    slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 10),
        end=datetime(2030, 5, 6, 11),
    )
    assert stores.slots.mark_booked(slot.id).is_booked
    with pytest.raises(AlreadyBookedError):
        stores.slots.mark_booked(slot.id)
    assert not stores.slots.mark_available(slot.id).is_booked
    assert not stores.slots.mark_available(slot.id).is_booked


def test_delete_slot_rules(stores, provider):
    other = stores.directory.add_provider(user_id="pro_2", business_name="Other Co", latitude=19.0, longitude=72.9)
    slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 10),
        end=datetime(2030, 5, 6, 11),
    )

    with pytest.raises(AuthorizationError):
        stores.slots.delete_slot(slot.id, other.id)

    stores.slots.mark_booked(slot.id)
    with pytest.raises(BookedSlotError):
        stores.slots.delete_slot(slot.id, provider.id)

    stores.slots.mark_available(slot.id)
    stores.slots.delete_slot(slot.id, provider.id)
    with pytest.raises(NotFoundError):
        stores.slots.get_slot(slot.id)


def test_unbooked_listing_defaults_to_next_week(stores, provider):
    now = utcnow().replace(microsecond=0)
    soon = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=now + timedelta(days=1),
        end=now + timedelta(days=1, hours=1),
    )
    stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=now + timedelta(days=10),
        end=now + timedelta(days=10, hours=1),
    )
    booked = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=now + timedelta(days=2),
        end=now + timedelta(days=2, hours=1),
    )
    stores.slots.mark_booked(booked.id)

    assert [slot.id for slot in stores.slots.list_unbooked(provider.id)] == [soon.id]
    assert len(stores.slots.list_slots(provider.id, include_booked=True)) == 3


def test_list_for_duration_filters_short_slots(stores, provider):
    stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 9),
        end=datetime(2030, 5, 6, 9, 30),
    )
    long_slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=datetime(2030, 5, 6, 10),
        end=datetime(2030, 5, 6, 12),
    )
    slots = stores.slots.list_for_duration(provider.id, datetime(2030, 5, 6), datetime(2030, 5, 7), 60)
    assert [slot.id for slot in slots] == [long_slot.id]

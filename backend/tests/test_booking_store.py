from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from servicefinder.models import BookingCreateRequest
from servicefinder.services.errors import (
    AlreadyBookedError,
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
    ValidationError,
)

TEN_AM = datetime(2030, 5, 6, 10)


def book(stores, service, customer_id="cust_1", at=TEN_AM, **extra):
    return stores.bookings.create_booking(
        BookingCreateRequest(customer_id=customer_id, service_id=service.id, scheduled_at=at, **extra)
    )


def test_create_booking_snapshots_service(stores, provider, service):
    booking = book(stores, service, customer_latitude=19.0596, customer_longitude=72.8295)
    assert booking.status == "PENDING"
    assert booking.provider_id == provider.id
    assert booking.total_price == 1500.0
    assert booking.estimated_end == TEN_AM + timedelta(minutes=120)
    assert booking.customer_location.latitude == 19.0596
    assert stores.bookings.get_booking(booking.id, actor_user_id="cust_1").id == booking.id


def test_service_without_duration_uses_default_length(stores, provider):
    quick = stores.directory.add_service(
        provider_id=provider.id,
        actor_user_id="pro_1",
        name="Sofa shampoo",
        category="cleaning",
        price=400.0,
    )
    booking = book(stores, quick)
    assert booking.estimated_end - booking.scheduled_at == timedelta(minutes=60)


def test_overlapping_booking_is_rejected_without_persisting(stores, service):
    first = book(stores, service)
    with pytest.raises(SchedulingConflictError) as excinfo:
        book(stores, service, customer_id="cust_2", at=TEN_AM + timedelta(hours=1))
    assert excinfo.value.conflicts[0]["id"] == first.id
    assert excinfo.value.conflicts[0]["status"] == "PENDING"
    assert stores.bookings.list_for_customer("cust_2") == []


def test_adjacent_booking_is_accepted(stores, service):
    book(stores, service)
    second = book(stores, service, customer_id="cust_2", at=TEN_AM + timedelta(hours=2))
    assert second.status == "PENDING"


def test_cancelled_booking_frees_time_but_completed_still_blocks(stores, service):
    first = book(stores, service)
    stores.bookings.cancel(first.id, "cust_1", "no longer needed")
    rebooked = book(stores, service, customer_id="cust_2")

    stores.bookings.confirm(rebooked.id, "pro_1")
    stores.bookings.start(rebooked.id, "pro_1")
    stores.bookings.complete(rebooked.id, "pro_1")
    with pytest.raises(SchedulingConflictError) as excinfo:
        book(stores, service, customer_id="cust_3")
    assert [conflict["id"] for conflict in excinfo.value.conflicts] == [rebooked.id]


def test_concurrent_overlapping_requests_yield_one_booking(stores, service):
    def attempt(index):
        try:
            book(stores, service, customer_id=f"cust_{index}", at=TEN_AM + timedelta(minutes=index))
            return True
        except SchedulingConflictError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert outcomes.count(True) == 1
    assert len(stores.bookings.list_for_provider(service.provider_id)) == 1


def test_provider_cannot_book_own_service(stores, service):
    with pytest.raises(ValidationError):
        book(stores, service, customer_id="pro_1")


def test_unknown_service_is_not_found(stores, provider):
    with pytest.raises(NotFoundError):
        stores.bookings.create_booking(
            BookingCreateRequest(customer_id="cust_1", service_id="svc_missing", scheduled_at=TEN_AM)
        )


def test_booking_with_slot_marks_and_frees_it(stores, provider, service):
    slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=TEN_AM,
        end=TEN_AM + timedelta(hours=3),
    )
    booking = book(stores, service, slot_id=slot.id)
    assert stores.slots.get_slot(slot.id).is_booked

    with pytest.raises(SchedulingConflictError):
        book(stores, service, customer_id="cust_2", slot_id=slot.id)

    stores.bookings.cancel(booking.id, "pro_1", "provider unavailable")
    assert not stores.slots.get_slot(slot.id).is_booked


def test_booked_slot_cannot_be_claimed_again(stores, provider, service):
    slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=TEN_AM,
        end=TEN_AM + timedelta(hours=3),
    )
    stores.slots.mark_booked(slot.id)
    with pytest.raises(AlreadyBookedError):
        book(stores, service, slot_id=slot.id)
    assert stores.bookings.list_for_customer("cust_1") == []


def test_slot_must_contain_booking(stores, provider, service):
    slot = stores.slots.create_slot(
        provider_id=provider.id,
        actor_user_id="pro_1",
        start=TEN_AM,
        end=TEN_AM + timedelta(hours=1),
    )
    with pytest.raises(ValidationError):
        book(stores, service, slot_id=slot.id)
    assert not stores.slots.get_slot(slot.id).is_booked


def test_status_changes_are_role_checked_and_recorded(stores, service):
    booking = book(stores, service)

    with pytest.raises(AuthorizationError):
        stores.bookings.confirm(booking.id, "stranger")
    with pytest.raises(InvalidTransitionError):
        stores.bookings.confirm(booking.id, "cust_1")

    stores.bookings.confirm(booking.id, "pro_1")
    with pytest.raises(InvalidTransitionError) as excinfo:
        stores.bookings.start(booking.id, "cust_1")
    assert excinfo.value.current_status == "CONFIRMED"
    assert excinfo.value.target_status == "IN_PROGRESS"

    started = stores.bookings.start(booking.id, "pro_1")
    assert started.status == "IN_PROGRESS"
    assert started.actual_start is not None

    finished = TEN_AM + timedelta(minutes=110)
    completed = stores.bookings.complete(booking.id, "pro_1", actual_end=finished)
    assert completed.actual_end == finished

    with pytest.raises(InvalidTransitionError):
        stores.bookings.cancel(booking.id, "pro_1", "too late")

    history = stores.bookings.list_history(booking.id, "cust_1")
    assert [(item.from_status, item.to_status) for item in history] == [
        ("none", "PENDING"),
        ("PENDING", "CONFIRMED"),
        ("CONFIRMED", "IN_PROGRESS"),
        ("IN_PROGRESS", "COMPLETED"),
    ]


def test_cancel_records_who_cancelled(stores, service):
    booking = book(stores, service)
    with pytest.raises(ValidationError):
        stores.bookings.cancel(booking.id, "cust_1", "")
    cancelled = stores.bookings.cancel(booking.id, "cust_1", "found someone closer")
    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_by == "customer"
    assert cancelled.cancellation_reason == "found someone closer"
    assert cancelled.cancelled_at is not None


def test_get_booking_is_limited_to_parties(stores, service):
    booking = book(stores, service)
    assert stores.bookings.get_booking(booking.id, actor_user_id="pro_1").id == booking.id
    with pytest.raises(AuthorizationError):
        stores.bookings.get_booking(booking.id, actor_user_id="stranger")


def test_reschedule_rules(stores, service):
    booking = book(stores, service)
    other = book(stores, service, customer_id="cust_2", at=TEN_AM + timedelta(hours=4))

    with pytest.raises(AuthorizationError):
        stores.bookings.reschedule(booking_id=booking.id, actor_user_id="pro_1", scheduled_at=TEN_AM)
    with pytest.raises(SchedulingConflictError):
        stores.bookings.reschedule(
            booking_id=booking.id,
            actor_user_id="cust_1",
            scheduled_at=other.scheduled_at + timedelta(minutes=30),
        )

    moved = stores.bookings.reschedule(
        booking_id=booking.id,
        actor_user_id="cust_1",
        scheduled_at=TEN_AM + timedelta(minutes=30),
    )
    assert moved.scheduled_at == TEN_AM + timedelta(minutes=30)
    assert moved.estimated_end == TEN_AM + timedelta(minutes=150)

    stores.bookings.confirm(booking.id, "pro_1")
    stores.bookings.start(booking.id, "pro_1")
    with pytest.raises(InvalidTransitionError):
        stores.bookings.reschedule(booking_id=booking.id, actor_user_id="cust_1", scheduled_at=TEN_AM)


def test_listing_and_upcoming(stores, provider, service):
    early = book(stores, service)
    late = book(stores, service, at=TEN_AM + timedelta(days=1))
    cancelled = book(stores, service, at=TEN_AM + timedelta(days=2))
    stores.bookings.cancel(cancelled.id, "cust_1", "duplicate")

    assert [item.id for item in stores.bookings.list_for_customer("cust_1")] == [cancelled.id, late.id, early.id]
    assert [item.id for item in stores.bookings.list_for_customer("cust_1", status="CANCELLED")] == [cancelled.id]
    assert [item.id for item in stores.bookings.list_upcoming(customer_id="cust_1")] == [early.id, late.id]
    assert [item.id for item in stores.bookings.list_upcoming(provider_id=provider.id)] == [early.id, late.id]
    with pytest.raises(ValidationError):
        stores.bookings.list_upcoming()


def test_rating_hooks(stores, provider, service):
    booking = book(stores, service)
    eligibility = stores.bookings.rating_eligibility(booking.id, "cust_1")
    assert not eligibility.eligible
    with pytest.raises(ValidationError):
        stores.bookings.record_rating(booking_id=booking.id, customer_id="cust_1", score=5)

    stores.bookings.confirm(booking.id, "pro_1")
    stores.bookings.start(booking.id, "pro_1")
    stores.bookings.complete(booking.id, "pro_1")
    assert stores.bookings.rating_eligibility(booking.id, "cust_1").eligible
    assert not stores.bookings.rating_eligibility(booking.id, "cust_2").eligible

    with pytest.raises(AuthorizationError):
        stores.bookings.record_rating(booking_id=booking.id, customer_id="cust_2", score=4)
    stores.bookings.record_rating(booking_id=booking.id, customer_id="cust_1", score=4, comment="spotless")
    with pytest.raises(SchedulingConflictError):
        stores.bookings.record_rating(booking_id=booking.id, customer_id="cust_1", score=5)

    assert stores.bookings.get_booking(booking.id).rated
    summary = stores.bookings.provider_rating_summary(provider.id)
    assert summary.average_rating == 4.0
    assert summary.rating_count == 1

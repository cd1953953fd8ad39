from typing import Literal, Optional

from fastapi import APIRouter, Header, Query

from servicefinder.auth import assert_actor_authorized
from servicefinder.models import (
    Booking,
    BookingActionRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingRescheduleRequest,
    BookingStatus,
    BookingStatusChange,
    BookingStatusUpdateRequest,
    RatingCreateRequest,
    RatingEligibility,
    RatingRecord,
)
from servicefinder.routers.errors import HANDLED_ERRORS, raise_scheduling_http_error
from servicefinder.services.booking_store import booking_store
from servicefinder.services.directory_store import directory_store

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=Booking)
def create_booking(request: BookingCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return booking_store.create_booking(request)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/upcoming", response_model=list[Booking])
def list_upcoming_bookings(
    user_id: str = Query(...),
    role: Literal["customer", "provider"] = Query(default="customer"),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        if role == "provider":
            provider = directory_store.find_provider_by_user(user_id)
            if provider is None:
                return []
            return booking_store.list_upcoming(provider_id=provider.id)
        return booking_store.list_upcoming(customer_id=user_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/customer/{customer_id}", response_model=list[Booking])
def list_customer_bookings(
    customer_id: str,
    status: Optional[BookingStatus] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=customer_id, authorization=authorization)
    try:
        return booking_store.list_for_customer(customer_id, status=status)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/provider/{provider_id}", response_model=list[Booking])
def list_provider_bookings(
    provider_id: str,
    user_id: str = Query(...),
    status: Optional[BookingStatus] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        directory_store.require_provider_owner(provider_id, user_id)
        return booking_store.list_for_provider(provider_id, status=status)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return booking_store.get_booking(booking_id, actor_user_id=user_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/status", response_model=Booking)
def update_booking_status(
    booking_id: str,
    request: BookingStatusUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_store.update_status(
            booking_id=booking_id,
            actor_user_id=request.actor_user_id,
            status=request.status,
            cancellation_reason=request.cancellation_reason,
            actual_start=request.actual_start,
            actual_end=request.actual_end,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/confirm", response_model=Booking)
def confirm_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_store.confirm(booking_id, request.actor_user_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/start", response_model=Booking)
def start_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_store.start(booking_id, request.actor_user_id, actual_start=request.actual_start)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/complete", response_model=Booking)
def complete_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_store.complete(booking_id, request.actor_user_id, actual_end=request.actual_end)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    request: BookingCancelRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_store.cancel(booking_id, request.actor_user_id, request.reason)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/reschedule", response_model=Booking)
def reschedule_booking(
    booking_id: str,
    request: BookingRescheduleRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_store.reschedule(
            booking_id=booking_id,
            actor_user_id=request.actor_user_id,
            scheduled_at=request.scheduled_at,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChange])
def booking_history(
    booking_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return booking_store.list_history(booking_id, user_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/{booking_id}/rating-eligibility", response_model=RatingEligibility)
def rating_eligibility(
    booking_id: str,
    customer_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=customer_id, authorization=authorization)
    try:
        return booking_store.rating_eligibility(booking_id, customer_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{booking_id}/rating", response_model=RatingRecord)
def rate_booking(
    booking_id: str,
    request: RatingCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return booking_store.record_rating(
            booking_id=booking_id,
            customer_id=request.customer_id,
            score=request.score,
            comment=request.comment,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Header, Query

from servicefinder.auth import assert_actor_authorized
from servicefinder.models import (
    AvailabilitySearchRequest,
    BulkSlotCreateRequest,
    DayName,
    Slot,
    SlotActorRequest,
    SlotCreateRequest,
    SlotMatch,
)
from servicefinder.routers.errors import HANDLED_ERRORS, raise_scheduling_http_error
from servicefinder.services.availability_search import (
    AVAILABLE_TODAY_RADIUS_KM,
    DEFAULT_SEARCH_RADIUS_KM,
    QUICK_SEARCH_DAYS_AHEAD,
    QUICK_SEARCH_LIMIT,
    availability_search,
)
from servicefinder.services.directory_store import directory_store
from servicefinder.services.slot_store import slot_store

router = APIRouter(prefix="/availability", tags=["availability"])


@router.post("/providers/{provider_id}/slots", response_model=Slot)
def create_slot(
    provider_id: str,
    request: SlotCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return slot_store.create_slot(
            provider_id=provider_id,
            actor_user_id=request.actor_user_id,
            start=request.start,
            end=request.end,
            recurrence=request.recurrence,
            notes=request.notes,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/providers/{provider_id}/slots/bulk", response_model=list[Slot])
def create_bulk_slots(
    provider_id: str,
    request: BulkSlotCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return slot_store.create_bulk(
            provider_id=provider_id,
            actor_user_id=request.actor_user_id,
            start_date=request.start_date,
            end_date=request.end_date,
            days_of_week=request.days_of_week,
            templates=request.time_slots,
            notes=request.notes,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/providers/available-today", response_model=list[SlotMatch])
def providers_available_today(
    service_type: Optional[str] = Query(default=None),
    latitude: Optional[float] = Query(default=None),
    longitude: Optional[float] = Query(default=None),
    radius_km: float = Query(default=AVAILABLE_TODAY_RADIUS_KM, gt=0),
):
    try:
        return availability_search.available_today(
            keyword=service_type,
            latitude=latitude,
            longitude=longitude,
            radius_km=radius_km,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/providers/{provider_id}/slots", response_model=list[Slot])
def list_open_slots(
    provider_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
):
    try:
        directory_store.get_provider(provider_id)
        return slot_store.list_unbooked(provider_id, start=start, end=end)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/providers/{provider_id}/slots/all", response_model=list[Slot])
def list_all_slots(
    provider_id: str,
    user_id: str = Query(...),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        directory_store.require_provider_owner(provider_id, user_id)
        return slot_store.list_slots(provider_id, start=start, end=end, include_booked=True)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/providers/{provider_id}/slots/recurring", response_model=list[Slot])
def list_recurring_slots(provider_id: str, day_of_week: DayName = Query(...)):
    try:
        return slot_store.list_recurring(provider_id, day_of_week)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/search", response_model=list[SlotMatch])
def search_availability(request: AvailabilitySearchRequest):
    try:
        return availability_search.search(request)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/search/quick", response_model=list[SlotMatch])
def quick_search(
    service_type: Optional[str] = Query(default=None),
    latitude: Optional[float] = Query(default=None),
    longitude: Optional[float] = Query(default=None),
    radius_km: float = Query(default=DEFAULT_SEARCH_RADIUS_KM, gt=0),
    duration_minutes: Optional[int] = Query(default=None, ge=15),
    days_ahead: int = Query(default=QUICK_SEARCH_DAYS_AHEAD, gt=0),
    limit: int = Query(default=QUICK_SEARCH_LIMIT, gt=0),
):
    try:
        return availability_search.quick_search(
            keyword=service_type,
            latitude=latitude,
            longitude=longitude,
            radius_km=radius_km,
            duration_minutes=duration_minutes,
            days_ahead=days_ahead,
            limit=limit,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/slots/{slot_id}/book", response_model=Slot)
def book_slot(slot_id: str, request: SlotActorRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        slot = slot_store.get_slot(slot_id)
        directory_store.require_provider_owner(slot.provider_id, request.actor_user_id)
        return slot_store.mark_booked(slot_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/slots/{slot_id}/unbook", response_model=Slot)
def unbook_slot(slot_id: str, request: SlotActorRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        slot = slot_store.get_slot(slot_id)
        directory_store.require_provider_owner(slot.provider_id, request.actor_user_id)
        return slot_store.mark_available(slot_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.delete("/slots/{slot_id}")
def delete_slot(
    slot_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        provider = directory_store.find_provider_by_user(actor_user_id)
        slot_store.delete_slot(slot_id, provider.id if provider else None)
        return {"deleted": True, "slot_id": slot_id}
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)

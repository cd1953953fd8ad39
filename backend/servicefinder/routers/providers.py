from typing import Optional

from fastapi import APIRouter, Header

from servicefinder.auth import assert_actor_authorized
from servicefinder.models import (
    Provider,
    ProviderAvailabilityRequest,
    ProviderCreateRequest,
    RatingSummary,
    ServiceCreateRequest,
    ServiceOffering,
)
from servicefinder.routers.errors import HANDLED_ERRORS, raise_scheduling_http_error
from servicefinder.services.booking_store import booking_store
from servicefinder.services.directory_store import directory_store

router = APIRouter(prefix="/providers", tags=["providers"])


def _with_rating(provider: Provider) -> Provider:
    summary = booking_store.provider_rating_summary(provider.id)
    return provider.model_copy(
        update={"average_rating": summary.average_rating, "rating_count": summary.rating_count}
    )


@router.post("", response_model=Provider)
def register_provider(request: ProviderCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    try:
        return directory_store.add_provider(
            user_id=request.user_id,
            business_name=request.business_name,
            latitude=request.latitude,
            longitude=request.longitude,
            service_radius_km=request.service_radius_km,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/{provider_id}", response_model=Provider)
def get_provider(provider_id: str):
    try:
        return _with_rating(directory_store.get_provider(provider_id))
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{provider_id}/availability", response_model=Provider)
def set_provider_availability(
    provider_id: str,
    request: ProviderAvailabilityRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    try:
        return directory_store.set_provider_available(
            provider_id=provider_id,
            actor_user_id=request.user_id,
            available=request.available,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.post("/{provider_id}/services", response_model=ServiceOffering)
def add_service(
    provider_id: str,
    request: ServiceCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return directory_store.add_service(
            provider_id=provider_id,
            actor_user_id=request.actor_user_id,
            name=request.name,
            category=request.category,
            price=request.price,
            duration_minutes=request.duration_minutes,
            latitude=request.latitude,
            longitude=request.longitude,
        )
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/{provider_id}/services", response_model=list[ServiceOffering])
def list_services(provider_id: str):
    try:
        directory_store.get_provider(provider_id)
        return directory_store.list_services(provider_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/{provider_id}/rating", response_model=RatingSummary)
def get_provider_rating(provider_id: str):
    try:
        directory_store.get_provider(provider_id)
        return booking_store.provider_rating_summary(provider_id)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)

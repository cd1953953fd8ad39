from fastapi import APIRouter, Query

from servicefinder.models import BoundingBox, DistanceResponse, GeoPoint, ProviderWithDistance
from servicefinder.routers.errors import HANDLED_ERRORS, raise_scheduling_http_error
from servicefinder.services import geo_index
from servicefinder.services.availability_search import DEFAULT_SEARCH_RADIUS_KM
from servicefinder.services.directory_store import directory_store

router = APIRouter(prefix="/geo", tags=["geo"])


@router.get("/distance", response_model=DistanceResponse)
def distance(
    lat1: float = Query(...),
    lon1: float = Query(...),
    lat2: float = Query(...),
    lon2: float = Query(...),
):
    try:
        km = geo_index.distance_km(GeoPoint(latitude=lat1, longitude=lon1), GeoPoint(latitude=lat2, longitude=lon2))
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)
    return DistanceResponse(distance_km=km, distance_miles=round(geo_index.km_to_miles(km), 3))


@router.get("/providers/nearby", response_model=list[ProviderWithDistance])
def nearby_providers(
    latitude: float = Query(...),
    longitude: float = Query(...),
    radius_km: float = Query(default=DEFAULT_SEARCH_RADIUS_KM),
):
    try:
        return directory_store.list_providers_within_radius(GeoPoint(latitude=latitude, longitude=longitude), radius_km)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/providers/serving", response_model=list[ProviderWithDistance])
def providers_serving(latitude: float = Query(...), longitude: float = Query(...)):
    try:
        return directory_store.list_providers_serving(GeoPoint(latitude=latitude, longitude=longitude))
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)


@router.get("/bounding-box", response_model=BoundingBox)
def bounding_box(
    latitude: float = Query(...),
    longitude: float = Query(...),
    radius_km: float = Query(default=DEFAULT_SEARCH_RADIUS_KM),
):
    try:
        return geo_index.bounding_box(GeoPoint(latitude=latitude, longitude=longitude), radius_km)
    except HANDLED_ERRORS as exc:
        raise_scheduling_http_error(exc)

"""Read path used before booking: which providers have open slots that fit."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from servicefinder.env import parse_positive_float_env
from servicefinder.models import AvailabilitySearchRequest, GeoPoint, Provider, ServiceSummary, SlotMatch
from servicefinder.services import geo_index
from servicefinder.services.directory_store import DirectoryStore, directory_store
from servicefinder.services.errors import ValidationError
from servicefinder.services.slot_store import SlotStore, slot_store
from servicefinder.services.storage import normalize_datetime, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_RADIUS_KM = parse_positive_float_env("DEFAULT_SEARCH_RADIUS_KM", 20.0)
QUICK_SEARCH_DAYS_AHEAD = 7
QUICK_SEARCH_LIMIT = 20
AVAILABLE_TODAY_RADIUS_KM = 50.0


class AvailabilitySearch:
    def __init__(self, directory: DirectoryStore, slots: SlotStore) -> None:
        self.directory = directory
        self.slots = slots

    def _search_point(self, criteria: AvailabilitySearchRequest) -> Optional[GeoPoint]:
        if criteria.latitude is None and criteria.longitude is None:
            return None
        if criteria.latitude is None or criteria.longitude is None:
            raise ValidationError("Both latitude and longitude are required for a location search")
        return geo_index.validate_point(
            GeoPoint(latitude=criteria.latitude, longitude=criteria.longitude),
            field="search center",
        )

    def _candidates(
        self,
        criteria: AvailabilitySearchRequest,
        point: Optional[GeoPoint],
    ) -> List[Tuple[Provider, Optional[float]]]:
        if criteria.provider_id:
            provider = self.directory.get_provider(criteria.provider_id)
            distance = None
            if point is not None and provider.location is not None:
                distance = geo_index.distance_km(point, provider.location)
            return [(provider, distance)]
        if point is not None:
            radius = criteria.radius_km if criteria.radius_km is not None else DEFAULT_SEARCH_RADIUS_KM
            return [
                (item.provider, item.distance_km)
                for item in self.directory.list_providers_within_radius(point, radius)
            ]
        return [(provider, None) for provider in self.directory.list_available_providers()]

    def search(self, criteria: AvailabilitySearchRequest) -> List[SlotMatch]:
        start = normalize_datetime(criteria.start_date)
        end = normalize_datetime(criteria.end_date)
        if end <= start:
            raise ValidationError("Search end date must be after start date")
        if criteria.limit is not None and criteria.limit <= 0:
            raise ValidationError("Search limit must be positive")
        if criteria.radius_km is not None:
            geo_index.validate_radius(criteria.radius_km)
        point = self._search_point(criteria)

        candidates = self._candidates(criteria, point)
        keyword = (criteria.service_type or "").strip()
        if keyword:
            candidates = [
                (provider, distance)
                for provider, distance in candidates
                if self.directory.provider_offers(provider.id, keyword)
            ]

        matches: List[SlotMatch] = []
        for provider, distance in candidates:
            if criteria.duration_minutes:
                slots = self.slots.list_for_duration(provider.id, start, end, criteria.duration_minutes)
            else:
                slots = self.slots.list_unbooked_starting(provider.id, start, end)
            if not slots:
                continue
            services = [
                ServiceSummary(
                    id=service.id,
                    name=service.name,
                    category=service.category,
                    price=service.price,
                    duration_minutes=service.duration_minutes,
                )
                for service in self.directory.list_services(provider.id)
            ]
            for slot in slots:
                matches.append(
                    SlotMatch(
                        slot=slot,
                        provider_id=provider.id,
                        business_name=provider.business_name,
                        distance_km=distance,
                        services=services,
                    )
                )

        # Truncation happens before ordering: the limit keeps the first matches in provider order.
        if criteria.limit is not None:
            matches = matches[: criteria.limit]
        if criteria.sort_by_time:
            matches.sort(key=lambda match: match.slot.start)
        logger.info(
            "Availability search keyword=%r providers=%d matches=%d",
            keyword or None,
            len(candidates),
            len(matches),
        )
        return matches

    def quick_search(
        self,
        *,
        keyword: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius_km: float = DEFAULT_SEARCH_RADIUS_KM,
        duration_minutes: Optional[int] = None,
        days_ahead: int = QUICK_SEARCH_DAYS_AHEAD,
        limit: int = QUICK_SEARCH_LIMIT,
    ) -> List[SlotMatch]:
        if days_ahead <= 0:
            raise ValidationError("days_ahead must be positive")
        now = utcnow()
        return self.search(
            AvailabilitySearchRequest(
                service_type=keyword,
                start_date=now,
                end_date=now + timedelta(days=days_ahead),
                duration_minutes=duration_minutes,
                latitude=latitude,
                longitude=longitude,
                radius_km=radius_km,
                limit=limit,
            )
        )

    def available_today(
        self,
        *,
        keyword: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius_km: float = AVAILABLE_TODAY_RADIUS_KM,
        now: Optional[datetime] = None,
    ) -> List[SlotMatch]:
        """Open slots from now until midnight UTC."""
        now = normalize_datetime(now) if now else utcnow()
        midnight = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
        return self.search(
            AvailabilitySearchRequest(
                service_type=keyword,
                start_date=now,
                end_date=midnight,
                latitude=latitude,
                longitude=longitude,
                radius_km=radius_km,
                limit=None,
            )
        )


availability_search = AvailabilitySearch(directory=directory_store, slots=slot_store)

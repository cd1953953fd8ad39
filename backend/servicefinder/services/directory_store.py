"""Provider identity and service-catalog records consumed by the scheduling core."""

import logging
import sqlite3
from typing import List, Optional, Tuple
from uuid import uuid4

from servicefinder.models import GeoPoint, Provider, ProviderWithDistance, ServiceOffering
from servicefinder.services import geo_index
from servicefinder.services.errors import (
    AuthorizationError,
    NotFoundError,
    SchedulingConflictError,
    ValidationError,
)
from servicefinder.services.storage import DB_PATH, SqliteStore, provider_locks, to_db, utcnow

logger = logging.getLogger(__name__)


class DirectoryStore(SqliteStore):
    def _init_db(self) -> None:
        with self._write() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    business_name TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    service_radius_km REAL NOT NULL DEFAULT 50,
                    available INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS services (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL REFERENCES providers(id),
                    name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    price REAL NOT NULL,
                    duration_minutes INTEGER,
                    latitude REAL,
                    longitude REAL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_providers_lat_lon ON providers (latitude, longitude)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_services_provider ON services (provider_id)")

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = GeoPoint(latitude=row["latitude"], longitude=row["longitude"])
        return Provider(
            id=row["id"],
            user_id=row["user_id"],
            business_name=row["business_name"],
            location=location,
            service_radius_km=float(row["service_radius_km"]),
            available=bool(row["available"]),
        )

    def _row_to_service(self, row: sqlite3.Row) -> ServiceOffering:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = GeoPoint(latitude=row["latitude"], longitude=row["longitude"])
        return ServiceOffering(
            id=row["id"],
            provider_id=row["provider_id"],
            name=row["name"],
            category=row["category"],
            price=float(row["price"]),
            duration_minutes=row["duration_minutes"],
            location=location,
        )

    def _validated_location(
        self,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> Optional[GeoPoint]:
        if latitude is None and longitude is None:
            return None
        if latitude is None or longitude is None:
            raise ValidationError("Both latitude and longitude are required for a location")
        return geo_index.validate_point(GeoPoint(latitude=latitude, longitude=longitude), field="location")

    def add_provider(
        self,
        *,
        user_id: str,
        business_name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        service_radius_km: float = 50.0,
    ) -> Provider:
        name = business_name.strip()
        if not user_id.strip():
            raise ValidationError("user_id is required")
        if not name:
            raise ValidationError("business_name is required")
        geo_index.validate_radius(service_radius_km)
        location = self._validated_location(latitude, longitude)

        provider = Provider(
            id=f"prv_{uuid4().hex[:10]}",
            user_id=user_id,
            business_name=name,
            location=location,
            service_radius_km=service_radius_km,
            available=True,
        )
        with self._write() as conn:
            existing = conn.execute("SELECT id FROM providers WHERE user_id = ?", (user_id,)).fetchone()
            if existing:
                raise SchedulingConflictError(f"User {user_id} already has provider profile {existing['id']}")
            conn.execute(
                """
                INSERT INTO providers (id, user_id, business_name, latitude, longitude, service_radius_km, available, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    provider.id,
                    provider.user_id,
                    provider.business_name,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    provider.service_radius_km,
                    to_db(utcnow()),
                ),
            )
        logger.info("Registered provider %s for user %s", provider.id, user_id)
        return provider

    def get_provider(self, provider_id: str) -> Provider:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Provider {provider_id} not found")
        return self._row_to_provider(row)

    def find_provider_by_user(self, user_id: str) -> Optional[Provider]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM providers WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def require_provider_owner(self, provider_id: str, actor_user_id: str) -> Provider:
        provider = self.get_provider(provider_id)
        if provider.user_id != actor_user_id:
            logger.warning("User %s denied access to provider %s", actor_user_id, provider_id)
            raise AuthorizationError(f"User {actor_user_id} does not control provider {provider_id}")
        return provider

    def set_provider_available(self, *, provider_id: str, actor_user_id: str, available: bool) -> Provider:
        self.require_provider_owner(provider_id, actor_user_id)
        with self._write() as conn:
            conn.execute("UPDATE providers SET available = ? WHERE id = ?", (1 if available else 0, provider_id))
        logger.info("Provider %s availability set to %s", provider_id, available)
        return self.get_provider(provider_id)

    def list_available_providers(self) -> List[Provider]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM providers WHERE available = 1 ORDER BY created_at, id").fetchall()
        return [self._row_to_provider(row) for row in rows]

    def list_providers_within_radius(self, center: GeoPoint, radius_km: float) -> List[ProviderWithDistance]:
        """Available providers within ``radius_km`` of ``center``, nearest first."""
        geo_index.validate_point(center, field="search center")
        geo_index.validate_radius(radius_km)
        boxes = geo_index.bounding_boxes(center, radius_km * geo_index.PREFILTER_MARGIN)
        box_clause = " OR ".join(
            "(latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?)" for _ in boxes
        )
        params: List[float] = []
        for box in boxes:
            params.extend((box.min_lat, box.max_lat, box.min_lon, box.max_lon))
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM providers WHERE available = 1 AND ({box_clause})",
                params,
            ).fetchall()
        candidates: List[Tuple[Provider, GeoPoint]] = []
        for row in rows:
            provider = self._row_to_provider(row)
            if provider.location is not None:
                candidates.append((provider, provider.location))
        return [
            ProviderWithDistance(provider=provider, distance_km=km)
            for provider, km in geo_index.filter_within_radius(center, radius_km, candidates)
        ]

    def list_providers_serving(self, point: GeoPoint) -> List[ProviderWithDistance]:
        """Available providers whose own service radius reaches ``point``, nearest first."""
        geo_index.validate_point(point, field="customer location")
        matches: List[ProviderWithDistance] = []
        for provider in self.list_available_providers():
            if provider.location is None:
                continue
            km = geo_index.distance_km(point, provider.location)
            if km <= provider.service_radius_km:
                matches.append(ProviderWithDistance(provider=provider, distance_km=km))
        matches.sort(key=lambda item: item.distance_km)
        return matches

    def add_service(
        self,
        *,
        provider_id: str,
        actor_user_id: str,
        name: str,
        category: str,
        price: float,
        duration_minutes: Optional[int] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> ServiceOffering:
        self.require_provider_owner(provider_id, actor_user_id)
        if not name.strip():
            raise ValidationError("Service name is required")
        if not category.strip():
            raise ValidationError("Service category is required")
        if price < 0:
            raise ValidationError("Service price cannot be negative")
        if duration_minutes is not None and duration_minutes <= 0:
            raise ValidationError("Service duration must be positive")
        location = self._validated_location(latitude, longitude)

        service = ServiceOffering(
            id=f"svc_{uuid4().hex[:10]}",
            provider_id=provider_id,
            name=name.strip(),
            category=category.strip(),
            price=price,
            duration_minutes=duration_minutes,
            location=location,
        )
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO services (id, provider_id, name, category, price, duration_minutes, latitude, longitude, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    service.id,
                    service.provider_id,
                    service.name,
                    service.category,
                    service.price,
                    service.duration_minutes,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    to_db(utcnow()),
                ),
            )
        logger.info("Provider %s added service %s (%s)", provider_id, service.id, service.category)
        return service

    def get_service(self, service_id: str) -> ServiceOffering:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Service {service_id} not found")
        return self._row_to_service(row)

    def list_services(self, provider_id: str) -> List[ServiceOffering]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM services WHERE provider_id = ? ORDER BY created_at, id",
                (provider_id,),
            ).fetchall()
        return [self._row_to_service(row) for row in rows]

    def provider_offers(self, provider_id: str, keyword: str) -> bool:
        """True when any service's category or name contains ``keyword`` (case-insensitive)."""
        needle = keyword.strip().lower()
        if not needle:
            return True
        return any(
            needle in service.category.lower() or needle in service.name.lower()
            for service in self.list_services(provider_id)
        )


directory_store = DirectoryStore(db_path=DB_PATH, provider_locks=provider_locks)

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, List, Optional
from uuid import uuid4

from servicefinder.env import parse_positive_int_env
from servicefinder.models import (
    Booking,
    BookingCreateRequest,
    BookingStatusChange,
    GeoPoint,
    RatingEligibility,
    RatingRecord,
    RatingSummary,
)
from servicefinder.services import booking_state, geo_index
from servicefinder.services.conflicts import Interval, booking_conflict_error, validate_interval
from servicefinder.services.directory_store import DirectoryStore, directory_store
from servicefinder.services.errors import (
    AlreadyBookedError,
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
    ValidationError,
)
from servicefinder.services.storage import (
    DB_PATH,
    ProviderLocks,
    SqliteStore,
    from_db,
    normalize_datetime,
    provider_locks,
    to_db,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_DURATION_MINUTES = parse_positive_int_env("DEFAULT_SERVICE_DURATION_MINUTES", 60)


class BookingStore(SqliteStore):
    def __init__(
        self,
        db_path: str,
        directory: DirectoryStore,
        provider_locks: Optional[ProviderLocks] = None,
    ) -> None:
        self.directory = directory
        super().__init__(db_path=db_path, provider_locks=provider_locks or directory.provider_locks)

    def _init_db(self) -> None:
        with self._write() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    service_id TEXT NOT NULL,
                    slot_id TEXT,
                    scheduled_at TEXT NOT NULL,
                    estimated_end TEXT NOT NULL,
                    actual_start TEXT,
                    actual_end TEXT,
                    status TEXT NOT NULL,
                    total_price REAL NOT NULL,
                    notes TEXT NOT NULL DEFAULT '',
                    customer_address TEXT,
                    customer_latitude REAL,
                    customer_longitude REAL,
                    cancellation_reason TEXT,
                    cancelled_by TEXT,
                    cancelled_at TEXT,
                    created_at TEXT NOT NULL,
                    CHECK (estimated_end > scheduled_at)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bookings_provider_time ON bookings (provider_id, scheduled_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_customer ON bookings (customer_id)")
            # Exclusion constraint: active bookings of one provider never overlap.
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS bookings_no_overlap_insert
                BEFORE INSERT ON bookings
                WHEN NEW.status != 'CANCELLED' AND EXISTS (
                    SELECT 1 FROM bookings
                    WHERE provider_id = NEW.provider_id
                      AND status != 'CANCELLED'
                      AND scheduled_at < NEW.estimated_end
                      AND NEW.scheduled_at < estimated_end
                )
                BEGIN
                    SELECT RAISE(ABORT, 'booking_overlap');
                END
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS bookings_no_overlap_update
                BEFORE UPDATE OF scheduled_at, estimated_end ON bookings
                WHEN NEW.status != 'CANCELLED' AND EXISTS (
                    SELECT 1 FROM bookings
                    WHERE provider_id = NEW.provider_id
                      AND id != NEW.id
                      AND status != 'CANCELLED'
                      AND scheduled_at < NEW.estimated_end
                      AND NEW.scheduled_at < estimated_end
                )
                BEGIN
                    SELECT RAISE(ABORT, 'booking_overlap');
                END
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_status_history (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL,
                    actor_user_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_ratings (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL UNIQUE,
                    provider_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    score INTEGER NOT NULL CHECK (score BETWEEN 1 AND 5),
                    comment TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )

    def _row_to_booking(self, row: sqlite3.Row, rated: bool = False) -> Booking:
        location = None
        if row["customer_latitude"] is not None and row["customer_longitude"] is not None:
            location = GeoPoint(latitude=row["customer_latitude"], longitude=row["customer_longitude"])
        return Booking(
            id=row["id"],
            customer_id=row["customer_id"],
            provider_id=row["provider_id"],
            service_id=row["service_id"],
            slot_id=row["slot_id"],
            scheduled_at=from_db(row["scheduled_at"]),
            estimated_end=from_db(row["estimated_end"]),
            actual_start=from_db(row["actual_start"]),
            actual_end=from_db(row["actual_end"]),
            status=row["status"],
            total_price=float(row["total_price"]),
            notes=row["notes"],
            customer_address=row["customer_address"],
            customer_location=location,
            cancellation_reason=row["cancellation_reason"],
            cancelled_by=row["cancelled_by"],
            cancelled_at=from_db(row["cancelled_at"]),
            rated=rated,
            created_at=from_db(row["created_at"]),
        )

    def _load(self, conn: sqlite3.Connection, booking_id: str) -> Booking:
        row = conn.execute(
            """
            SELECT b.*, r.id AS rating_id
            FROM bookings b
            LEFT JOIN booking_ratings r ON r.booking_id = b.id
            WHERE b.id = ?
            """,
            (booking_id,),
        ).fetchone()
        if not row:
            raise NotFoundError(f"Booking {booking_id} not found")
        return self._row_to_booking(row, rated=row["rating_id"] is not None)

    def _active_overlapping(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        candidate: Interval,
        ignore_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        active = sorted(booking_state.ACTIVE_STATUSES)
        placeholders = ", ".join("?" for _ in active)
        rows = conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE provider_id = ?
              AND status IN ({placeholders})
              AND scheduled_at < ?
              AND estimated_end > ?
            ORDER BY scheduled_at
            """,
            (provider_id, *active, to_db(candidate.end), to_db(candidate.start)),
        ).fetchall()
        return [self._row_to_booking(row) for row in rows if row["id"] != ignore_booking_id]

    def _record_history(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor_user_id, from_status, to_status, note, to_db(utcnow())),
        )

    def _claim_slot(self, conn: sqlite3.Connection, slot_id: str, provider_id: str, interval: Interval) -> None:
        row = conn.execute("SELECT * FROM availability_slots WHERE id = ?", (slot_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Availability slot {slot_id} not found")
        if row["provider_id"] != provider_id:
            raise ValidationError(f"Slot {slot_id} does not belong to provider {provider_id}")
        slot_interval = Interval(from_db(row["start_at"]), from_db(row["end_at"]))
        if not slot_interval.contains(interval):
            raise ValidationError(
                f"Booking {interval.start.isoformat()} - {interval.end.isoformat()} does not fit inside slot "
                f"{slot_interval.start.isoformat()} - {slot_interval.end.isoformat()}"
            )
        if row["is_booked"]:
            raise AlreadyBookedError(
                f"Slot {slot_id} is already booked",
                conflicts=[
                    {
                        "id": slot_id,
                        "start": slot_interval.start.isoformat(),
                        "end": slot_interval.end.isoformat(),
                        "booked": True,
                    }
                ],
            )
        conn.execute("UPDATE availability_slots SET is_booked = 1 WHERE id = ?", (slot_id,))

    def _release_slot(self, conn: sqlite3.Connection, slot_id: Optional[str]) -> None:
        if slot_id:
            conn.execute("UPDATE availability_slots SET is_booked = 0 WHERE id = ?", (slot_id,))

    def create_booking(self, request: BookingCreateRequest) -> Booking:
        """Check active bookings and insert the PENDING booking as one atomic unit."""
        service = self.directory.get_service(request.service_id)
        provider = self.directory.get_provider(service.provider_id)
        if provider.user_id == request.customer_id:
            raise ValidationError("Providers cannot book their own services")

        scheduled_at = normalize_datetime(request.scheduled_at)
        duration = service.duration_minutes or DEFAULT_SERVICE_DURATION_MINUTES
        candidate = validate_interval(scheduled_at, scheduled_at + timedelta(minutes=duration))

        customer_location = None
        if request.customer_latitude is not None or request.customer_longitude is not None:
            if request.customer_latitude is None or request.customer_longitude is None:
                raise ValidationError("Both customer latitude and longitude are required")
            customer_location = geo_index.validate_point(
                GeoPoint(latitude=request.customer_latitude, longitude=request.customer_longitude),
                field="customer location",
            )

        booking = Booking(
            id=f"bk_{uuid4().hex[:10]}",
            customer_id=request.customer_id,
            provider_id=provider.id,
            service_id=service.id,
            slot_id=request.slot_id,
            scheduled_at=candidate.start,
            estimated_end=candidate.end,
            status=booking_state.PENDING,
            total_price=service.price,
            notes=request.notes,
            customer_address=request.customer_address,
            customer_location=customer_location,
            created_at=utcnow(),
        )
        try:
            with self._write(provider.id) as conn:
                conflicts = self._active_overlapping(conn, provider.id, candidate)
                if conflicts:
                    logger.warning(
                        "Booking for provider %s at %s rejected: %d conflicting bookings",
                        provider.id,
                        candidate.start,
                        len(conflicts),
                    )
                    raise booking_conflict_error(conflicts)
                if request.slot_id:
                    self._claim_slot(conn, request.slot_id, provider.id, candidate)
                conn.execute(
                    """
                    INSERT INTO bookings (
                        id, customer_id, provider_id, service_id, slot_id, scheduled_at, estimated_end,
                        status, total_price, notes, customer_address, customer_latitude, customer_longitude, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        booking.id,
                        booking.customer_id,
                        booking.provider_id,
                        booking.service_id,
                        booking.slot_id,
                        to_db(booking.scheduled_at),
                        to_db(booking.estimated_end),
                        booking.status,
                        booking.total_price,
                        booking.notes,
                        booking.customer_address,
                        customer_location.latitude if customer_location else None,
                        customer_location.longitude if customer_location else None,
                        to_db(booking.created_at),
                    ),
                )
                self._record_history(conn, booking.id, request.customer_id, "none", booking.status, "booking requested")
        except sqlite3.IntegrityError as exc:
            logger.warning("Booking insert for provider %s rejected by overlap constraint", provider.id)
            raise SchedulingConflictError("Time slot not available; provider has a conflicting booking") from exc
        logger.info(
            "Created booking %s for customer %s with provider %s at %s",
            booking.id,
            booking.customer_id,
            provider.id,
            booking.scheduled_at,
        )
        return booking

    def get_booking(self, booking_id: str, actor_user_id: Optional[str] = None) -> Booking:
        """Load a booking; when ``actor_user_id`` is given it must be a party to the booking."""
        with self._read() as conn:
            booking = self._load(conn, booking_id)
        if actor_user_id is not None:
            provider = self.directory.get_provider(booking.provider_id)
            booking_state.resolve_actor_role(booking, actor_user_id, provider.user_id)
        return booking

    def update_status(
        self,
        *,
        booking_id: str,
        actor_user_id: str,
        status: str,
        cancellation_reason: Optional[str] = None,
        actual_start: Optional[datetime] = None,
        actual_end: Optional[datetime] = None,
    ) -> Booking:
        booking = self.get_booking(booking_id)
        provider = self.directory.get_provider(booking.provider_id)
        role = booking_state.resolve_actor_role(booking, actor_user_id, provider.user_id)

        with self._write(provider.id) as conn:
            current = self._load(conn, booking_id)
            updates = booking_state.plan_transition(
                current,
                role,
                status,
                now=utcnow(),
                cancellation_reason=cancellation_reason,
                actual_start=normalize_datetime(actual_start) if actual_start else None,
                actual_end=normalize_datetime(actual_end) if actual_end else None,
            )
            assignments = ", ".join(f"{column} = ?" for column in updates)
            values: List[Any] = [
                to_db(value) if isinstance(value, datetime) else value for value in updates.values()
            ]
            conn.execute(f"UPDATE bookings SET {assignments} WHERE id = ?", (*values, booking_id))
            if updates["status"] == booking_state.CANCELLED:
                self._release_slot(conn, current.slot_id)
            self._record_history(
                conn,
                booking_id,
                actor_user_id,
                current.status,
                updates["status"],
                updates.get("cancellation_reason", ""),
            )
            updated = self._load(conn, booking_id)
        logger.info(
            "Booking %s moved %s -> %s by %s %s",
            booking_id,
            current.status,
            updated.status,
            role,
            actor_user_id,
        )
        return updated

    def confirm(self, booking_id: str, actor_user_id: str) -> Booking:
        return self.update_status(booking_id=booking_id, actor_user_id=actor_user_id, status=booking_state.CONFIRMED)

    def start(self, booking_id: str, actor_user_id: str, actual_start: Optional[datetime] = None) -> Booking:
        return self.update_status(
            booking_id=booking_id,
            actor_user_id=actor_user_id,
            status=booking_state.IN_PROGRESS,
            actual_start=actual_start,
        )

    def complete(self, booking_id: str, actor_user_id: str, actual_end: Optional[datetime] = None) -> Booking:
        return self.update_status(
            booking_id=booking_id,
            actor_user_id=actor_user_id,
            status=booking_state.COMPLETED,
            actual_end=actual_end,
        )

    def cancel(self, booking_id: str, actor_user_id: str, reason: str) -> Booking:
        return self.update_status(
            booking_id=booking_id,
            actor_user_id=actor_user_id,
            status=booking_state.CANCELLED,
            cancellation_reason=reason,
        )

    def reschedule(self, *, booking_id: str, actor_user_id: str, scheduled_at: datetime) -> Booking:
        """Move a PENDING or CONFIRMED booking; only the customer may do this."""
        booking = self.get_booking(booking_id)
        provider = self.directory.get_provider(booking.provider_id)
        role = booking_state.resolve_actor_role(booking, actor_user_id, provider.user_id)
        if role != booking_state.ROLE_CUSTOMER:
            raise AuthorizationError(f"Only the customer can reschedule booking {booking_id}")

        try:
            with self._write(provider.id) as conn:
                current = self._load(conn, booking_id)
                if current.status not in booking_state.RESCHEDULABLE_STATUSES:
                    raise InvalidTransitionError(
                        current.status,
                        current.status,
                        f"Booking {booking_id} is {current.status} and cannot be rescheduled",
                    )
                start = normalize_datetime(scheduled_at)
                candidate = validate_interval(start, start + (current.estimated_end - current.scheduled_at))
                conflicts = self._active_overlapping(conn, provider.id, candidate, ignore_booking_id=booking_id)
                if conflicts:
                    raise booking_conflict_error(conflicts)
                # The old slot no longer describes the booking once it moves.
                self._release_slot(conn, current.slot_id)
                conn.execute(
                    "UPDATE bookings SET scheduled_at = ?, estimated_end = ?, slot_id = NULL WHERE id = ?",
                    (to_db(candidate.start), to_db(candidate.end), booking_id),
                )
                self._record_history(
                    conn,
                    booking_id,
                    actor_user_id,
                    current.status,
                    current.status,
                    f"rescheduled from {current.scheduled_at.isoformat()} to {candidate.start.isoformat()}",
                )
                updated = self._load(conn, booking_id)
        except sqlite3.IntegrityError as exc:
            raise SchedulingConflictError("Time slot not available; provider has a conflicting booking") from exc
        logger.info("Booking %s rescheduled to %s", booking_id, updated.scheduled_at)
        return updated

    def _list(self, where: str, params: List[Any], order: str) -> List[Booking]:
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT b.*, r.id AS rating_id
                FROM bookings b
                LEFT JOIN booking_ratings r ON r.booking_id = b.id
                WHERE {where}
                ORDER BY {order}
                """,
                tuple(params),
            ).fetchall()
        return [self._row_to_booking(row, rated=row["rating_id"] is not None) for row in rows]

    def list_for_customer(self, customer_id: str, status: Optional[str] = None) -> List[Booking]:
        where = "b.customer_id = ?"
        params: List[Any] = [customer_id]
        if status:
            where += " AND b.status = ?"
            params.append(status)
        return self._list(where, params, "b.scheduled_at DESC")

    def list_for_provider(self, provider_id: str, status: Optional[str] = None) -> List[Booking]:
        where = "b.provider_id = ?"
        params: List[Any] = [provider_id]
        if status:
            where += " AND b.status = ?"
            params.append(status)
        return self._list(where, params, "b.scheduled_at DESC")

    def list_upcoming(self, *, customer_id: Optional[str] = None, provider_id: Optional[str] = None) -> List[Booking]:
        if customer_id is None and provider_id is None:
            raise ValidationError("A customer or provider is required")
        where = "b.scheduled_at > ? AND b.status NOT IN ('CANCELLED', 'COMPLETED')"
        params: List[Any] = [to_db(utcnow())]
        if customer_id is not None:
            where += " AND b.customer_id = ?"
            params.append(customer_id)
        if provider_id is not None:
            where += " AND b.provider_id = ?"
            params.append(provider_id)
        return self._list(where, params, "b.scheduled_at ASC")

    def list_history(self, booking_id: str, actor_user_id: str) -> List[BookingStatusChange]:
        self.get_booking(booking_id, actor_user_id=actor_user_id)
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, id",
                (booking_id,),
            ).fetchall()
        return [
            BookingStatusChange(
                id=row["id"],
                booking_id=row["booking_id"],
                actor_user_id=row["actor_user_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"],
                created_at=from_db(row["created_at"]),
            )
            for row in rows
        ]

    def rating_eligibility(self, booking_id: str, customer_id: str) -> RatingEligibility:
        booking = self.get_booking(booking_id)
        if booking.customer_id != customer_id:
            return RatingEligibility(booking_id=booking_id, eligible=False, reason="Only the booking's customer can rate it")
        if booking.status != booking_state.COMPLETED:
            return RatingEligibility(booking_id=booking_id, eligible=False, reason=f"Booking is {booking.status}, not COMPLETED")
        if booking.rated:
            return RatingEligibility(booking_id=booking_id, eligible=False, reason="Booking has already been rated")
        return RatingEligibility(booking_id=booking_id, eligible=True)

    def record_rating(self, *, booking_id: str, customer_id: str, score: int, comment: str = "") -> RatingRecord:
        if not 1 <= score <= 5:
            raise ValidationError("Rating score must be between 1 and 5")
        booking = self.get_booking(booking_id)
        if booking.customer_id != customer_id:
            raise AuthorizationError(f"User {customer_id} did not make booking {booking_id}")
        record = RatingRecord(
            id=f"rt_{uuid4().hex[:10]}",
            booking_id=booking_id,
            provider_id=booking.provider_id,
            customer_id=customer_id,
            score=score,
            comment=comment,
            created_at=utcnow(),
        )
        with self._write(booking.provider_id) as conn:
            current = self._load(conn, booking_id)
            if current.status != booking_state.COMPLETED:
                raise ValidationError(f"Only completed bookings can be rated; booking is {current.status}")
            if current.rated:
                raise SchedulingConflictError(f"Booking {booking_id} has already been rated")
            conn.execute(
                """
                INSERT INTO booking_ratings (id, booking_id, provider_id, customer_id, score, comment, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.booking_id,
                    record.provider_id,
                    record.customer_id,
                    record.score,
                    record.comment,
                    to_db(record.created_at),
                ),
            )
        logger.info("Booking %s rated %d by %s", booking_id, score, customer_id)
        return record

    def provider_rating_summary(self, provider_id: str) -> RatingSummary:
        """Average and count computed from stored ratings on every call."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT AVG(score) AS average, COUNT(*) AS total FROM booking_ratings WHERE provider_id = ?",
                (provider_id,),
            ).fetchone()
        average = round(float(row["average"]), 2) if row["average"] is not None else None
        return RatingSummary(provider_id=provider_id, average_rating=average, rating_count=int(row["total"]))


booking_store = BookingStore(db_path=DB_PATH, directory=directory_store, provider_locks=provider_locks)

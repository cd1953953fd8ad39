import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence
from uuid import uuid4

from servicefinder.models import RecurrenceRule, Slot, TimeSlotTemplate
from servicefinder.services.conflicts import Interval, find_conflicts, slot_conflict_error, validate_interval
from servicefinder.services.directory_store import DirectoryStore, directory_store
from servicefinder.services.errors import (
    AlreadyBookedError,
    AuthorizationError,
    BookedSlotError,
    NotFoundError,
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

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
UPCOMING_WINDOW_DAYS = 7


def day_name(value: date) -> str:
    return DAY_NAMES[value.weekday()]


class SlotStore(SqliteStore):
    """Per-provider availability intervals with no two slots of a provider overlapping."""

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
                CREATE TABLE IF NOT EXISTS availability_slots (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    start_at TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    is_booked INTEGER NOT NULL DEFAULT 0,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    day_of_week TEXT,
                    recurring_start_time TEXT,
                    recurring_end_time TEXT,
                    notes TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    CHECK (end_at > start_at)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_slots_provider_start ON availability_slots (provider_id, start_at)"
            )
            # Exclusion constraint: a provider's slots never overlap, whatever path wrote them.
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS availability_slots_no_overlap_insert
                BEFORE INSERT ON availability_slots
                WHEN EXISTS (
                    SELECT 1 FROM availability_slots
                    WHERE provider_id = NEW.provider_id
                      AND start_at < NEW.end_at
                      AND NEW.start_at < end_at
                )
                BEGIN
                    SELECT RAISE(ABORT, 'slot_overlap');
                END
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS availability_slots_no_overlap_update
                BEFORE UPDATE OF start_at, end_at, provider_id ON availability_slots
                WHEN EXISTS (
                    SELECT 1 FROM availability_slots
                    WHERE provider_id = NEW.provider_id
                      AND id != NEW.id
                      AND start_at < NEW.end_at
                      AND NEW.start_at < end_at
                )
                BEGIN
                    SELECT RAISE(ABORT, 'slot_overlap');
                END
                """
            )

    def _row_to_slot(self, row: sqlite3.Row) -> Slot:
        start = from_db(row["start_at"])
        end = from_db(row["end_at"])
        recurrence = None
        if row["is_recurring"] and row["day_of_week"]:
            recurrence = RecurrenceRule(
                day_of_week=row["day_of_week"],
                start_time=row["recurring_start_time"],
                end_time=row["recurring_end_time"],
            )
        return Slot(
            id=row["id"],
            provider_id=row["provider_id"],
            start=start,
            end=end,
            duration_minutes=Interval(start, end).minutes,
            is_booked=bool(row["is_booked"]),
            is_recurring=bool(row["is_recurring"]),
            recurrence=recurrence,
            notes=row["notes"],
            created_at=from_db(row["created_at"]),
        )

    def _overlapping_slots(self, conn: sqlite3.Connection, provider_id: str, candidate: Interval) -> List[Slot]:
        rows = conn.execute(
            """
            SELECT * FROM availability_slots
            WHERE provider_id = ? AND start_at < ? AND end_at > ?
            ORDER BY start_at
            """,
            (provider_id, to_db(candidate.end), to_db(candidate.start)),
        ).fetchall()
        return find_conflicts(candidate, [self._row_to_slot(row) for row in rows])

    def _insert_slot(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        candidate: Interval,
        recurrence: Optional[RecurrenceRule],
        notes: str,
    ) -> Slot:
        slot = Slot(
            id=f"av_{uuid4().hex[:10]}",
            provider_id=provider_id,
            start=candidate.start,
            end=candidate.end,
            duration_minutes=candidate.minutes,
            is_booked=False,
            is_recurring=recurrence is not None,
            recurrence=recurrence,
            notes=notes,
            created_at=utcnow(),
        )
        conn.execute(
            """
            INSERT INTO availability_slots (
                id, provider_id, start_at, end_at, is_booked, is_recurring,
                day_of_week, recurring_start_time, recurring_end_time, notes, created_at
            )
            VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
            """,
            (
                slot.id,
                provider_id,
                to_db(slot.start),
                to_db(slot.end),
                1 if slot.is_recurring else 0,
                recurrence.day_of_week if recurrence else None,
                recurrence.start_time.isoformat() if recurrence else None,
                recurrence.end_time.isoformat() if recurrence else None,
                notes,
                to_db(slot.created_at),
            ),
        )
        return slot

    def _normalized_interval(self, start: datetime, end: datetime) -> Interval:
        return validate_interval(normalize_datetime(start), normalize_datetime(end))

    def find_conflicts(self, provider_id: str, start: datetime, end: datetime) -> List[Slot]:
        """Existing slots of ``provider_id`` overlapping [start, end)."""
        candidate = self._normalized_interval(start, end)
        with self._read() as conn:
            return self._overlapping_slots(conn, provider_id, candidate)

    def create_slot(
        self,
        *,
        provider_id: str,
        actor_user_id: str,
        start: datetime,
        end: datetime,
        recurrence: Optional[RecurrenceRule] = None,
        notes: str = "",
    ) -> Slot:
        candidate = self._normalized_interval(start, end)
        if recurrence is not None and recurrence.end_time <= recurrence.start_time:
            raise ValidationError("Recurring end time must be after recurring start time")
        self.directory.require_provider_owner(provider_id, actor_user_id)

        try:
            with self._write(provider_id) as conn:
                conflicts = self._overlapping_slots(conn, provider_id, candidate)
                if conflicts:
                    raise slot_conflict_error(conflicts)
                slot = self._insert_slot(conn, provider_id, candidate, recurrence, notes)
        except sqlite3.IntegrityError as exc:
            logger.warning("Slot insert for provider %s rejected by overlap constraint", provider_id)
            raise slot_conflict_error(self.find_conflicts(provider_id, candidate.start, candidate.end)) from exc
        logger.info("Created slot %s for provider %s (%s - %s)", slot.id, provider_id, slot.start, slot.end)
        return slot

    def create_bulk(
        self,
        *,
        provider_id: str,
        actor_user_id: str,
        start_date: date,
        end_date: date,
        days_of_week: Sequence[str],
        templates: Sequence[TimeSlotTemplate],
        notes: str = "",
    ) -> List[Slot]:
        """Materialize templates on every matching weekday in [start_date, end_date].

        Best effort: candidates that collide with an existing slot (or with one
        created earlier in the same batch) are skipped, not reported as errors.
        Only the slots actually created are returned.
        """
        if isinstance(start_date, datetime):
            start_date = start_date.date()
        if isinstance(end_date, datetime):
            end_date = end_date.date()
        if end_date < start_date:
            raise ValidationError("End date must not be before start date")
        unknown_days = [name for name in days_of_week if name not in DAY_NAMES]
        if unknown_days:
            raise ValidationError(f"Unknown day names: {', '.join(unknown_days)}")
        for template in templates:
            if template.end_time <= template.start_time:
                raise ValidationError(
                    f"Template end time {template.end_time.isoformat()} must be after start time "
                    f"{template.start_time.isoformat()}"
                )
        self.directory.require_provider_owner(provider_id, actor_user_id)

        selected_days = set(days_of_week)
        created: List[Slot] = []
        skipped = 0
        with self._write(provider_id) as conn:
            current = start_date
            while current <= end_date:
                if day_name(current) in selected_days:
                    for template in templates:
                        candidate = Interval(
                            start=datetime.combine(current, template.start_time),
                            end=datetime.combine(current, template.end_time),
                        )
                        conflicts = self._overlapping_slots(conn, provider_id, candidate)
                        if conflicts:
                            skipped += 1
                            logger.debug(
                                "Bulk slot %s - %s skipped: %d conflicts",
                                candidate.start,
                                candidate.end,
                                len(conflicts),
                            )
                            continue
                        created.append(self._insert_slot(conn, provider_id, candidate, None, notes))
                current += timedelta(days=1)
        logger.info(
            "Bulk availability for provider %s: %d created, %d skipped (%s to %s)",
            provider_id,
            len(created),
            skipped,
            start_date,
            end_date,
        )
        return created

    def get_slot(self, slot_id: str) -> Slot:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM availability_slots WHERE id = ?", (slot_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Availability slot {slot_id} not found")
        return self._row_to_slot(row)

    def mark_booked(self, slot_id: str) -> Slot:
        slot = self.get_slot(slot_id)
        with self._write(slot.provider_id) as conn:
            row = conn.execute("SELECT is_booked FROM availability_slots WHERE id = ?", (slot_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Availability slot {slot_id} not found")
            updated = conn.execute(
                "UPDATE availability_slots SET is_booked = 1 WHERE id = ? AND is_booked = 0",
                (slot_id,),
            ).rowcount
            if not updated:
                raise AlreadyBookedError(f"Slot {slot_id} is already booked")
        logger.info("Slot %s marked booked", slot_id)
        return slot.model_copy(update={"is_booked": True})

    def mark_available(self, slot_id: str) -> Slot:
        slot = self.get_slot(slot_id)
        with self._write(slot.provider_id) as conn:
            conn.execute("UPDATE availability_slots SET is_booked = 0 WHERE id = ?", (slot_id,))
        logger.info("Slot %s marked available", slot_id)
        return slot.model_copy(update={"is_booked": False})

    def delete_slot(self, slot_id: str, requesting_provider_id: Optional[str]) -> None:
        slot = self.get_slot(slot_id)
        if slot.provider_id != requesting_provider_id:
            logger.warning("Provider %s denied deleting slot %s", requesting_provider_id, slot_id)
            raise AuthorizationError(f"Not authorized to delete availability slot {slot_id}")
        with self._write(slot.provider_id) as conn:
            row = conn.execute("SELECT is_booked FROM availability_slots WHERE id = ?", (slot_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Availability slot {slot_id} not found")
            if row["is_booked"]:
                raise BookedSlotError(
                    f"Cannot delete booked slot {slot_id}",
                    conflicts=[{"id": slot.id, "start": slot.start.isoformat(), "end": slot.end.isoformat(), "booked": True}],
                )
            conn.execute("DELETE FROM availability_slots WHERE id = ?", (slot_id,))
        logger.info("Deleted slot %s of provider %s", slot_id, slot.provider_id)

    def list_slots(
        self,
        provider_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        include_booked: bool = True,
    ) -> List[Slot]:
        """Slots lying wholly inside [start, end] (either bound optional), by start time."""
        query = "SELECT * FROM availability_slots WHERE provider_id = ?"
        params: List[object] = [provider_id]
        if not include_booked:
            query += " AND is_booked = 0"
        if start is not None:
            query += " AND start_at >= ?"
            params.append(to_db(start))
        if end is not None:
            query += " AND end_at <= ?"
            params.append(to_db(end))
        query += " ORDER BY start_at"
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_slot(row) for row in rows]

    def list_unbooked(
        self,
        provider_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Slot]:
        if start is None and end is None:
            now = utcnow()
            window_end = now + timedelta(days=UPCOMING_WINDOW_DAYS)
            return [
                slot
                for slot in self.list_slots(provider_id, start=now, include_booked=False)
                if slot.start <= window_end
            ]
        return self.list_slots(provider_id, start=start, end=end, include_booked=False)

    def list_unbooked_starting(self, provider_id: str, start: datetime, end: datetime) -> List[Slot]:
        """Unbooked slots whose start falls inside [start, end]; the slot may run past ``end``."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM availability_slots
                WHERE provider_id = ? AND is_booked = 0 AND start_at >= ? AND start_at <= ?
                ORDER BY start_at
                """,
                (provider_id, to_db(start), to_db(end)),
            ).fetchall()
        return [self._row_to_slot(row) for row in rows]

    def list_for_duration(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        min_duration_minutes: int,
    ) -> List[Slot]:
        return [
            slot
            for slot in self.list_slots(provider_id, start=start, end=end, include_booked=False)
            if slot.duration_minutes >= min_duration_minutes
        ]

    def list_recurring(self, provider_id: str, day_of_week: str) -> List[Slot]:
        if day_of_week not in DAY_NAMES:
            raise ValidationError(f"Unknown day name: {day_of_week}")
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM availability_slots
                WHERE provider_id = ? AND is_recurring = 1 AND day_of_week = ?
                ORDER BY start_at
                """,
                (provider_id, day_of_week),
            ).fetchall()
        return [self._row_to_slot(row) for row in rows]


slot_store = SlotStore(db_path=DB_PATH, directory=directory_store, provider_locks=provider_locks)

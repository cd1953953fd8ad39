import logging
import os
from abc import ABC, abstractmethod
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, Optional

from servicefinder.env import parse_positive_float_env
from servicefinder.services.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = parse_positive_float_env("SQLITE_BUSY_TIMEOUT_SECONDS", 5.0)
default_db = str(Path(__file__).resolve().parents[2] / "data" / "scheduling.sqlite3")
DB_PATH = os.getenv("SCHEDULING_DB_PATH", default_db)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware inputs are converted first."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # Fixed-width text keeps lexical order equal to chronological order in SQL.
    return normalize_datetime(value).isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class ProviderLocks:
    """One lock per provider id; interval mutations for a provider run one at a time."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}

    def for_provider(self, provider_id: str) -> Lock:
        with self._guard:
            return self._locks.setdefault(provider_id, Lock())


@dataclass
class SqliteStore(ABC):
    db_path: str
    provider_locks: ProviderLocks = field(default_factory=ProviderLocks)

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=BUSY_TIMEOUT_SECONDS,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @abstractmethod
    def _init_db(self) -> None:
        """Create this store's tables, indexes and triggers."""

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            logger.exception("Could not open database %s", self.db_path)
            raise StorageUnavailableError("Scheduling database unavailable") from exc
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            logger.exception("Read failed on %s", self.db_path)
            raise StorageUnavailableError("Scheduling database unavailable") from exc
        finally:
            conn.close()

    @contextmanager
    def _write(self, provider_id: Optional[str] = None) -> Iterator[sqlite3.Connection]:
        """Hold the provider lock (when given) and an IMMEDIATE transaction around the block.

        The block commits on success and rolls back on any exception, so a failed
        conflict check never leaves partial rows behind.
        """
        provider_lock = self.provider_locks.for_provider(provider_id) if provider_id else self._lock
        with provider_lock:
            try:
                conn = self._connect()
            except sqlite3.OperationalError as exc:
                logger.exception("Could not open database %s", self.db_path)
                raise StorageUnavailableError("Scheduling database unavailable") from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                conn.close()
                logger.exception("Could not start write transaction on %s", self.db_path)
                raise StorageUnavailableError("Scheduling database unavailable") from exc
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.exception("Write failed on %s", self.db_path)
                raise StorageUnavailableError("Scheduling database unavailable") from exc
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()


provider_locks = ProviderLocks()

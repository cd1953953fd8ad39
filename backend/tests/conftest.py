import os
import sys
import tempfile
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level stores open their database on import; keep the shared one out of backend/data.
os.environ.setdefault(
    "SCHEDULING_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="servicefinder-tests-"), "scheduling.sqlite3"),
)

from servicefinder.services.availability_search import AvailabilitySearch  # noqa: E402
from servicefinder.services.booking_store import BookingStore  # noqa: E402
from servicefinder.services.directory_store import DirectoryStore  # noqa: E402
from servicefinder.services.slot_store import SlotStore  # noqa: E402
from servicefinder.services.storage import ProviderLocks  # noqa: E402


@pytest.fixture
def stores(tmp_path):
    db_path = str(tmp_path / "scheduling.sqlite3")
    locks = ProviderLocks()
    directory = DirectoryStore(db_path=db_path, provider_locks=locks)
    slots = SlotStore(db_path=db_path, directory=directory, provider_locks=locks)
    bookings = BookingStore(db_path=db_path, directory=directory, provider_locks=locks)
    return SimpleNamespace(
        directory=directory,
        slots=slots,
        bookings=bookings,
        search=AvailabilitySearch(directory=directory, slots=slots),
    )


@pytest.fixture
def provider(stores):
    return stores.directory.add_provider(
        user_id="pro_1",
        business_name="Sparkle Cleaners",
        latitude=19.0760,
        longitude=72.8777,
        service_radius_km=10,
    )


@pytest.fixture
def service(stores, provider):
    return stores.directory.add_service(
        provider_id=provider.id,
        actor_user_id="pro_1",
        name="Deep home cleaning",
        category="cleaning",
        price=1500.0,
        duration_minutes=120,
    )

"""
Pytest configuration and shared fixtures

Every test runs on a TestTimeProvider pinned to 2025-01-15 12:00 UTC, so
deadlines are passed by advancing the clock, never by sleeping.
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from tenderdesk.desk import TenderDesk
from tenderdesk.kernel.bus import NotificationBus, NotificationRecorder
from tenderdesk.kernel.policy import LifecyclePolicy
from tenderdesk.kernel.tender_store import InMemoryTenderStore, SQLiteTenderStore
from tenderdesk.kernel.time import TestTimeProvider
from tenderdesk.tender.lifecycle import LifecycleEngine


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    for suffix in ("", "-wal", "-shm"):
        path = Path(str(db_path) + suffix)
        if path.exists():
            path.unlink()


@pytest.fixture
def test_time() -> TestTimeProvider:
    """Controllable clock at 2025-01-15 12:00:00 UTC"""
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> LifecyclePolicy:
    return LifecyclePolicy()


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, temp_db: Path) -> InMemoryTenderStore | SQLiteTenderStore:
    """Both store adapters; tests using this run once per adapter"""
    if request.param == "memory":
        return InMemoryTenderStore()
    return SQLiteTenderStore(temp_db)


@pytest.fixture
def recorder() -> NotificationRecorder:
    return NotificationRecorder()


@pytest.fixture
def bus(test_time: TestTimeProvider, recorder: NotificationRecorder) -> NotificationBus:
    bus = NotificationBus(test_time)
    bus.subscribe("*", recorder)
    return bus


@pytest.fixture
def engine(
    store: InMemoryTenderStore | SQLiteTenderStore,
    test_time: TestTimeProvider,
    policy: LifecyclePolicy,
    bus: NotificationBus,
) -> LifecycleEngine:
    return LifecycleEngine(store, test_time, policy, bus)


@pytest.fixture
def desk(test_time: TestTimeProvider) -> TenderDesk:
    """In-memory desk on the test clock"""
    return TenderDesk(time_provider=test_time)


@pytest.fixture
def sqlite_desk(temp_db: Path, test_time: TestTimeProvider) -> TenderDesk:
    """SQLite-backed desk on the test clock"""
    return TenderDesk(temp_db, time_provider=test_time)

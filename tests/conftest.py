"""
Pytest configuration and shared fixtures

Every test gets its own SQLite file in a temporary directory (WAL mode
leaves -wal/-shm files beside it) and a frozen clock.
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from public_works_ledger.alerts.engine import AlertEngine
from public_works_ledger.budget.handlers import BudgetLedger
from public_works_ledger.engine import WorksEngine
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import FixedTimeProvider
from public_works_ledger.lifecycle.handlers import ProjectLifecycle
from public_works_ledger.lifecycle.models import Project
from tests.helpers import RecordingNotifier, project_data


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a database path inside a directory that's removed after the test"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "ledger.db"


@pytest.fixture
def test_time() -> FixedTimeProvider:
    """Frozen at 2025-01-15 12:00:00 UTC"""
    return FixedTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> LedgerPolicy:
    return LedgerPolicy()


@pytest.fixture
def store(temp_db: Path) -> SQLiteLedgerStore:
    """Provide a fresh ledger store for each test"""
    return SQLiteLedgerStore(temp_db)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def alert_engine(
    store: SQLiteLedgerStore, test_time: FixedTimeProvider, policy: LedgerPolicy, bus: EventBus
) -> AlertEngine:
    return AlertEngine(store, test_time, policy, bus)


@pytest.fixture
def lifecycle(
    store: SQLiteLedgerStore, test_time: FixedTimeProvider, policy: LedgerPolicy, bus: EventBus
) -> ProjectLifecycle:
    return ProjectLifecycle(store, test_time, policy, bus)


@pytest.fixture
def ledger(
    store: SQLiteLedgerStore,
    alert_engine: AlertEngine,
    test_time: FixedTimeProvider,
    policy: LedgerPolicy,
    bus: EventBus,
) -> BudgetLedger:
    return BudgetLedger(store, alert_engine, test_time, policy, bus)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine(
    temp_db: Path,
    policy: LedgerPolicy,
    test_time: FixedTimeProvider,
    notifier: RecordingNotifier,
) -> Iterator[WorksEngine]:
    """Fully wired engine with a recording notifier"""
    works = WorksEngine(temp_db, policy=policy, time_provider=test_time, notifier=notifier)
    yield works
    works.close()


@pytest.fixture
def project(lifecycle: ProjectLifecycle) -> Project:
    """A PLANNED project with budget v1 totalling 1000"""
    return lifecycle.create(project_data(), actor_id="admin-1")

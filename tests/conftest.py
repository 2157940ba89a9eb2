"""
Pytest fixtures and test configuration for fittrack tests.
"""

import pytest
from factories import ACCOUNT

from fittrack.config import SyncSettings
from fittrack.storage import InMemoryRemoteStore, SQLiteLocalStore
from fittrack.sync import (
    ManualConnectivity,
    PersonalRecordEngine,
    StaticIdentity,
    SyncEngine,
)


@pytest.fixture(autouse=True)
def fittrack_home(tmp_path, monkeypatch):
    """Keep data and log files inside the test's temp directory."""
    home = tmp_path / "home"
    monkeypatch.setenv("FITTRACK_DATA_DIR", str(home))
    return home


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db):
    """Create a SQLiteLocalStore instance for testing."""
    store = SQLiteLocalStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def identity():
    return StaticIdentity(ACCOUNT)


@pytest.fixture
def connectivity():
    return ManualConnectivity(True)


@pytest.fixture
def settings():
    """Fast retries, no retries by default, no .env lookups."""
    return SyncSettings(
        _env_file=None,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        max_retry_attempts=0,
    )


@pytest.fixture
def engine(store, remote, identity, connectivity, settings):
    return SyncEngine(
        store,
        remote,
        identity,
        connectivity,
        PersonalRecordEngine(),
        settings=settings,
    )

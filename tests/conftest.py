"""Pytest configuration and shared fixtures.

Provides common fixtures for:
- Temporary database paths
- Mock environment variables
- Settings, database and connection fixtures
- Sample normalized orders
- Mock client fixtures
"""

import pytest
from pathlib import Path
import tempfile
from datetime import timedelta
from unittest.mock import AsyncMock


# =============================================================================
# TEMPORARY PATHS
# =============================================================================

@pytest.fixture
def temp_db_path():
    """Create a temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_orders.db"


@pytest.fixture
def temp_log_path():
    """Create a temporary log file path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.log"


# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set up mock environment variables for testing.

    This provides a complete set of environment variables needed
    for the Settings class to initialize successfully. Retries and
    request spacing are zeroed so tests don't sleep.
    """
    monkeypatch.setenv("LINNWORKS_APPLICATION_ID", "test-app-id")
    monkeypatch.setenv("LINNWORKS_APPLICATION_SECRET", "test-app-secret")
    monkeypatch.setenv("LINNWORKS_INSTALLATION_TOKEN", "test-install-token")
    monkeypatch.setenv("LINNWORKS_ACCOUNT_ID", "test-account")
    monkeypatch.setenv("RETRY_SCHEDULE", "[0, 0, 0]")
    monkeypatch.setenv("RATE_LIMIT_DELAY", "0")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("DRY_RUN", "false")


@pytest.fixture
def mock_settings(mock_env_vars):
    """Create settings with mock environment variables."""
    from order_sync.config import Settings
    return Settings()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def database(temp_db_path):
    """Create a real database instance for testing."""
    from order_sync.database import Database
    return Database(temp_db_path)


@pytest.fixture
def connected_database(database, mock_settings):
    """Database holding the test account's connection without a session."""
    from order_sync.models import LinnworksConnection

    database.upsert_connection(LinnworksConnection(
        account_id=mock_settings.linnworks_account_id,
        application_id=mock_settings.linnworks_application_id,
        application_secret=mock_settings.linnworks_application_secret,
        installation_token=mock_settings.linnworks_installation_token,
    ))
    return database


@pytest.fixture
def valid_session():
    """A session that is valid for the next hour."""
    from order_sync.models import SessionToken, utc_now
    from tests.fixtures.linnworks_fixtures import API_SERVER

    return SessionToken(
        token="session-token-123",
        server=API_SERVER,
        expires_at=utc_now() + timedelta(hours=1),
    )


@pytest.fixture
def session_database(connected_database, mock_settings, valid_session):
    """Database whose connection already holds a valid session."""
    connected_database.save_session(mock_settings.linnworks_account_id, valid_session)
    return connected_database


# =============================================================================
# SAMPLE ORDERS
# =============================================================================

@pytest.fixture
def sample_open_order():
    """Normalized open order."""
    from order_sync.normalizer import normalize_order
    from tests.fixtures.linnworks_fixtures import make_open_order
    return normalize_order(make_open_order())


@pytest.fixture
def sample_processed_order():
    """Normalized processed order with the same ID as sample_open_order."""
    from order_sync.normalizer import normalize_order
    from tests.fixtures.linnworks_fixtures import make_processed_order
    return normalize_order(make_processed_order())


@pytest.fixture
def sample_nested_order():
    """Normalized order from the nested GetOrdersById shape."""
    from order_sync.normalizer import normalize_order
    from tests.fixtures.linnworks_fixtures import make_nested_order
    return normalize_order(make_nested_order())


# =============================================================================
# MOCK CLIENT FIXTURES
# =============================================================================

@pytest.fixture
def mock_linnworks_client_factory(mock_settings):
    """Factory for creating mock Linnworks clients."""
    from order_sync.linnworks_client import LinnworksClient

    def create_mock():
        client = AsyncMock(spec=LinnworksClient)
        client.settings = mock_settings
        return client

    return create_mock


@pytest.fixture
def mock_session_manager(valid_session):
    """Session manager that always hands out the valid session."""
    from order_sync.session import SessionManager

    manager = AsyncMock(spec=SessionManager)
    manager.get_valid_token.return_value = valid_session
    return manager


# =============================================================================
# UTILITY FIXTURES
# =============================================================================

@pytest.fixture
def assert_no_duplicate_orders():
    """Helper fixture to assert no order is stored twice."""
    def _assert(database):
        with database._get_connection() as conn:
            rows = conn.execute(
                "SELECT linnworks_order_id, order_number FROM orders"
            ).fetchall()
        ids = [row["linnworks_order_id"] for row in rows if row["linnworks_order_id"]]
        numbers = [row["order_number"] for row in rows if row["order_number"] is not None]

        assert len(ids) == len(set(ids)), "Duplicate Linnworks order IDs found"
        assert len(numbers) == len(set(numbers)), "Duplicate order numbers found"
        return True

    return _assert

"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with component markers
WHY: Enable test organization, filtering, and shared test utilities
HOW: Define pytest markers, fixtures, and test helpers
"""

import pytest

from chatsync.chat.auth import StaticAuthSession
from chatsync.chat.client import ChatApiClient
from chatsync.core.engine import reset_engine
from tests.fixtures.fake_transport import FakeConnector
from tests.fixtures.factories import CHAT_BASE_URL, CURRENT_USER


def pytest_configure(config):
    """Register custom markers for components."""
    config.addinivalue_line(
        "markers", "codec: Message codec / envelope classification tests"
    )
    config.addinivalue_line(
        "markers", "transport: Push transport state machine tests"
    )
    config.addinivalue_line(
        "markers", "store: Conversation store tests"
    )
    config.addinivalue_line(
        "markers", "unread: Unread aggregator tests"
    )
    config.addinivalue_line(
        "markers", "transactions: Transaction list synchronizer tests"
    )
    config.addinivalue_line(
        "markers", "api: FastAPI gateway tests"
    )
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )


@pytest.fixture(autouse=True)
def reset_engine_singleton():
    """
    Reset engine singleton before each test.

    WHAT: Clear engine cache between tests
    WHY: Prevent test pollution and ensure clean state
    HOW: Call reset_engine() before and after each test
    """
    reset_engine()
    yield
    reset_engine()


@pytest.fixture
def auth():
    """Signed-in session for CURRENT_USER."""
    return StaticAuthSession(access_token="test-token", user_id=CURRENT_USER)


@pytest.fixture
def anonymous():
    """Session with no token and no user."""
    return StaticAuthSession()


@pytest.fixture
def chat_client(auth):
    """REST client pointed at the respx-mocked chat service, no backoff delay."""
    return ChatApiClient(auth, base_url=CHAT_BASE_URL, max_retries=2, retry_delay=0)


@pytest.fixture
def connector():
    """Fake push connector."""
    return FakeConnector()

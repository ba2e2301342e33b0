"""Pytest configuration for sql_bridge tests.

Unit tests drive SqlBridge and CorrelationEngine against an in-memory
FakeChannel. Channel and integration tests start tests/fixtures/fake_worker.py
as a real subprocess, so no Java or database is needed anywhere.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# tests directory (for fixtures.*)
tests_root = Path(__file__).parent
if str(tests_root) not in sys.path:
    sys.path.insert(0, str(tests_root))

from fixtures.fake_channel import FakeChannelFactory  # noqa: E402
from fixtures.worker import worker_command  # noqa: E402

from sql_bridge.settings import reset_settings  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (may use mocks)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that start a real worker subprocess"
    )
    config.addinivalue_line(
        "markers", "slow: Slow-running tests"
    )


@pytest.fixture(autouse=True)
def fresh_settings():
    """Drop the process-wide settings around every test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def mock_logger():
    """Mock logger satisfying LoggerProtocol; bind() returns itself."""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.debug = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.exception = MagicMock()
    logger.bind = MagicMock(return_value=logger)
    return logger


@pytest.fixture
def channel_factory():
    """Factory handing out FakeChannels that complete the handshake."""
    return FakeChannelFactory()


@pytest.fixture
def fake_worker():
    """Build argv for the fake worker script in a given mode."""
    return worker_command

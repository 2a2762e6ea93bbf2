"""
Pytest configuration and fixtures for TradeBridge tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder
from tests.helpers import EngineHarness, ManualClock


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine():
    """Orchestrator wired to in-memory collaborators"""
    return EngineHarness()

"""
Pytest configuration and fixtures for settlement engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def metrics():
    """Recorder without an HTTP exporter; counters still register."""
    return MetricsRecorder(enabled=True, port=0)


@pytest.fixture
def no_sleep():
    """Drop-in for asyncio.sleep that records requested delays."""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep

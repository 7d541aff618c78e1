"""
Shared fixtures.
"""

import pytest

from storeflow.config import Settings
from storeflow.runtime import build_runtime

from factories import Harness, StubHttpClient


@pytest.fixture
def harness():
    """Engine with in-memory stores, a Cart table and recording collaborators."""
    return Harness()


@pytest.fixture
def test_settings():
    return Settings(
        SCHEDULER_ENABLED=False,
        STORAGE_BACKEND="memory",
        RETRY_BASE_DELAY=0.0,
        RETRY_MAX_DELAY=0.0,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def runtime(test_settings):
    """A full runtime (storage, engine, bus, toggle) with stub HTTP."""
    return build_runtime(test_settings, http_client=StubHttpClient())

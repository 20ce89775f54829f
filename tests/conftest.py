# Test fixtures
# Tests that need a live Neo4j live under tests/integration and are marked

import os

import pytest

# Set test environment before config is loaded
os.environ["ENV"] = "test"
os.environ.pop("CONFIG_PATH", None)

from graphloader.shared.config import RetryConfig  # noqa: E402
from tests.fakes import InMemoryGraphStore  # noqa: E402


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        jitter_seconds=0.0,
    )

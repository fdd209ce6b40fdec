"""
Ratings kernel test configuration.

Kernel tests use MemoryStore with a stepping clock so server timestamps are
reproducible. PostgresStore tests are skipped when DATABASE_URL is not set.
"""

import pytest

from ratings.store import MemoryStore
from ratings.tests.support import StepClock


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import MagicMock

import pytest

from replica_alchemy.consistency import MutationCache
from tests.helpers import EngineFactory, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mutation_cache(clock: FakeClock) -> Generator[MutationCache, None, None]:
    cache = MutationCache(ttl=5.0, clock=clock)
    yield cache
    cache.stop_cleanup()
    cache.clear()


@pytest.fixture
def engine_factory() -> EngineFactory:
    return EngineFactory()


@pytest.fixture
def async_engine_factory() -> EngineFactory:
    return EngineFactory(async_engines=True)


@pytest.fixture
def mock_primary_engine() -> MagicMock:
    """Create a mock primary engine."""
    engine = MagicMock(name="primary_engine")
    engine.url = "postgresql://primary:5432/db"
    return engine


@pytest.fixture
def mock_replica_engines() -> list[MagicMock]:
    """Create mock replica engines."""
    engines: list[MagicMock] = []
    for i in range(3):
        engine = MagicMock(name=f"replica_engine_{i}")
        engine.url = f"postgresql://replica{i}:5432/db"
        engines.append(engine)
    return engines

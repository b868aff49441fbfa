from __future__ import annotations

from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EngineFactory:
    """Stand-in for ``create_engine`` that records calls and returns mock engines."""

    def __init__(self, async_engines: bool = False) -> None:
        self.async_engines = async_engines
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, url: str, **kwargs: Any) -> MagicMock:
        self.calls.append((url, kwargs))
        engine = MagicMock(name=f"engine[{url}]")
        engine.url = url
        if self.async_engines:
            engine.connect.return_value = async_connection_context()
            engine.dispose = AsyncMock()
        return engine


def async_connection_context(connection: Optional[MagicMock] = None) -> MagicMock:
    """Build an ``async with`` context manager yielding ``connection``."""
    if connection is None:
        connection = MagicMock(name="async_connection")
        connection.execute = AsyncMock()
    context = MagicMock(name="async_connection_context")
    context.__aenter__ = AsyncMock(return_value=connection)
    context.__aexit__ = AsyncMock(return_value=False)
    return context

"""Unit tests for routing sessions.

Tests the session classes that implement read/write routing via get_bind().
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import Delete, Insert, Update, select

from replica_alchemy.routing.facade import AsyncRoutingFacade, SyncRoutingFacade
from replica_alchemy.routing.selectors import FirstAvailableSelector
from replica_alchemy.routing.session import RoutingAsyncSession, RoutingSyncSession


@pytest.fixture
def facade(mock_primary_engine: MagicMock, mock_replica_engines: list[MagicMock]) -> SyncRoutingFacade:
    return SyncRoutingFacade(mock_primary_engine, mock_replica_engines, FirstAvailableSelector())


@pytest.fixture
def routing_session(facade: SyncRoutingFacade) -> RoutingSyncSession:
    """Create a routing session for testing."""
    return RoutingSyncSession(facade=facade)


def test_routing_session_ignores_explicit_bind(facade: SyncRoutingFacade) -> None:
    """Test that bind arguments are dropped in favour of the facade."""
    session = RoutingSyncSession(facade=facade, bind=MagicMock(name="other"), binds={})

    assert session.bind is None
    assert session.facade is facade


def test_get_bind_routes_select_to_replica(
    routing_session: RoutingSyncSession,
    mock_replica_engines: list[MagicMock],
) -> None:
    """Test that SELECT queries route to replica."""
    assert routing_session.get_bind(clause=select(1)) is mock_replica_engines[0]


def test_get_bind_without_clause_routes_to_replica(
    routing_session: RoutingSyncSession,
    mock_replica_engines: list[MagicMock],
) -> None:
    assert routing_session.get_bind() is mock_replica_engines[0]


@pytest.mark.parametrize("statement_type", [Insert, Update, Delete])
def test_get_bind_routes_dml_to_primary(
    routing_session: RoutingSyncSession,
    mock_primary_engine: MagicMock,
    statement_type: type,
) -> None:
    """Test that INSERT, UPDATE and DELETE route to primary."""
    assert routing_session.get_bind(clause=MagicMock(spec=statement_type)) is mock_primary_engine


def test_get_bind_routes_for_update_to_primary(
    routing_session: RoutingSyncSession,
    mock_primary_engine: MagicMock,
) -> None:
    """Test that SELECT ... FOR UPDATE routes to primary."""
    assert routing_session.get_bind(clause=select(1).with_for_update()) is mock_primary_engine


def test_get_bind_during_flush_routes_to_primary(
    routing_session: RoutingSyncSession,
    mock_primary_engine: MagicMock,
) -> None:
    """Test that operations during flush route to primary."""
    routing_session._flushing = True

    assert routing_session.get_bind(clause=select(1)) is mock_primary_engine


def test_get_bind_primary_only_facade(facade: SyncRoutingFacade, mock_primary_engine: MagicMock) -> None:
    """Test that a primary-only facade routes reads to primary."""
    session = RoutingSyncSession(facade=facade.use_primary_only())

    assert session.get_bind(clause=select(1)) is mock_primary_engine


def test_async_session_routes_through_sync_engines(
    mock_primary_engine: MagicMock,
    mock_replica_engines: list[MagicMock],
) -> None:
    """Test that the async session's sync session routes over the sync engines."""
    facade = AsyncRoutingFacade(mock_primary_engine, mock_replica_engines, FirstAvailableSelector())

    session = RoutingAsyncSession(facade=facade)

    assert isinstance(session.sync_session, RoutingSyncSession)
    assert session.facade is facade
    assert session.sync_session.get_bind(clause=select(1)) is mock_replica_engines[0].sync_engine
    assert session.sync_session.get_bind(clause=MagicMock(spec=Insert)) is mock_primary_engine.sync_engine


def test_async_session_primary_only(mock_primary_engine: MagicMock, mock_replica_engines: list[MagicMock]) -> None:
    facade = AsyncRoutingFacade(mock_primary_engine, mock_replica_engines).use_primary_only()

    session = RoutingAsyncSession(facade=facade)

    assert session.sync_session.get_bind(clause=select(1)) is mock_primary_engine.sync_engine


def test_reads_stick_to_primary_after_flush(
    routing_session: RoutingSyncSession,
    mock_primary_engine: MagicMock,
) -> None:
    """Test that a flush pins later reads of the transaction to the primary."""
    routing_session._flushing = True
    routing_session.get_bind(clause=select(1))
    routing_session._flushing = False

    assert routing_session.stick_to_primary is True
    assert routing_session.get_bind(clause=select(1)) is mock_primary_engine


def test_reads_stick_to_primary_after_dml(
    routing_session: RoutingSyncSession,
    mock_primary_engine: MagicMock,
) -> None:
    routing_session.get_bind(clause=MagicMock(spec=Update))

    assert routing_session.get_bind(clause=select(1)) is mock_primary_engine


def test_for_update_does_not_stick(
    routing_session: RoutingSyncSession,
    mock_replica_engines: list[MagicMock],
) -> None:
    routing_session.get_bind(clause=select(1).with_for_update())

    assert routing_session.stick_to_primary is False
    assert routing_session.get_bind(clause=select(1)) is mock_replica_engines[0]


@pytest.mark.parametrize("end_transaction", ["commit", "rollback", "close"])
def test_transaction_end_releases_primary(
    routing_session: RoutingSyncSession,
    mock_replica_engines: list[MagicMock],
    end_transaction: str,
) -> None:
    """Test that reads return to the replicas once the writing transaction ends."""
    routing_session.begin()
    routing_session.get_bind(clause=MagicMock(spec=Insert))

    getattr(routing_session, end_transaction)()

    assert routing_session.stick_to_primary is False
    assert routing_session.get_bind(clause=select(1)) is mock_replica_engines[0]


def test_begin_block_releases_primary(
    routing_session: RoutingSyncSession,
    mock_replica_engines: list[MagicMock],
) -> None:
    with routing_session.begin():
        routing_session.get_bind(clause=MagicMock(spec=Insert))
        assert routing_session.stick_to_primary is True

    assert routing_session.get_bind(clause=select(1)) is mock_replica_engines[0]


def test_savepoint_end_keeps_primary(
    routing_session: RoutingSyncSession,
    mock_primary_engine: MagicMock,
) -> None:
    """Test that only the end of the outer transaction releases the primary."""
    routing_session.get_bind(clause=MagicMock(spec=Insert))
    savepoint = MagicMock(name="savepoint", parent=MagicMock(name="root"))

    routing_session._release_primary(routing_session, savepoint)

    assert routing_session.get_bind(clause=select(1)) is mock_primary_engine


def test_async_session_sticks_through_sync_session(
    mock_primary_engine: MagicMock,
    mock_replica_engines: list[MagicMock],
) -> None:
    facade = AsyncRoutingFacade(mock_primary_engine, mock_replica_engines, FirstAvailableSelector())
    session = RoutingAsyncSession(facade=facade)

    session.sync_session.get_bind(clause=MagicMock(spec=Delete))

    assert session.sync_session.get_bind(clause=select(1)) is mock_primary_engine.sync_engine

"""Routing facades.

A facade pairs one primary engine with the replica engines and a selector, and
decides per operation which engine runs it. Writes always go to the primary.
Reads go to a selected replica, unless the facade is in
:attr:`RoutingMode.PRIMARY_ONLY` mode.

Facades are cheap views with no connection state of their own. Deriving a
primary-only view with :meth:`RoutingFacade.use_primary_only` shares the
engines and the selector and never changes the facade it was derived from.

A query that fails on the engine it was routed to is not retried elsewhere: the
error reaches the caller as raised.

Example:
    Routing reads and writes::

        facade = manager.connect()

        rows = facade.execute(select(User)).all()  # a replica
        facade.execute(insert(User).values(name="x"))  # the primary

        with facade.use_primary_only().session() as session:
            session.get(User, 1)  # the primary
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncContextManager, ContextManager, Generic, Optional, TypeVar

from sqlalchemy import CompoundSelect, Delete, Insert, Select, Update
from typing_extensions import Self

from replica_alchemy.routing.selectors import ReplicaSelector, RoundRobinSelector
from replica_alchemy.routing.session import RoutingAsyncSession, RoutingSyncSession

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy import Connection, Engine, Result
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
    from sqlalchemy.sql import Executable

    from replica_alchemy.consistency.cache import MutationCache

__all__ = (
    "AsyncRoutingFacade",
    "RoutingFacade",
    "RoutingMode",
    "SyncRoutingFacade",
    "is_write_statement",
)

EngineT = TypeVar("EngineT")


class RoutingMode(Enum):
    """How a facade routes read operations."""

    AUTO = "auto"
    """Reads go to a selected replica."""

    PRIMARY_ONLY = "primary_only"
    """Reads go to the primary as well."""


def is_write_statement(statement: Any) -> bool:
    """Check whether ``statement`` must run on the primary.

    Only plain ``SELECT`` statements (including unions) without ``FOR UPDATE`` are
    reads. DML, DDL, textual SQL and anything else is treated as a write.

    Args:
        statement: The statement to classify.

    Returns:
        ``True`` if the statement must use the primary.
    """
    if isinstance(statement, (Insert, Update, Delete)):
        return True
    if isinstance(statement, (Select, CompoundSelect)):
        return getattr(statement, "_for_update_arg", None) is not None
    return True


class RoutingFacade(Generic[EngineT]):
    """Engine routing for one primary and its replicas.

    Args:
        primary_engine: The primary (write) engine.
        replica_engines: Replica engines, in configuration order.
        replica_selector: Strategy choosing a replica for each read.
        mode: Routing mode. A facade without replicas is always primary-only.
        mutation_cache: Cache of recent writes consulted by read-after-write routing.
    """

    __slots__ = ("_mode", "_mutation_cache", "_primary_engine", "_replica_engines", "_replica_selector")

    def __init__(
        self,
        primary_engine: EngineT,
        replica_engines: Iterable[EngineT] = (),
        replica_selector: Optional[ReplicaSelector[EngineT]] = None,
        mode: RoutingMode = RoutingMode.AUTO,
        mutation_cache: Optional[MutationCache] = None,
    ) -> None:
        self._primary_engine = primary_engine
        self._mutation_cache = mutation_cache
        self._replica_engines: tuple[EngineT, ...] = tuple(replica_engines)
        self._replica_selector: ReplicaSelector[EngineT] = replica_selector or RoundRobinSelector()
        self._mode = mode if self._replica_engines else RoutingMode.PRIMARY_ONLY

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(mode={self._mode.value}, replicas={len(self._replica_engines)}, "
            f"selector={self._replica_selector.name})"
        )

    @property
    def primary_engine(self) -> EngineT:
        return self._primary_engine

    @property
    def replica_engines(self) -> tuple[EngineT, ...]:
        return self._replica_engines

    @property
    def replica_selector(self) -> ReplicaSelector[EngineT]:
        return self._replica_selector

    @property
    def mode(self) -> RoutingMode:
        return self._mode

    @property
    def mutation_cache(self) -> Optional[MutationCache]:
        return self._mutation_cache

    @property
    def is_primary_only(self) -> bool:
        return self._mode is RoutingMode.PRIMARY_ONLY

    def has_replicas(self) -> bool:
        return len(self._replica_engines) > 0

    def get_read_engine(self) -> EngineT:
        """Return the engine for a read.

        Returns:
            The primary in primary-only mode, otherwise the selected replica.
        """
        if self.is_primary_only:
            return self._primary_engine
        return self._replica_selector.select(self._replica_engines)

    def get_write_engine(self) -> EngineT:
        """Return the engine for a write, which is always the primary."""
        return self._primary_engine

    def get_engine_for(self, statement: Any) -> EngineT:
        """Return the engine that should execute ``statement``.

        Args:
            statement: The statement about to run.

        Returns:
            The primary for writes, :meth:`get_read_engine` for reads.
        """
        if is_write_statement(statement):
            return self.get_write_engine()
        return self.get_read_engine()

    def use_primary_only(self) -> Self:
        """Return a view of this facade routing every operation to the primary.

        The returned facade shares the engines and selector. This facade is left
        unchanged.
        """
        return self._with_mode(RoutingMode.PRIMARY_ONLY)

    def _with_mode(self, mode: RoutingMode) -> Self:
        return type(self)(
            primary_engine=self._primary_engine,
            replica_engines=self._replica_engines,
            replica_selector=self._replica_selector,
            mode=mode,
            mutation_cache=self._mutation_cache,
        )


def _buffered(result: Result[Any]) -> Result[Any]:
    # Rows must stay readable once the connection is returned to the pool.
    if result.returns_rows:
        return result.freeze()()
    return result


class SyncRoutingFacade(RoutingFacade["Engine"]):
    """Routing facade over sync :class:`~sqlalchemy.Engine` instances."""

    __slots__ = ()

    def execute(self, statement: Executable, parameters: Optional[Any] = None) -> Result[Any]:
        """Execute ``statement`` on the engine chosen by :meth:`get_engine_for`.

        Writes run in their own committed transaction.

        Args:
            statement: The statement to execute.
            parameters: Bound parameters.

        Returns:
            The result. Row-returning results are buffered.
        """
        if is_write_statement(statement):
            return self.run_write_on_primary(statement, parameters)
        return self.run_read_on_replica(statement, parameters)

    def run_read_on_replica(self, statement: Executable, parameters: Optional[Any] = None) -> Result[Any]:
        """Execute ``statement`` on the read engine, whatever kind of statement it is.

        Use this for textual SQL known to be read-only, which :meth:`execute` would
        send to the primary.
        """
        with self.get_read_engine().connect() as connection:
            return _buffered(connection.execute(statement, parameters))

    def run_write_on_primary(self, statement: Executable, parameters: Optional[Any] = None) -> Result[Any]:
        """Execute ``statement`` on the primary in a committed transaction."""
        with self._primary_engine.begin() as connection:
            return _buffered(connection.execute(statement, parameters))

    def connect(self) -> Connection:
        """Open a connection on the read engine."""
        return self.get_read_engine().connect()

    def transaction(self) -> ContextManager[Connection]:
        """Begin a transaction on the primary.

        Returns:
            The :meth:`Engine.begin() <sqlalchemy.Engine.begin>` context manager.
        """
        return self._primary_engine.begin()

    def transaction_on_replica(self) -> ContextManager[Connection]:
        """Begin a read-only unit of work on the read engine."""
        return self.get_read_engine().begin()

    def session(self, **kwargs: Any) -> RoutingSyncSession:
        """Create an ORM session routed through this facade.

        Args:
            **kwargs: Additional arguments passed to the session.
        """
        return RoutingSyncSession(facade=self, **kwargs)


class AsyncRoutingFacade(RoutingFacade["AsyncEngine"]):
    """Routing facade over :class:`~sqlalchemy.ext.asyncio.AsyncEngine` instances."""

    __slots__ = ()

    async def execute(self, statement: Executable, parameters: Optional[Any] = None) -> Result[Any]:
        """Execute ``statement`` on the engine chosen by :meth:`get_engine_for`.

        Writes run in their own committed transaction.
        """
        if is_write_statement(statement):
            return await self.run_write_on_primary(statement, parameters)
        return await self.run_read_on_replica(statement, parameters)

    async def run_read_on_replica(self, statement: Executable, parameters: Optional[Any] = None) -> Result[Any]:
        """Execute ``statement`` on the read engine, whatever kind of statement it is."""
        async with self.get_read_engine().connect() as connection:
            return _buffered(await connection.execute(statement, parameters))

    async def run_write_on_primary(self, statement: Executable, parameters: Optional[Any] = None) -> Result[Any]:
        """Execute ``statement`` on the primary in a committed transaction."""
        async with self._primary_engine.begin() as connection:
            return _buffered(await connection.execute(statement, parameters))

    def connect(self) -> AsyncConnection:
        """Return a connection on the read engine, for use with ``async with``."""
        return self.get_read_engine().connect()

    def transaction(self) -> AsyncContextManager[AsyncConnection]:
        """Begin a transaction on the primary, for use with ``async with``."""
        return self._primary_engine.begin()

    def transaction_on_replica(self) -> AsyncContextManager[AsyncConnection]:
        """Begin a read-only unit of work on the read engine."""
        return self.get_read_engine().begin()

    def session(self, **kwargs: Any) -> RoutingAsyncSession:
        """Create an async ORM session routed through this facade.

        Args:
            **kwargs: Additional arguments passed to the session.
        """
        return RoutingAsyncSession(facade=self, **kwargs)

    def sync_facade(self) -> RoutingFacade[Engine]:
        """Return the same routing over the underlying sync engines."""
        return RoutingFacade(
            primary_engine=self._primary_engine.sync_engine,
            replica_engines=[engine.sync_engine for engine in self._replica_engines],
            replica_selector=self._replica_selector,  # type: ignore[arg-type]
            mode=self._mode,
            mutation_cache=self._mutation_cache,
        )

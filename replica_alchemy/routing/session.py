"""Routing-aware session classes for read/write routing.

This module provides custom SQLAlchemy session classes that route through a
:class:`~replica_alchemy.routing.facade.RoutingFacade` via the ``get_bind()``
method.
"""

from typing import TYPE_CHECKING, Any, Optional, Union

from sqlalchemy import Delete, Insert, Update, event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Mapper, SessionTransaction

    from replica_alchemy.routing.facade import AsyncRoutingFacade, RoutingFacade


__all__ = (
    "RoutingAsyncSession",
    "RoutingSyncSession",
)


class RoutingSyncSession(Session):
    """Synchronous session with read/write routing via ``get_bind()``.

    The routing decision is made in ``get_bind()`` based on:
    1. Whether the facade is primary-only
    2. Whether the session already wrote in its current transaction
    3. Whether the session is flushing
    4. The type of statement being executed (INSERT/UPDATE/DELETE vs SELECT)
    5. Whether FOR UPDATE is being used

    Once the session flushes or executes DML, every later statement goes to the
    primary until the transaction ends, so the session reads its own
    uncommitted writes.

    Attributes:
        _facade: The routing facade, over sync engines.
        _stick_to_primary: Set after a write, cleared when the root transaction ends.
    """

    _facade: "RoutingFacade[Engine]"
    _stick_to_primary: bool

    def __init__(
        self,
        facade: "RoutingFacade[Engine]",
        **kwargs: Any,
    ) -> None:
        """Initialize the routing session.

        Args:
            facade: The routing facade deciding between primary and replicas.
            **kwargs: Additional arguments passed to the parent Session.
        """
        kwargs.pop("bind", None)
        kwargs.pop("binds", None)
        super().__init__(**kwargs)
        self._facade = facade
        self._stick_to_primary = False
        event.listen(self, "after_transaction_end", self._release_primary)

    @property
    def facade(self) -> "RoutingFacade[Engine]":
        return self._facade

    @property
    def stick_to_primary(self) -> bool:
        """Whether reads are pinned to the primary by a write in this transaction."""
        return self._stick_to_primary

    def get_bind(
        self,
        mapper: Optional[Union["Mapper[Any]", type[Any]]] = None,
        clause: Optional[Any] = None,
        **kwargs: Any,
    ) -> "Engine":
        """Route to primary or replica based on operation and facade mode.

        Args:
            mapper: Optional mapper for the operation.
            clause: The SQL clause being executed.
            **kwargs: Additional keyword arguments.

        Returns:
            The appropriate engine (primary or replica).
        """
        if self._should_use_primary(clause):
            return self._facade.get_write_engine()
        return self._facade.get_read_engine()

    def _should_use_primary(self, clause: Optional[Any]) -> bool:
        """Determine if the operation should use the primary database.

        Args:
            clause: The SQL clause being executed.

        Returns:
            ``True`` if primary should be used.
        """
        if self._facade.is_primary_only:
            return True

        if self._stick_to_primary:
            return True

        if self._flushing or (clause is not None and isinstance(clause, (Insert, Update, Delete))):
            self._stick_to_primary = True
            return True

        return self._has_for_update(clause)

    def _has_for_update(self, clause: Optional[Any]) -> bool:
        """Check if the clause has FOR UPDATE.

        Args:
            clause: The SQL clause to check.

        Returns:
            ``True`` if FOR UPDATE is present.
        """
        if clause is None:
            return False
        for_update_arg = getattr(clause, "_for_update_arg", None)
        return for_update_arg is not None

    def _release_primary(self, session: Session, transaction: "SessionTransaction") -> None:
        """Let reads use replicas again once the root transaction commits, rolls back or closes."""
        if transaction.parent is None:
            self._stick_to_primary = False


class RoutingAsyncSession(AsyncSession):
    """Async session with read/write routing support.

    The routing itself happens in the underlying :class:`RoutingSyncSession`,
    which receives the facade's sync engines.

    Example:
        Creating a routing async session::

            async with facade.session() as session:
                users = (await session.scalars(select(User))).all()
    """

    sync_session_class: "type[Session]" = RoutingSyncSession

    def __init__(
        self,
        facade: "AsyncRoutingFacade",
        **kwargs: Any,
    ) -> None:
        """Initialize the async routing session.

        Args:
            facade: The async routing facade.
            **kwargs: Additional arguments passed to the parent AsyncSession.
        """
        kwargs.pop("bind", None)
        kwargs.pop("binds", None)
        super().__init__(
            sync_session_class=RoutingSyncSession,
            facade=facade.sync_facade(),
            **kwargs,
        )
        self._facade = facade

    @property
    def facade(self) -> "AsyncRoutingFacade":
        """Get the routing facade.

        Returns:
            The async routing facade.
        """
        return self._facade

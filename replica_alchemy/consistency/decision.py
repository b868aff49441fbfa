"""Read-after-write routing decisions for request middleware.

HTTP and RPC middleware call :func:`resolve_route` once per operation to pick
the facade the handler should use. A caller's write forces its reads to the
primary for the length of the mutation cache window; other callers keep
reading from replicas.

Example:
    A request middleware::

        kind = operation_kind_for_method(request.method)
        request.state.db = resolve_route(facade, kind, caller_identity=session.user_id)
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, TypeVar

from replica_alchemy.consistency.cache import mutation_cache

if TYPE_CHECKING:
    from replica_alchemy.consistency.cache import MutationCache
    from replica_alchemy.routing.facade import RoutingFacade

__all__ = (
    "CONSISTENCY_KEY_PREFIX",
    "WRITE_METHODS",
    "OperationKind",
    "consistency_key",
    "operation_kind_for_method",
    "operation_kind_for_rpc",
    "resolve_route",
)

logger = logging.getLogger("replica_alchemy.consistency")

FacadeT = TypeVar("FacadeT", bound="RoutingFacade[Any]")

CONSISTENCY_KEY_PREFIX = "user:"

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
"""HTTP methods treated as mutations."""


class OperationKind(Enum):
    READ = "read"
    WRITE = "write"


def operation_kind_for_method(method: str) -> OperationKind:
    """Classify an HTTP request method."""
    return OperationKind.WRITE if method.upper() in WRITE_METHODS else OperationKind.READ


def operation_kind_for_rpc(kind: str) -> OperationKind:
    """Classify an RPC procedure type: ``mutation`` writes, ``query`` and ``subscription`` read."""
    return OperationKind.WRITE if kind.lower() == "mutation" else OperationKind.READ


def consistency_key(caller_identity: Optional[Any]) -> Optional[str]:
    """Return the mutation cache key of a caller, or ``None`` for anonymous callers."""
    if caller_identity is None or caller_identity == "":
        return None
    return f"{CONSISTENCY_KEY_PREFIX}{caller_identity}"


def resolve_route(
    facade: FacadeT,
    operation: OperationKind,
    caller_identity: Optional[Any] = None,
    cache: Optional[MutationCache] = None,
) -> FacadeT:
    """Pick the facade for one operation.

    * Writes always get the primary-only view. A known caller is recorded in the
      cache so its following reads also go to the primary.
    * Reads get the primary-only view while the caller has a live cache entry,
      and ``facade`` unchanged otherwise.

    Nothing is remembered between calls beyond the cache entry itself.

    Args:
        facade: The request's routing facade.
        operation: Whether the operation reads or writes.
        caller_identity: Stable identity of the caller, ``None`` when anonymous.
        cache: Mutation cache. Defaults to the cache of ``facade``, then to the
            process-wide one.

    Returns:
        The facade to use for the operation.
    """
    if cache is None:
        cache = mutation_cache if facade.mutation_cache is None else facade.mutation_cache
    key = consistency_key(caller_identity)

    if operation is OperationKind.WRITE:
        if key is None:
            logger.debug("Anonymous mutation, using primary")
        else:
            cache.set(key)
            logger.debug("Mutation for %s, using primary", key)
        return facade.use_primary_only()

    if key is None:
        return facade

    remaining = cache.remaining(key)
    if remaining is not None:
        logger.debug("Recent mutation for %s, using primary for %.3fs", key, remaining)
        return facade.use_primary_only()

    logger.debug("No recent mutations for %s, using replica routing", key)
    return facade

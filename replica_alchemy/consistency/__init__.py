"""Read-after-write consistency.

A write by a caller is recorded in the :class:`MutationCache`; for the next few
seconds that caller's reads are routed to the primary, so it never reads a
replica that has not caught up with its own write.
"""

from replica_alchemy.consistency.cache import DEFAULT_CLEANUP_INTERVAL, CacheEntry, MutationCache, mutation_cache
from replica_alchemy.consistency.decision import (
    OperationKind,
    consistency_key,
    operation_kind_for_method,
    operation_kind_for_rpc,
    resolve_route,
)

__all__ = (
    "DEFAULT_CLEANUP_INTERVAL",
    "CacheEntry",
    "MutationCache",
    "OperationKind",
    "consistency_key",
    "mutation_cache",
    "operation_kind_for_method",
    "operation_kind_for_rpc",
    "resolve_route",
)

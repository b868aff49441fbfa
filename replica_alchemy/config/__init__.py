from replica_alchemy.config.routing import (
    DEFAULT_CONSISTENCY_TTL,
    ReplicaConfig,
    RoutingConfig,
    RoutingStrategy,
    split_list,
)

__all__ = (
    "DEFAULT_CONSISTENCY_TTL",
    "ReplicaConfig",
    "RoutingConfig",
    "RoutingStrategy",
    "split_list",
)

from replica_alchemy import (
    config,
    consistency,
    exceptions,
    health,
    providers,
    region,
    routing,
)

__all__ = (
    "config",
    "consistency",
    "exceptions",
    "health",
    "providers",
    "region",
    "routing",
)

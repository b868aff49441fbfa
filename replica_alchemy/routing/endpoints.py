"""Connection endpoints of a primary/replica topology."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from replica_alchemy.exceptions import ImproperConfigurationError

if TYPE_CHECKING:
    from replica_alchemy.config.routing import RoutingConfig
    from replica_alchemy.providers import PoolConfig, ProviderProfile

__all__ = (
    "ConnectionEndpoint",
    "EndpointRole",
    "build_endpoints",
)


class EndpointRole(Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


@dataclass(frozen=True)
class ConnectionEndpoint:
    """A database endpoint and the pool settings it is opened with.

    Attributes:
        role: Whether this is the primary or a replica.
        connection_string: Database connection string.
        pool_config: Resolved pool settings.
        region: Region tag the endpoint serves, if known.
        name: Human-readable name, used in logs.
    """

    role: EndpointRole
    connection_string: str
    pool_config: PoolConfig
    region: Optional[str] = None
    name: str = ""

    def engine_config(self, overrides: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Engine keyword arguments for this endpoint, with ``overrides`` applied on top."""
        config = self.pool_config.to_engine_config(self.connection_string)
        if overrides:
            config.update(overrides)
        return config


def build_endpoints(
    config: RoutingConfig,
    profile: ProviderProfile,
) -> tuple[ConnectionEndpoint, list[ConnectionEndpoint]]:
    """Build the primary and replica endpoints for a routing configuration.

    No connection is opened.

    Args:
        config: The routing configuration.
        profile: Provider profile supplying the pool settings.

    Raises:
        ImproperConfigurationError: If the replica and region lists differ in length.

    Returns:
        The primary endpoint and the replica endpoints in configuration order.
    """
    replica_count, region_count = len(config.read_replicas), len(config.replica_regions)
    if replica_count and region_count and replica_count != region_count:
        msg = (
            f"Read replicas and replica regions must have the same length "
            f"({replica_count} replicas, {region_count} regions)"
        )
        raise ImproperConfigurationError(msg)
    replica_configs = config.get_replica_configs()

    pool_config = profile.get_pool_config(config.environment)
    primary = ConnectionEndpoint(
        role=EndpointRole.PRIMARY,
        connection_string=config.primary_connection_string,
        pool_config=pool_config,
        name="primary",
    )
    replicas = [
        ConnectionEndpoint(
            role=EndpointRole.REPLICA,
            connection_string=replica.connection_string,
            pool_config=pool_config,
            region=replica.region or None,
            name=replica.name or f"replica-{index}",
        )
        for index, replica in enumerate(replica_configs)
    ]
    return primary, replicas

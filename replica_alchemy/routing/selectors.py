"""Replica selectors for read/write routing.

This module provides different strategies for selecting which read replica
to use for read operations.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Generic, TypeVar

from replica_alchemy.config.routing import RoutingStrategy
from replica_alchemy.region import NO_REGION_MATCH

if TYPE_CHECKING:
    from collections.abc import Sequence


__all__ = (
    "FirstAvailableSelector",
    "RandomSelector",
    "RegionSelector",
    "ReplicaSelector",
    "RoundRobinSelector",
    "create_selector",
)

logger = logging.getLogger("replica_alchemy.routing")

EngineT = TypeVar("EngineT")


class ReplicaSelector(ABC, Generic[EngineT]):
    """Abstract base class for replica selection strategies.

    A selector holds no replicas of its own; it picks one element from the
    sequence it is given. Selection only depends on positions, so the same
    selector works for sync engines, async engines or plain endpoints.
    """

    __slots__ = ()

    def select(self, replicas: Sequence[EngineT]) -> EngineT:
        """Select one replica.

        Args:
            replicas: Ordered, non-empty sequence of replicas.

        Returns:
            The selected replica.

        Raises:
            RuntimeError: If ``replicas`` is empty.
        """
        if not replicas:
            msg = f"No replicas configured for {self.name} selection"
            raise RuntimeError(msg)
        return replicas[self.index(len(replicas))]

    @abstractmethod
    def index(self, count: int) -> int:
        """Return the position to use out of ``count`` replicas."""
        ...

    @property
    def name(self) -> str:
        return self.__class__.__name__


class RandomSelector(ReplicaSelector[EngineT]):
    """Random replica selection.

    Example:
        Creating a random selector::

            selector = RandomSelector()
            engine = selector.select(replica_engines)
    """

    __slots__ = ()

    def index(self, count: int) -> int:
        return random.randrange(count)  # noqa: S311

    @property
    def name(self) -> str:
        return "random"


class RoundRobinSelector(ReplicaSelector[EngineT]):
    """Clock-driven round-robin selection.

    The index is ``floor(epoch seconds) mod N``: there is no counter, so every
    call within the same second picks the same replica and no state is shared
    between callers other than the clock.

    Example:
        Creating a round-robin selector::

            selector = RoundRobinSelector()
            engine = selector.select(replica_engines)
    """

    __slots__ = ("_clock",)

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the round-robin selector.

        Args:
            clock: Returns the current time in epoch seconds.
        """
        self._clock = clock

    def index(self, count: int) -> int:
        return int(self._clock()) % count

    @property
    def name(self) -> str:
        return "round-robin"


class FirstAvailableSelector(ReplicaSelector[EngineT]):
    """Always select the first configured replica."""

    __slots__ = ()

    def index(self, count: int) -> int:
        return 0

    @property
    def name(self) -> str:
        return "first-available"


class RegionSelector(ReplicaSelector[EngineT]):
    """Select the replica serving the deployment region.

    Falls back to the first replica when ``preferred_index`` is out of range.
    """

    __slots__ = ("_preferred_index",)

    def __init__(self, preferred_index: int) -> None:
        self._preferred_index = preferred_index

    @property
    def preferred_index(self) -> int:
        return self._preferred_index

    def index(self, count: int) -> int:
        if 0 <= self._preferred_index < count:
            return self._preferred_index
        logger.warning("Replica index %d not available, using first replica", self._preferred_index)
        return 0

    @property
    def name(self) -> str:
        return "region"


def create_selector(
    strategy: RoutingStrategy,
    region_index: int = NO_REGION_MATCH,
    clock: Callable[[], float] = time.time,
) -> ReplicaSelector[EngineT]:
    """Create the selector for a routing strategy.

    Args:
        strategy: The configured strategy.
        region_index: Result of :func:`~replica_alchemy.region.resolve_region_index`, only used by
            :attr:`RoutingStrategy.REGION`.
        clock: Clock for the round-robin selector.

    Returns:
        The selector. A region strategy without a region match degrades to
        round-robin.
    """
    if strategy == RoutingStrategy.RANDOM:
        return RandomSelector()
    if strategy == RoutingStrategy.FIRST_AVAILABLE:
        return FirstAvailableSelector()
    if strategy == RoutingStrategy.REGION:
        if region_index != NO_REGION_MATCH:
            logger.info("Selected replica %d for the deployment region", region_index)
            return RegionSelector(region_index)
        logger.warning("No replica found for the deployment region, using round-robin")
    return RoundRobinSelector(clock)

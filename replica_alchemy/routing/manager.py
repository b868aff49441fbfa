"""Connection managers for read/write routing.

This module provides the manager classes that turn a
:class:`~replica_alchemy.config.routing.RoutingConfig` into engines: they
resolve the provider profile, build the primary and replica endpoints, check
that the primary answers before handing out a routing facade, and close every
pool on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from replica_alchemy.config.routing import RoutingStrategy
from replica_alchemy.consistency.cache import DEFAULT_CLEANUP_INTERVAL, MutationCache
from replica_alchemy.exceptions import DatabaseConnectionError, ImproperConfigurationError
from replica_alchemy.providers import ProviderResolver
from replica_alchemy.region import NO_REGION_MATCH
from replica_alchemy.routing.endpoints import build_endpoints
from replica_alchemy.routing.facade import AsyncRoutingFacade, RoutingMode, SyncRoutingFacade
from replica_alchemy.routing.selectors import create_selector

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Generator

    from sqlalchemy import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine

    from replica_alchemy.config.routing import RoutingConfig
    from replica_alchemy.providers import ProviderProfile
    from replica_alchemy.routing.endpoints import ConnectionEndpoint
    from replica_alchemy.routing.selectors import ReplicaSelector

__all__ = (
    "DEFAULT_RETRY_INTERVAL",
    "AsyncConnectionManager",
    "SyncConnectionManager",
)

logger = logging.getLogger("replica_alchemy.routing")

EngineT = TypeVar("EngineT")

DEFAULT_RETRY_INTERVAL = 1.0
"""Base delay in seconds between liveness probes. Attempt ``n`` waits ``n`` times this."""

_POOL_OPTIONS = ("pool_size", "max_overflow", "pool_recycle", "pool_timeout")
_RETRYABLE_ERRORS = (SQLAlchemyError, OSError, TimeoutError, asyncio.TimeoutError)
_PROBE_STATEMENT = text("SELECT 1")


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome is not None else None
    logger.warning("Connection attempt %d failed, retrying: %s", retry_state.attempt_number, error)


class _ConnectionManager(Generic[EngineT]):
    """Endpoint, engine and selector construction shared by the sync and async managers."""

    __slots__ = (
        "_create_engine_callable",
        "_cleanup_interval",
        "_engine_config",
        "_mutation_cache",
        "_primary_endpoint",
        "_primary_engine",
        "_profile",
        "_replica_endpoints",
        "_replica_engines",
        "_retry_interval",
        "_routing_config",
        "_warned_primary_only",
    )

    def __init__(
        self,
        routing_config: RoutingConfig,
        engine_config: Optional[dict[str, Any]],
        create_engine_callable: Callable[..., EngineT],
        provider_resolver: Optional[ProviderResolver],
        retry_interval: float,
        mutation_cache: Optional[MutationCache],
        cleanup_interval: float,
    ) -> None:
        self._routing_config = routing_config
        self._engine_config = engine_config or {}
        self._create_engine_callable = create_engine_callable
        self._retry_interval = retry_interval
        if mutation_cache is None:
            mutation_cache = MutationCache(ttl=routing_config.consistency_ttl)
        self._mutation_cache = mutation_cache
        self._cleanup_interval = cleanup_interval

        self._profile = (provider_resolver or ProviderResolver()).resolve(routing_config.primary_connection_string)
        logger.info("Using %s provider profile", self._profile.name)

        self._primary_endpoint, self._replica_endpoints = build_endpoints(routing_config, self._profile)

        # Engines are lazy, creating one opens no connection
        self._primary_engine = self._create_engine(self._primary_endpoint)
        self._replica_engines: list[EngineT] = []
        self._warned_primary_only = False

    def _create_engine(self, endpoint: ConnectionEndpoint) -> EngineT:
        """Create an engine for an endpoint with the configured options.

        Args:
            endpoint: The endpoint to connect to.

        Returns:
            The created engine.
        """
        config = endpoint.engine_config(self._engine_config)
        try:
            return self._create_engine_callable(endpoint.connection_string, **config)
        except TypeError:
            # Some pool classes don't accept the sizing options
            for option in _POOL_OPTIONS:
                config.pop(option, None)
            return self._create_engine_callable(endpoint.connection_string, **config)

    def _ensure_replica_engines(self) -> list[EngineT]:
        if not self._replica_engines and self._replica_endpoints:
            self._replica_engines = [self._create_engine(endpoint) for endpoint in self._replica_endpoints]
        return self._replica_engines

    def _create_selector(self) -> ReplicaSelector[EngineT]:
        """Create the replica selector for the configured strategy and region."""
        strategy = self._routing_config.routing_strategy
        region_index = NO_REGION_MATCH
        if strategy == RoutingStrategy.REGION:
            region_index = self._profile.resolve_region_index(
                self._routing_config.region,
                self._routing_config.get_replica_regions(),
            )
        return create_selector(strategy, region_index)

    def _is_primary_only(self) -> bool:
        """Check whether the topology is served by the primary alone."""
        if not self._routing_config.enabled:
            return True
        if self._replica_endpoints:
            return False
        if not self._warned_primary_only:
            logger.warning("No replicas configured, using primary-only mode")
            self._warned_primary_only = True
        return True

    def _start_cleanup(self) -> None:
        self._mutation_cache.start_cleanup(self._cleanup_interval)

    def _retry_options(self, retries: int) -> dict[str, Any]:
        if retries < 1:
            msg = f"retries must be at least 1, got {retries}"
            raise ImproperConfigurationError(msg)
        return {
            "stop": stop_after_attempt(retries),
            "wait": wait_incrementing(start=self._retry_interval, increment=self._retry_interval),
            "retry": retry_if_exception_type(_RETRYABLE_ERRORS),
            "before_sleep": _log_retry,
        }

    def _connection_failed(self, error: RetryError, retries: int) -> DatabaseConnectionError:
        cause = error.last_attempt.exception()
        logger.error("Failed to connect to the primary database after %d attempts: %s", retries, cause)
        return DatabaseConnectionError(f"Failed to connect to the primary database after {retries} attempts")

    def _isolated_endpoint(self) -> ConnectionEndpoint:
        return replace(
            self._primary_endpoint,
            connection_string=self._routing_config.get_pooler_connection_string(),
            pool_config=self._primary_endpoint.pool_config.for_isolated_job(),
            name="isolated",
        )

    @property
    def routing_config(self) -> RoutingConfig:
        return self._routing_config

    @property
    def profile(self) -> ProviderProfile:
        """Get the provider profile resolved from the primary connection string."""
        return self._profile

    @property
    def mutation_cache(self) -> MutationCache:
        """Get the cache of recent writes shared by the facades of this manager.

        Its window is the configured ``consistency_ttl``. Expired entries are swept
        in the background from the first ``connect()`` until ``close_all()``.
        """
        return self._mutation_cache

    @property
    def primary_endpoint(self) -> ConnectionEndpoint:
        return self._primary_endpoint

    @property
    def replica_endpoints(self) -> list[ConnectionEndpoint]:
        return self._replica_endpoints

    @property
    def primary_engine(self) -> EngineT:
        """Get the primary engine.

        Returns:
            The primary database engine.
        """
        return self._primary_engine

    @property
    def replica_engines(self) -> list[EngineT]:
        """Get the replica engines.

        Returns:
            List of replica database engines, empty until the first successful ``connect()``.
        """
        return self._replica_engines


class SyncConnectionManager(_ConnectionManager["Engine"]):
    """Connection manager for sync engines.

    Example:
        Connecting at startup::

            manager = SyncConnectionManager(RoutingConfig.from_env())
            facade = manager.connect()

            try:
                serve(facade)
            finally:
                manager.close_all()
    """

    __slots__ = ("_sleep",)

    def __init__(
        self,
        routing_config: RoutingConfig,
        engine_config: Optional[dict[str, Any]] = None,
        create_engine_callable: Callable[..., Engine] = create_engine,
        provider_resolver: Optional[ProviderResolver] = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        mutation_cache: Optional[MutationCache] = None,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        """Initialize the manager. No connection is opened.

        Args:
            routing_config: Configuration for read/write routing.
            engine_config: Engine options applied on top of the provider's pool settings.
            create_engine_callable: Callable to create engines (for testing).
            provider_resolver: Resolver choosing the provider profile.
            retry_interval: Base delay between liveness probes, in seconds.
            sleep: Sleep function used between probes.
            mutation_cache: Cache of recent writes. Defaults to a new cache with the
                configured ``consistency_ttl``.
            cleanup_interval: Seconds between sweeps of expired cache entries.
        """
        super().__init__(
            routing_config,
            engine_config,
            create_engine_callable,
            provider_resolver,
            retry_interval,
            mutation_cache,
            cleanup_interval,
        )
        self._sleep = sleep

    def _probe(self) -> None:
        with self._primary_engine.connect() as connection:
            connection.execute(_PROBE_STATEMENT)

    def connect(self, retries: int = 3) -> SyncRoutingFacade:
        """Check the primary and return a routing facade.

        Without replicas the primary-only facade is returned right away. Otherwise
        the primary is probed with ``SELECT 1`` up to ``retries`` times, waiting
        ``attempt * retry_interval`` seconds between attempts. Replicas are not
        probed; a broken replica fails on first use.

        The returned facade carries :attr:`mutation_cache`, whose background sweep
        starts here and runs until :meth:`close_all`.

        Args:
            retries: Maximum number of probe attempts.

        Raises:
            ImproperConfigurationError: If ``retries`` is lower than 1.
            DatabaseConnectionError: If every probe failed.

        Returns:
            The routing facade.
        """
        options = self._retry_options(retries)
        if self._is_primary_only():
            self._start_cleanup()
            return SyncRoutingFacade(
                self._primary_engine,
                mode=RoutingMode.PRIMARY_ONLY,
                mutation_cache=self._mutation_cache,
            )

        try:
            for attempt in Retrying(sleep=self._sleep, **options):
                with attempt:
                    self._probe()
        except RetryError as exc:
            raise self._connection_failed(exc, retries) from exc.last_attempt.exception()

        self._start_cleanup()
        return SyncRoutingFacade(
            primary_engine=self._primary_engine,
            replica_engines=self._ensure_replica_engines(),
            replica_selector=self._create_selector(),
            mutation_cache=self._mutation_cache,
        )

    def create_isolated_engine(self) -> Engine:
        """Create a single-connection engine for short-lived batch work.

        The engine targets the pooler connection string (the primary when none is
        configured) and never a replica.
        """
        return self._create_engine(self._isolated_endpoint())

    @contextmanager
    def isolated_pool(self) -> Generator[SyncRoutingFacade, None, None]:
        """Run batch work on its own single-connection pool.

        Yields:
            A primary-only facade over the isolated engine, disposed on exit.
        """
        engine = self.create_isolated_engine()
        try:
            yield SyncRoutingFacade(engine, mode=RoutingMode.PRIMARY_ONLY, mutation_cache=self._mutation_cache)
        finally:
            engine.dispose()

    def close_all(self) -> None:
        """Close all engines and release connections.

        Call this when shutting down to properly release database connections.
        The mutation cache sweeper is stopped as well.
        """
        self._mutation_cache.stop_cleanup()
        self._primary_engine.dispose()
        for engine in self._replica_engines:
            engine.dispose()


class AsyncConnectionManager(_ConnectionManager["AsyncEngine"]):
    """Connection manager for async engines.

    Example:
        Connecting at startup::

            manager = AsyncConnectionManager(RoutingConfig.from_env())
            facade = await manager.connect()

            try:
                await serve(facade)
            finally:
                await manager.close_all()
    """

    __slots__ = ("_sleep",)

    def __init__(
        self,
        routing_config: RoutingConfig,
        engine_config: Optional[dict[str, Any]] = None,
        create_engine_callable: Callable[..., AsyncEngine] = create_async_engine,
        provider_resolver: Optional[ProviderResolver] = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        mutation_cache: Optional[MutationCache] = None,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        """Initialize the async manager. No connection is opened.

        Args:
            routing_config: Configuration for read/write routing.
            engine_config: Engine options applied on top of the provider's pool settings.
            create_engine_callable: Callable to create async engines (for testing).
            provider_resolver: Resolver choosing the provider profile.
            retry_interval: Base delay between liveness probes, in seconds.
            sleep: Coroutine function used to wait between probes.
            mutation_cache: Cache of recent writes. Defaults to a new cache with the
                configured ``consistency_ttl``.
            cleanup_interval: Seconds between sweeps of expired cache entries.
        """
        super().__init__(
            routing_config,
            engine_config,
            create_engine_callable,
            provider_resolver,
            retry_interval,
            mutation_cache,
            cleanup_interval,
        )
        self._sleep = sleep

    async def _probe(self) -> None:
        async with self._primary_engine.connect() as connection:
            await connection.execute(_PROBE_STATEMENT)

    async def connect(self, retries: int = 3) -> AsyncRoutingFacade:
        """Check the primary and return a routing facade.

        See :meth:`SyncConnectionManager.connect`.

        Raises:
            ImproperConfigurationError: If ``retries`` is lower than 1.
            DatabaseConnectionError: If every probe failed.
        """
        options = self._retry_options(retries)
        if self._is_primary_only():
            self._start_cleanup()
            return AsyncRoutingFacade(
                self._primary_engine,
                mode=RoutingMode.PRIMARY_ONLY,
                mutation_cache=self._mutation_cache,
            )

        try:
            async for attempt in AsyncRetrying(sleep=self._sleep, **options):
                with attempt:
                    await self._probe()
        except RetryError as exc:
            raise self._connection_failed(exc, retries) from exc.last_attempt.exception()

        self._start_cleanup()
        return AsyncRoutingFacade(
            primary_engine=self._primary_engine,
            replica_engines=self._ensure_replica_engines(),
            replica_selector=self._create_selector(),
            mutation_cache=self._mutation_cache,
        )

    def create_isolated_engine(self) -> AsyncEngine:
        """Create a single-connection async engine for short-lived batch work."""
        return self._create_engine(self._isolated_endpoint())

    @asynccontextmanager
    async def isolated_pool(self) -> AsyncGenerator[AsyncRoutingFacade, None]:
        """Run batch work on its own single-connection pool.

        Yields:
            A primary-only facade over the isolated engine, disposed on exit.
        """
        engine = self.create_isolated_engine()
        try:
            yield AsyncRoutingFacade(engine, mode=RoutingMode.PRIMARY_ONLY, mutation_cache=self._mutation_cache)
        finally:
            await engine.dispose()

    async def close_all(self) -> None:
        """Close all engines and release connections.

        Call this when shutting down to properly release database connections.
        The mutation cache sweeper is stopped as well.
        """
        self._mutation_cache.stop_cleanup()
        await self._primary_engine.dispose()
        for engine in self._replica_engines:
            await engine.dispose()

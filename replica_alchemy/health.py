"""Database health and replication lag checks.

These are reporting functions for health endpoints and monitors: a failing
database produces an ``UNHEALTHY`` result, never an exception.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine, Result
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

__all__ = (
    "DEFAULT_DEGRADED_LATENCY_MS",
    "MAX_HEALTHY_LAG_BYTES",
    "MAX_HEALTHY_LAG_MS",
    "HealthCheckResult",
    "HealthStatus",
    "ReplicationLagResult",
    "check_health",
    "check_health_async",
    "check_health_detailed",
    "check_health_detailed_async",
    "check_replication_lag",
    "check_replication_lag_async",
    "parse_lsn",
)

logger = logging.getLogger("replica_alchemy")

DEFAULT_DEGRADED_LATENCY_MS = 1000.0
MAX_HEALTHY_LAG_MS = 5000.0
MAX_HEALTHY_LAG_BYTES = 1024 * 1024

_HEALTH_QUERY = "SELECT 1 AS health_check"
_PRIMARY_LSN_QUERY = text("SELECT pg_current_wal_lsn()::text AS lsn, extract(epoch from now()) AS ts")
_REPLICA_LSN_QUERY = text("SELECT pg_last_wal_replay_lsn()::text AS lsn, extract(epoch from now()) AS ts")
_CHECK_ERRORS = (SQLAlchemyError, OSError)
_VERSION_QUERY = text("SELECT version() AS version")
_STATS_QUERY = text(
    "SELECT pg_database_size(current_database()) AS db_size, "
    "(SELECT count(*) FROM pg_stat_activity WHERE state = 'active') AS active_connections, "
    "now() AS server_time"
)
_UNKNOWN = "unknown"
_MAX_VERSION_LENGTH = 50


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of a connectivity probe.

    Attributes:
        status: Overall status.
        timestamp: When the check finished, in UTC.
        latency_ms: Round trip of the probe in milliseconds.
        error: Error message when the probe failed.
        details: Extra information about the probe.
    """

    status: HealthStatus
    timestamp: datetime
    latency_ms: float
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


@dataclass(frozen=True)
class ReplicationLagResult:
    """Replication lag between a primary and one replica.

    ``lag_ms`` and ``lag_bytes`` are ``-1`` when the lag could not be measured.
    """

    lag_ms: float
    lag_bytes: int
    is_healthy: bool
    timestamp: datetime
    error: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _health_result(
    latency_ms: float,
    degraded_latency_ms: float,
    error: Optional[BaseException] = None,
) -> HealthCheckResult:
    details = {"query": _HEALTH_QUERY}
    if error is not None:
        logger.warning("Database health check failed: %s", error)
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY,
            timestamp=_now(),
            latency_ms=latency_ms,
            error=str(error),
            details=details,
        )
    status = HealthStatus.DEGRADED if latency_ms > degraded_latency_ms else HealthStatus.HEALTHY
    return HealthCheckResult(status=status, timestamp=_now(), latency_ms=latency_ms, details=details)


def check_health(engine: Engine, degraded_latency_ms: float = DEFAULT_DEGRADED_LATENCY_MS) -> HealthCheckResult:
    """Probe ``engine`` with ``SELECT 1``.

    Args:
        engine: The engine to probe.
        degraded_latency_ms: Latency above which a working database is reported as degraded.

    Returns:
        The probe result.
    """
    started = time.perf_counter()
    try:
        with engine.connect() as connection:
            connection.execute(text(_HEALTH_QUERY))
    except _CHECK_ERRORS as exc:
        return _health_result(_elapsed_ms(started), degraded_latency_ms, exc)
    return _health_result(_elapsed_ms(started), degraded_latency_ms)


async def check_health_async(
    engine: AsyncEngine,
    degraded_latency_ms: float = DEFAULT_DEGRADED_LATENCY_MS,
) -> HealthCheckResult:
    """Async variant of :func:`check_health`."""
    started = time.perf_counter()
    try:
        async with engine.connect() as connection:
            await connection.execute(text(_HEALTH_QUERY))
    except _CHECK_ERRORS as exc:
        return _health_result(_elapsed_ms(started), degraded_latency_ms, exc)
    return _health_result(_elapsed_ms(started), degraded_latency_ms)


def _read_nothing(result: Result[Any]) -> None:
    return None


def _read_scalar(result: Result[Any]) -> Any:
    return result.scalar_one()


def _read_row(result: Result[Any]) -> Any:
    return result.one()


_DETAILED_CHECKS: tuple[tuple[str, Any, Callable[[Result[Any]], Any]], ...] = (
    ("basic", text(_HEALTH_QUERY), _read_nothing),
    ("version", _VERSION_QUERY, _read_scalar),
    ("stats", _STATS_QUERY, _read_row),
)


def _stat(stats: Any, name: str) -> Any:
    return None if stats is None else getattr(stats, name, None)


def _detailed_result(
    latency_ms: float,
    degraded_latency_ms: float,
    outcomes: dict[str, Any],
    errors: dict[str, str],
) -> HealthCheckResult:
    checks_completed = {name: name in outcomes for name, _, _ in _DETAILED_CHECKS}
    if not outcomes:
        logger.warning("Detailed database health check failed: %s", errors)
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY,
            timestamp=_now(),
            latency_ms=latency_ms,
            error=errors.get("basic"),
            details={"checks_completed": checks_completed, "errors": errors},
        )

    version = outcomes.get("version")
    stats = outcomes.get("stats")
    db_size = _stat(stats, "db_size")
    active_connections = _stat(stats, "active_connections")
    server_time = _stat(stats, "server_time")
    details: dict[str, Any] = {
        "version": str(version)[:_MAX_VERSION_LENGTH] if version else _UNKNOWN,
        "database_size": f"{round(int(db_size) / 1024 / 1024)}MB" if db_size is not None else _UNKNOWN,
        "active_connections": str(active_connections) if active_connections is not None else _UNKNOWN,
        "server_time": str(server_time) if server_time is not None else _UNKNOWN,
        "checks_completed": checks_completed,
    }
    if errors:
        logger.warning("Database health sub-checks failed: %s", ", ".join(sorted(errors)))
        details["errors"] = errors
    status = HealthStatus.DEGRADED if errors or latency_ms > degraded_latency_ms else HealthStatus.HEALTHY
    return HealthCheckResult(status=status, timestamp=_now(), latency_ms=latency_ms, details=details)


def check_health_detailed(
    engine: Engine,
    degraded_latency_ms: float = DEFAULT_DEGRADED_LATENCY_MS,
) -> HealthCheckResult:
    """Probe ``engine`` and collect server version, database size and active connections.

    Each query runs on its own connection, so one failing query does not abort
    the others. The version and statistics queries are PostgreSQL specific.

    The result is ``UNHEALTHY`` when no query succeeds, ``DEGRADED`` when some
    fail or the checks took longer than ``degraded_latency_ms``, and ``HEALTHY``
    otherwise. Values that could not be read are reported as ``"unknown"``.

    Args:
        engine: The engine to probe.
        degraded_latency_ms: Total latency above which the database is reported as degraded.

    Returns:
        The probe result, with the collected values in ``details``.
    """
    started = time.perf_counter()
    outcomes: dict[str, Any] = {}
    errors: dict[str, str] = {}
    for name, statement, read in _DETAILED_CHECKS:
        try:
            with engine.connect() as connection:
                outcomes[name] = read(connection.execute(statement))
        except _CHECK_ERRORS as exc:
            errors[name] = str(exc)
    return _detailed_result(_elapsed_ms(started), degraded_latency_ms, outcomes, errors)


async def check_health_detailed_async(
    engine: AsyncEngine,
    degraded_latency_ms: float = DEFAULT_DEGRADED_LATENCY_MS,
) -> HealthCheckResult:
    """Async variant of :func:`check_health_detailed`."""
    started = time.perf_counter()
    outcomes: dict[str, Any] = {}
    errors: dict[str, str] = {}
    for name, statement, read in _DETAILED_CHECKS:
        try:
            async with engine.connect() as connection:
                outcomes[name] = read(await connection.execute(statement))
        except _CHECK_ERRORS as exc:
            errors[name] = str(exc)
    return _detailed_result(_elapsed_ms(started), degraded_latency_ms, outcomes, errors)



def parse_lsn(lsn: str) -> int:
    """Convert a PostgreSQL log sequence number such as ``16/B374D848`` to a byte position.

    Raises:
        ValueError: If ``lsn`` is not in ``high/low`` hexadecimal form.
    """
    high, sep, low = lsn.partition("/")
    if not sep:
        msg = f"Invalid LSN: {lsn!r}"
        raise ValueError(msg)
    return (int(high, 16) << 32) + int(low, 16)


def _lag_result(primary_row: Any, replica_row: Any) -> ReplicationLagResult:
    lag_bytes = 0
    if primary_row.lsn and replica_row.lsn:
        lag_bytes = abs(parse_lsn(primary_row.lsn) - parse_lsn(replica_row.lsn))
    lag_ms = abs(float(primary_row.ts) - float(replica_row.ts)) * 1000
    return ReplicationLagResult(
        lag_ms=lag_ms,
        lag_bytes=lag_bytes,
        is_healthy=lag_ms < MAX_HEALTHY_LAG_MS and lag_bytes < MAX_HEALTHY_LAG_BYTES,
        timestamp=_now(),
    )


def _unmeasured_lag(error: BaseException) -> ReplicationLagResult:
    logger.warning("Replication lag check failed: %s", error)
    return ReplicationLagResult(lag_ms=-1, lag_bytes=-1, is_healthy=False, timestamp=_now(), error=str(error))


def _fetch_position(connection: Connection, statement: Any) -> Any:
    return connection.execute(statement).one()


def check_replication_lag(primary: Engine, replica: Engine) -> ReplicationLagResult:
    """Compare the WAL position of ``primary`` with the replay position of ``replica``.

    PostgreSQL only. The lag is healthy under five seconds and one MiB.
    """
    try:
        with primary.connect() as connection:
            primary_row = _fetch_position(connection, _PRIMARY_LSN_QUERY)
        with replica.connect() as connection:
            replica_row = _fetch_position(connection, _REPLICA_LSN_QUERY)
        return _lag_result(primary_row, replica_row)
    except (*_CHECK_ERRORS, ValueError) as exc:
        return _unmeasured_lag(exc)


async def _fetch_position_async(connection: AsyncConnection, statement: Any) -> Any:
    result = await connection.execute(statement)
    return result.one()


async def check_replication_lag_async(primary: AsyncEngine, replica: AsyncEngine) -> ReplicationLagResult:
    """Async variant of :func:`check_replication_lag`."""
    try:
        async with primary.connect() as connection:
            primary_row = await _fetch_position_async(connection, _PRIMARY_LSN_QUERY)
        async with replica.connect() as connection:
            replica_row = await _fetch_position_async(connection, _REPLICA_LSN_QUERY)
        return _lag_result(primary_row, replica_row)
    except (*_CHECK_ERRORS, ValueError) as exc:
        return _unmeasured_lag(exc)

"""Deployment region detection.

The region is resolved once at startup, from an explicit override or from the
environment variables set by the hosting platform, and stored on
:class:`~replica_alchemy.config.routing.RoutingConfig`. Platform values are
returned as-is; replica region tags are expected to use the same spelling or
one of the provider's aliases.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Mapping, Optional, Sequence

__all__ = (
    "NO_REGION_MATCH",
    "PLATFORM_DETECTORS",
    "REGION_OVERRIDE_VARIABLE",
    "UNRESOLVED_REGION",
    "detect_platform_region",
    "get_deployment_region",
    "is_region_resolved",
    "resolve_region_index",
)

logger = logging.getLogger("replica_alchemy.region")

UNRESOLVED_REGION = "unresolved"
"""Sentinel returned when neither an override nor a platform signal names a region."""

REGION_OVERRIDE_VARIABLE = "DATABASE_REGION"

NO_REGION_MATCH = -1
"""Returned by :func:`resolve_region_index` when no configured region matches."""

PlatformDetector = Callable[[Mapping[str, str]], Optional[str]]


def _first_set(environ: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = environ.get(name, "").strip()
        if value:
            return value
    return None


def _detect_fly(environ: Mapping[str, str]) -> Optional[str]:
    # e.g. "ams", "dfw", "lhr"
    return _first_set(environ, "FLY_REGION", "FLY_PRIMARY_REGION")


def _detect_render(environ: Mapping[str, str]) -> Optional[str]:
    # e.g. "oregon", "virginia"
    return _first_set(environ, "RENDER_SERVICE_REGION")


def _detect_vercel(environ: Mapping[str, str]) -> Optional[str]:
    # e.g. "iad1", "lhr1"
    return _first_set(environ, "VERCEL_REGION")


def _detect_railway(environ: Mapping[str, str]) -> Optional[str]:
    return _first_set(environ, "RAILWAY_REGION")


def _detect_aws(environ: Mapping[str, str]) -> Optional[str]:
    return _first_set(environ, "AWS_REGION", "AWS_DEFAULT_REGION")


PLATFORM_DETECTORS: tuple[tuple[str, PlatformDetector], ...] = (
    ("Fly.io", _detect_fly),
    ("Render", _detect_render),
    ("Vercel", _detect_vercel),
    ("Railway", _detect_railway),
    ("AWS", _detect_aws),
)
"""Platform detectors in priority order. The first non-empty result wins."""


def detect_platform_region(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the raw region reported by the first platform that sets one.

    Args:
        environ: Environment mapping to inspect. Defaults to :data:`os.environ`.

    Returns:
        The platform's region string, or ``None`` when no platform signal is present.
    """
    environ = os.environ if environ is None else environ
    for name, detect in PLATFORM_DETECTORS:
        region = detect(environ)
        if region:
            logger.info("Detected region %r from %s", region, name)
            return region
    return None


def get_deployment_region(
    override: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """Resolve the deployment region.

    An explicit ``override`` wins, then the ``DATABASE_REGION`` variable, then the
    platform detectors in :data:`PLATFORM_DETECTORS` order.

    Args:
        override: Region to use regardless of the environment.
        environ: Environment mapping to inspect. Defaults to :data:`os.environ`.

    Returns:
        The region tag, or :data:`UNRESOLVED_REGION` if nothing resolved.
    """
    environ = os.environ if environ is None else environ
    if override is not None and override.strip():
        return override.strip()

    manual = _first_set(environ, REGION_OVERRIDE_VARIABLE)
    if manual:
        logger.info("Using manually set %s: %s", REGION_OVERRIDE_VARIABLE, manual)
        return manual

    region = detect_platform_region(environ)
    if region:
        return region

    logger.warning("Could not detect deployment region from any platform, replica selection will not be region aware")
    return UNRESOLVED_REGION


def is_region_resolved(region: Optional[str]) -> bool:
    """Check whether ``region`` names an actual region."""
    return bool(region) and region != UNRESOLVED_REGION


def resolve_region_index(
    region: Optional[str],
    regions: Sequence[str],
    aliases: Mapping[str, Sequence[str]],
) -> int:
    """Find the replica position serving ``region``.

    A case-insensitive direct match against ``regions`` is tried first. Otherwise
    each alias group is tried in table order: the group applies when ``region`` is
    its canonical tag or one of its spellings, and it resolves to the first
    configured region belonging to the same group.

    Args:
        region: The deployment region.
        regions: Region tags of the replicas, in replica order.
        aliases: Canonical tag to provider-specific spellings, all lowercase.

    Returns:
        The replica index, or :data:`NO_REGION_MATCH`.
    """
    if region is None or not is_region_resolved(region) or not regions:
        return NO_REGION_MATCH
    wanted = region.strip().lower()
    configured = [r.strip().lower() for r in regions]

    if wanted in configured:
        return configured.index(wanted)

    for canonical, spellings in aliases.items():
        group = {canonical, *spellings}
        if wanted not in group:
            continue
        for position, candidate in enumerate(configured):
            if candidate in group:
                return position

    return NO_REGION_MATCH

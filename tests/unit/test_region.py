"""Unit tests for deployment region detection and region matching."""

from __future__ import annotations

import logging

import pytest

from replica_alchemy.providers import GENERIC_REGION_ALIASES, SUPABASE_PROFILE
from replica_alchemy.region import (
    NO_REGION_MATCH,
    UNRESOLVED_REGION,
    detect_platform_region,
    get_deployment_region,
    is_region_resolved,
    resolve_region_index,
)


def test_override_wins_over_environment() -> None:
    """Test that an explicit override is used even when platform variables are set."""
    environ = {"DATABASE_REGION": "ams", "FLY_REGION": "iad"}

    assert get_deployment_region(override="fra", environ=environ) == "fra"


def test_manual_variable_wins_over_platform() -> None:
    """Test that DATABASE_REGION takes precedence over platform detection."""
    environ = {"DATABASE_REGION": "ams", "FLY_REGION": "iad", "AWS_REGION": "us-east-1"}

    assert get_deployment_region(environ=environ) == "ams"


@pytest.mark.parametrize(
    ("environ", "expected"),
    [
        ({"FLY_REGION": "lhr"}, "lhr"),
        ({"FLY_PRIMARY_REGION": "dfw"}, "dfw"),
        ({"RENDER_SERVICE_REGION": "oregon"}, "oregon"),
        ({"VERCEL_REGION": "iad1"}, "iad1"),
        ({"RAILWAY_REGION": "us-west1"}, "us-west1"),
        ({"AWS_REGION": "eu-west-1"}, "eu-west-1"),
        ({"AWS_DEFAULT_REGION": "ap-southeast-1"}, "ap-southeast-1"),
    ],
)
def test_platform_detection(environ: dict[str, str], expected: str) -> None:
    """Test each platform's region variable."""
    assert detect_platform_region(environ) == expected
    assert get_deployment_region(environ=environ) == expected


def test_platform_priority_order() -> None:
    """Test that Fly.io is consulted before Vercel and AWS."""
    environ = {"AWS_REGION": "us-east-1", "VERCEL_REGION": "iad1", "FLY_REGION": "ams"}

    assert detect_platform_region(environ) == "ams"


def test_blank_variables_are_ignored() -> None:
    """Test that whitespace-only values do not count as a region."""
    environ = {"FLY_REGION": "  ", "AWS_REGION": "us-east-1"}

    assert detect_platform_region(environ) == "us-east-1"


def test_unresolved_region_logs_warning(caplog: pytest.LogCaptureFixture) -> None:
    """Test that a missing region yields the sentinel and a warning."""
    with caplog.at_level(logging.WARNING, logger="replica_alchemy.region"):
        region = get_deployment_region(environ={})

    assert region == UNRESOLVED_REGION
    assert is_region_resolved(region) is False
    assert "Could not detect deployment region" in caplog.text


def test_is_region_resolved() -> None:
    assert is_region_resolved("fra") is True
    assert is_region_resolved(None) is False
    assert is_region_resolved("") is False


def test_resolve_region_index_direct_match_is_case_insensitive() -> None:
    assert resolve_region_index("FRA", ["iad", "fra"], {}) == 1
    assert resolve_region_index("iad", ["IAD", "fra"], {}) == 0


def test_resolve_region_index_through_provider_alias() -> None:
    """Test that a provider spelling resolves to the replica tagged with another spelling."""
    assert resolve_region_index("frankfurt", ["iad", "fra"], SUPABASE_PROFILE.region_aliases) == 1
    assert resolve_region_index("europe", ["iad", "fra"], SUPABASE_PROFILE.region_aliases) == 1


def test_resolve_region_index_through_generic_alias() -> None:
    assert resolve_region_index("us-east-2", ["eu-west-1", "virginia"], GENERIC_REGION_ALIASES) == 1


def test_resolve_region_index_prefers_direct_match_over_alias() -> None:
    assert resolve_region_index("eu-west-1", ["eu-west-2", "eu-west-1"], GENERIC_REGION_ALIASES) == 1


def test_resolve_region_index_no_match() -> None:
    assert resolve_region_index("syd", ["iad", "fra"], SUPABASE_PROFILE.region_aliases) == NO_REGION_MATCH


def test_resolve_region_index_unresolved_or_empty() -> None:
    assert resolve_region_index(UNRESOLVED_REGION, ["iad"], {}) == NO_REGION_MATCH
    assert resolve_region_index(None, ["iad"], {}) == NO_REGION_MATCH
    assert resolve_region_index("iad", [], {}) == NO_REGION_MATCH

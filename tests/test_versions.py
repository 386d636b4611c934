"""Tests for version tag validation and ordering."""
from __future__ import annotations

import pytest

from elitectl.versions import (
    VersionValidationError,
    is_ci_context,
    sort_tags,
    validate_version_tag,
)


@pytest.mark.parametrize("tag", ["0.2.2", "v1.0.0-rc.1", "feature_build-7", "a" * 128])
def test_valid_tags_are_accepted(tag: str) -> None:
    """Well-formed tags are returned unchanged."""
    assert validate_version_tag(tag, ci=False) == tag


def test_empty_tag_is_rejected() -> None:
    """An empty tag never names an image."""
    with pytest.raises(VersionValidationError, match="non-empty"):
        validate_version_tag("", ci=False)


def test_overlong_tag_is_rejected() -> None:
    """Tags longer than the docker limit fail before any registry call."""
    with pytest.raises(VersionValidationError, match="too long"):
        validate_version_tag("a" * 129, ci=False)


@pytest.mark.parametrize("tag", ["0.2.2; rm -rf /", "1.0 beta", "tag:1", "../etc"])
def test_tags_with_forbidden_characters_are_rejected(tag: str) -> None:
    """Only letters, digits, dots, hyphens and underscores are allowed."""
    with pytest.raises(VersionValidationError, match="Invalid version format"):
        validate_version_tag(tag, ci=False)


def test_latest_is_only_allowed_in_ci() -> None:
    """The floating tag is refused for operators and accepted under CI."""
    with pytest.raises(VersionValidationError, match="only allowed in CI"):
        validate_version_tag("latest", ci=False)

    assert validate_version_tag("latest", ci=True) == "latest"


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        ({}, False),
        ({"CI": "true"}, True),
        ({"CI": "1"}, True),
        ({"GITHUB_ACTIONS": "TRUE"}, True),
        ({"CI": "false"}, False),
    ],
)
def test_is_ci_context(env: dict[str, str], expected: bool) -> None:
    """CI detection accepts the usual truthy spellings."""
    assert is_ci_context(env) is expected


def test_sort_tags_orders_versions_newest_first() -> None:
    """Versions sort numerically; other tags follow alphabetically."""
    tags = ["0.2.9", "latest", "0.2.10", "v0.3.0", "main", "0.2.10"]

    assert sort_tags(tags) == ["v0.3.0", "0.2.10", "0.2.9", "latest", "main"]

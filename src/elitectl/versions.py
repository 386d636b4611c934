"""Version tag validation and ordering."""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from packaging.version import InvalidVersion, Version

MAX_TAG_LENGTH = 128
LATEST_TAG = "latest"
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_TRUTHY = {"1", "true", "yes", "on"}


class VersionValidationError(ValueError):
    """Raised when a version tag is malformed or not allowed here."""


def is_ci_context(env: Mapping[str, str]) -> bool:
    """Return True when running under continuous integration."""
    return any(
        env.get(key, "").strip().lower() in _TRUTHY for key in ("CI", "GITHUB_ACTIONS")
    )


def validate_version_tag(tag: str, *, ci: bool) -> str:
    """Return *tag* when it is an acceptable image tag, else raise.

    Tags are limited to alphanumerics, dots, hyphens and underscores, at most
    128 characters (the Docker tag limit). ``latest`` floats, so it is only
    accepted under CI where the run is throwaway.
    """
    if not tag:
        raise VersionValidationError("Version tag must be a non-empty string.")
    if len(tag) > MAX_TAG_LENGTH:
        raise VersionValidationError(
            f"Version tag too long ({len(tag)} characters, max {MAX_TAG_LENGTH})."
        )
    if not _TAG_PATTERN.match(tag):
        raise VersionValidationError(
            f"Invalid version format '{tag}': use letters, digits, '.', '-' or '_'."
        )
    if tag == LATEST_TAG and not ci:
        raise VersionValidationError(
            "The 'latest' tag is only allowed in CI; pin an explicit version instead."
        )
    return tag


def sort_tags(tags: Iterable[str]) -> list[str]:
    """Return *tags* newest first.

    Tags that parse as versions (``0.2.10``, ``v1.0.0``) are ordered by version;
    anything else (``latest``, branch builds) follows alphabetically.
    """
    versioned: list[tuple[Version, str]] = []
    others: list[str] = []
    for tag in set(tags):
        try:
            versioned.append((Version(tag.removeprefix("v")), tag))
        except InvalidVersion:
            others.append(tag)
    versioned.sort(key=lambda item: item[0], reverse=True)
    return [tag for _, tag in versioned] + sorted(others)


__all__ = [
    "LATEST_TAG",
    "MAX_TAG_LENGTH",
    "VersionValidationError",
    "is_ci_context",
    "sort_tags",
    "validate_version_tag",
]

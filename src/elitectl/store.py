"""Persistent deployment configuration (the ``.env`` file and its side files).

The deployment configuration is a human-editable, line-oriented ``KEY=value``
file. It is created from ``.env.template`` on first use and afterwards only
mutated by ``switch`` and ``rollback``. A single-line side file remembers the
version that ran before the most recent switch, giving exactly one level of
rollback.

Every write goes through a temporary file in the same directory followed by
``os.replace`` so readers never observe a half-written file.
"""
from __future__ import annotations

import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .models import (
    DeploymentConfiguration,
    FeatureFlag,
    mode_from_instance,
    parse_bool,
)
from .versions import (
    LATEST_TAG,
    VersionValidationError,
    is_ci_context,
    validate_version_tag,
)

VERSION_KEY = "TAG"

# Keys a CI workflow may export to override the file (exported value wins).
DEPLOYMENT_KEYS = (
    "TAG",
    "DOCKER_REGISTRY",
    "DOCKER_SQL_IMAGE",
    "WEB_TAG",
    "API_TAG",
    "BRIDGE_TAG",
    "HTTP_PORT",
    "HTTPS_PORT",
    "ENABLE_HTTPS",
    "SYSTEM_DOMAIN",
    "SSL_EXTRA_DOMAINS",
    "INSTANCE_NAME",
    "SHARED_SQL",
    "ENABLE_DESKTOP",
    "COMPANY_ID",
)

_LINE_PATTERN = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


class ConfigMissingError(RuntimeError):
    """Raised when neither the configuration file nor its template exists."""


class StoreError(RuntimeError):
    """Raised when the configuration store cannot be read or written."""


def parse_env_text(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, ignoring comments and blank lines."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _LINE_PATTERN.match(line)
        if match is None:
            continue
        key, raw = match.group(1), match.group(2).strip()
        values[key] = _unquote(raw)
    return values


def _unquote(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in {'"', "'"}:
        return raw[1:-1]
    # Strip trailing inline comments on unquoted values.
    if " #" in raw:
        raw = raw.split(" #", 1)[0].rstrip()
    return raw


def atomic_write_text(path: Path, content: str, *, mode: int | None = None) -> None:
    """Write *content* to *path* via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        mode = (path.stat().st_mode & 0o777) if path.exists() else 0o644
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def update_env_text(text: str, updates: Mapping[str, str]) -> str:
    """Return *text* with *updates* applied, preserving comments and ordering."""
    pending = dict(updates)
    lines: list[str] = []
    for line in text.splitlines():
        match = _LINE_PATTERN.match(line)
        if match is not None and match.group(1) in pending:
            key = match.group(1)
            lines.append(f"{key}={pending.pop(key)}")
            continue
        lines.append(line)
    for key, value in pending.items():
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


@dataclass
class ConfigurationStore:
    """Read and mutate the deployment configuration files."""

    env_file: Path
    template: Path
    previous_file: Path
    environ: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    def exists(self) -> bool:
        """Return True when the configuration file has been materialised."""
        return self.env_file.exists()

    def ensure(self) -> bool:
        """Materialise the configuration from its template; return True if created."""
        if self.env_file.exists():
            return False
        if not self.template.exists():
            raise ConfigMissingError(
                f"Neither {self.env_file} nor its template {self.template} exists."
            )
        atomic_write_text(
            self.env_file,
            self.template.read_text(encoding="utf-8"),
            mode=0o644,
        )
        return True

    def read_values(self) -> dict[str, str]:
        """Return the raw key/value pairs from the configuration file."""
        self.ensure()
        try:
            return parse_env_text(self.env_file.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StoreError(f"Failed to read {self.env_file}: {exc}") from exc

    def load(self) -> DeploymentConfiguration:
        """Return the resolved deployment configuration."""
        values = self.read_values()
        for key in DEPLOYMENT_KEYS:
            override = self.environ.get(key)
            if override is not None and override.strip():
                values[key] = override.strip()

        current = self._resolve_version(values.get(VERSION_KEY))
        values[VERSION_KEY] = current
        flags = frozenset(flag for flag in FeatureFlag if parse_bool(values.get(flag.value)))
        return DeploymentConfiguration(
            current_version=current,
            previous_version=self.get_previous(),
            mode=mode_from_instance(values.get("INSTANCE_NAME")),
            flags=flags,
            values=values,
        )

    def current_version(self) -> str:
        """Return the version recorded in the configuration file itself."""
        return self._resolve_version(self.read_values().get(VERSION_KEY))

    def _resolve_version(self, raw: str | None) -> str:
        ci = is_ci_context(self.environ)
        tag = (raw or "").strip()
        if not tag:
            if not ci:
                raise VersionValidationError(
                    f"{VERSION_KEY} is not set in {self.env_file}; "
                    f"set {VERSION_KEY}=<version> ({LATEST_TAG} is only allowed in CI)."
                )
            tag = LATEST_TAG
        return validate_version_tag(tag, ci=ci)

    def set_version(self, tag: str) -> None:
        """Atomically record *tag* as the current version."""
        self.set_values({VERSION_KEY: tag})

    def set_values(self, updates: Mapping[str, str]) -> None:
        """Atomically rewrite the configuration with *updates* applied."""
        self.ensure()
        text = self.env_file.read_text(encoding="utf-8")
        atomic_write_text(self.env_file, update_env_text(text, updates))

    def save_previous(self, tag: str) -> None:
        """Snapshot *tag* as the rollback target, replacing any older one."""
        atomic_write_text(self.previous_file, f"{tag}\n", mode=0o644)

    def get_previous(self) -> str | None:
        """Return the rollback target, or None before the first switch."""
        try:
            value = self.previous_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def restore_previous(self, tag: str | None) -> None:
        """Put the rollback pointer back to *tag* (None removes it)."""
        if tag is None:
            self.previous_file.unlink(missing_ok=True)
        else:
            self.save_previous(tag)

    def destroy(self) -> list[Path]:
        """Delete the configuration and previous-version files."""
        removed: list[Path] = []
        for path in (self.env_file, self.previous_file):
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(path)
            elif path.exists():
                path.unlink()
                removed.append(path)
        return removed


__all__ = [
    "ConfigMissingError",
    "ConfigurationStore",
    "DEPLOYMENT_KEYS",
    "StoreError",
    "atomic_write_text",
    "parse_env_text",
    "update_env_text",
]

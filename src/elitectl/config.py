"""Controller settings loader for elitectl.

This module centralises how the controller itself is configured. Values are
merged from several sources in precedence order:

1. Built-in defaults.
2. ``/etc/elitectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ELITECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ELITECTL_HEALTH__TIMEOUT=60
    export ELITECTL_REGISTRY__PULL_ATTEMPTS=1

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

These settings are distinct from the deployment configuration (the ``.env``
file owned by :mod:`elitectl.store`), which describes *what* is deployed.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to load elitectl configuration. Install with "
        "`pip install elitectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ELITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_PRE_UPGRADE_COMMAND = (
    "/opt/mssql-tools18/bin/sqlcmd",
    "-S",
    "localhost",
    "-U",
    "sa",
    "-C",
    "-b",
    "-Q",
    "EXEC dbo.PreUpgradeCleanup",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """Compose file names and container naming."""

    base_file: str = "docker-compose.yml"
    standalone_file: str = "docker-compose.standalone.yml"
    cloud_file: str = "docker-compose.cloud.yml"
    desktop_file: str = "docker-compose.desktop.yml"
    https_file: str = "docker-compose.https.yml"
    container_prefix: str = "rediacc"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base_file": self.base_file,
            "standalone_file": self.standalone_file,
            "cloud_file": self.cloud_file,
            "desktop_file": self.desktop_file,
            "https_file": self.https_file,
            "container_prefix": self.container_prefix,
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Compose service names for the managed stack."""

    proxy: str = "web"
    api: str = "api"
    database: str = "sql"
    worker_image: str = "bridge"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "proxy": self.proxy,
            "api": self.api,
            "database": self.database,
            "worker_image": self.worker_image,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Health convergence polling parameters."""

    interval: float = 5.0
    timeout: float = 120.0
    http_timeout: float = 3.0
    path: str = "/api/health"
    healthy_statuses: tuple[str, ...] = ("healthy", "ok")
    log_tail: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "interval": self.interval,
            "timeout": self.timeout,
            "http_timeout": self.http_timeout,
            "path": self.path,
            "healthy_statuses": list(self.healthy_statuses),
            "log_tail": self.log_tail,
        }


@dataclass(frozen=True)
class RegistryConfig:
    """Image registry interaction settings."""

    pull_attempts: int = 3
    pull_backoff: float = 2.0
    reference_image: str = "api"
    tags_limit: int = 10
    request_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pull_attempts": self.pull_attempts,
            "pull_backoff": self.pull_backoff,
            "reference_image": self.reference_image,
            "tags_limit": self.tags_limit,
            "request_timeout": self.request_timeout,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Database storage and maintenance settings."""

    storage_dir: str = "mssql"
    uid: int = 10001
    pre_upgrade_command: tuple[str, ...] = DEFAULT_PRE_UPGRADE_COMMAND

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "storage_dir": self.storage_dir,
            "uid": self.uid,
            "pre_upgrade_command": list(self.pre_upgrade_command),
        }


@dataclass(frozen=True)
class WorkersConfig:
    """Labels used to find dynamically spawned worker containers."""

    label: str = "com.rediacc.company"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"label": self.label}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for elitectl."""

    config_file: Path
    project_dir: Path
    env_file: Path
    env_template: Path
    secrets_file: Path
    previous_version_file: Path
    certs_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path | None
    lock_timeout: float
    docker_bin: str
    compose: ComposeConfig
    services: ServicesConfig
    health: HealthConfig
    registry: RegistryConfig
    database: DatabaseConfig
    workers: WorkersConfig

    @property
    def database_storage(self) -> Path:
        """Return the host directory backing the database volume."""
        return self.project_dir / self.database.storage_dir

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_dir": str(self.project_dir),
            "env_file": str(self.env_file),
            "env_template": str(self.env_template),
            "secrets_file": str(self.secrets_file),
            "previous_version_file": str(self.previous_version_file),
            "certs_dir": str(self.certs_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "lock_timeout": self.lock_timeout,
            "docker_bin": self.docker_bin,
            "compose": self.compose.to_dict(),
            "services": self.services.to_dict(),
            "health": self.health.to_dict(),
            "registry": self.registry.to_dict(),
            "database": self.database.to_dict(),
            "workers": self.workers.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/elitectl/config.yml",
    "project_dir": ".",
    # Relative file locations resolve against project_dir.
    "env_file": ".env",
    "env_template": ".env.template",
    "secrets_file": ".env.secret",
    "previous_version_file": ".previous_version",
    "certs_dir": "certs",
    "logs_dir": ".elitectl/logs",
    "runtime_dir": ".elitectl/run",
    "templates_dir": None,
    "lock_timeout": 30.0,
    "docker_bin": "docker",
    "compose": ComposeConfig().to_dict(),
    "services": ServicesConfig().to_dict(),
    "health": HealthConfig().to_dict(),
    "registry": RegistryConfig().to_dict(),
    "database": DatabaseConfig().to_dict(),
    "workers": WorkersConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "compose": set(ComposeConfig().to_dict()),
    "services": set(ServicesConfig().to_dict()),
    "health": set(HealthConfig().to_dict()),
    "registry": set(RegistryConfig().to_dict()),
    "database": set(DatabaseConfig().to_dict()),
    "workers": set(WorkersConfig().to_dict()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project_dir = _to_path(raw.get("project_dir"))

    def _project_path(key: str) -> Path:
        path = _to_path(raw.get(key))
        return path if path.is_absolute() else project_dir / path

    templates_value = raw.get("templates_dir")
    templates_dir: Path | None = None
    if isinstance(templates_value, (str, Path)):
        if str(templates_value).strip():
            templates_dir = _to_path(templates_value)
    elif templates_value is not None:
        raise ConfigError("templates_dir must be a string, Path, or null.")

    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    compose_mapping = _as_dict(raw.get("compose"), "compose")
    default_compose = ComposeConfig()
    compose = ComposeConfig(
        base_file=str(compose_mapping.get("base_file", default_compose.base_file)),
        standalone_file=str(
            compose_mapping.get("standalone_file", default_compose.standalone_file)
        ),
        cloud_file=str(compose_mapping.get("cloud_file", default_compose.cloud_file)),
        desktop_file=str(compose_mapping.get("desktop_file", default_compose.desktop_file)),
        https_file=str(compose_mapping.get("https_file", default_compose.https_file)),
        container_prefix=str(
            compose_mapping.get("container_prefix", default_compose.container_prefix)
        ),
    )

    services_mapping = _as_dict(raw.get("services"), "services")
    default_services = ServicesConfig()
    services = ServicesConfig(
        proxy=str(services_mapping.get("proxy", default_services.proxy)),
        api=str(services_mapping.get("api", default_services.api)),
        database=str(services_mapping.get("database", default_services.database)),
        worker_image=str(services_mapping.get("worker_image", default_services.worker_image)),
    )

    health = _build_health(_as_dict(raw.get("health"), "health"))

    registry_mapping = _as_dict(raw.get("registry"), "registry")
    default_registry = RegistryConfig()
    pull_attempts = _expect_int(
        registry_mapping.get("pull_attempts"),
        "registry.pull_attempts",
        default=default_registry.pull_attempts,
    )
    if pull_attempts < 1:
        raise ConfigError("registry.pull_attempts must be at least 1.")
    pull_backoff = _expect_float(
        registry_mapping.get("pull_backoff"),
        "registry.pull_backoff",
        default=default_registry.pull_backoff,
    )
    if pull_backoff < 0:
        raise ConfigError("registry.pull_backoff must be non-negative.")
    registry = RegistryConfig(
        pull_attempts=pull_attempts,
        pull_backoff=pull_backoff,
        reference_image=str(
            registry_mapping.get("reference_image", default_registry.reference_image)
        ),
        tags_limit=_expect_int(
            registry_mapping.get("tags_limit"),
            "registry.tags_limit",
            default=default_registry.tags_limit,
        ),
        request_timeout=_expect_positive_float(
            registry_mapping.get("request_timeout"),
            "registry.request_timeout",
            default=default_registry.request_timeout,
        ),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    default_database = DatabaseConfig()
    command_raw = database_mapping.get("pre_upgrade_command")
    if command_raw is None:
        pre_upgrade_command = default_database.pre_upgrade_command
    else:
        pre_upgrade_command = tuple(
            str(item)
            for item in _as_sequence(command_raw, "database.pre_upgrade_command")
        )
    database = DatabaseConfig(
        storage_dir=str(database_mapping.get("storage_dir", default_database.storage_dir)),
        uid=_expect_int(database_mapping.get("uid"), "database.uid", default=default_database.uid),
        pre_upgrade_command=pre_upgrade_command,
    )

    workers_mapping = _as_dict(raw.get("workers"), "workers")
    workers = WorkersConfig(label=str(workers_mapping.get("label", WorkersConfig().label)))

    return AppConfig(
        config_file=config_file,
        project_dir=project_dir,
        env_file=_project_path("env_file"),
        env_template=_project_path("env_template"),
        secrets_file=_project_path("secrets_file"),
        previous_version_file=_project_path("previous_version_file"),
        certs_dir=_project_path("certs_dir"),
        logs_dir=_project_path("logs_dir"),
        runtime_dir=_project_path("runtime_dir"),
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        docker_bin=str(raw.get("docker_bin", "docker")),
        compose=compose,
        services=services,
        health=health,
        registry=registry,
        database=database,
        workers=workers,
    )


def _build_health(mapping: Mapping[str, object]) -> HealthConfig:
    default = HealthConfig()
    interval = _expect_positive_float(
        mapping.get("interval"), "health.interval", default=default.interval
    )
    timeout = _expect_positive_float(
        mapping.get("timeout"), "health.timeout", default=default.timeout
    )
    http_timeout = _expect_positive_float(
        mapping.get("http_timeout"), "health.http_timeout", default=default.http_timeout
    )
    if http_timeout >= interval:
        # A hung probe must never stall the next tick.
        raise ConfigError(
            f"health.http_timeout ({http_timeout}) must be less than "
            f"health.interval ({interval})."
        )
    statuses_raw = mapping.get("healthy_statuses")
    if statuses_raw is None:
        statuses = default.healthy_statuses
    else:
        statuses = tuple(
            str(item).strip().lower()
            for item in _as_sequence(statuses_raw, "health.healthy_statuses")
            if str(item).strip()
        )
        if not statuses:
            raise ConfigError("health.healthy_statuses must list at least one status.")
    path = str(mapping.get("path", default.path))
    if not path.startswith("/"):
        path = f"/{path}"
    log_tail = _expect_int(mapping.get("log_tail"), "health.log_tail", default=default.log_tail)
    if log_tail < 0:
        raise ConfigError("health.log_tail must be non-negative.")
    return HealthConfig(
        interval=interval,
        timeout=timeout,
        http_timeout=http_timeout,
        path=path,
        healthy_statuses=statuses,
        log_tail=log_tail,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ComposeConfig",
    "ConfigError",
    "DatabaseConfig",
    "HealthConfig",
    "RegistryConfig",
    "ServicesConfig",
    "WorkersConfig",
    "load_config",
]

"""Domain models shared by the lifecycle controller."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .config import AppConfig

_TRUTHY = {"1", "true", "yes", "on"}


def parse_bool(value: str | None) -> bool:
    """Interpret an env-file style boolean."""
    return (value or "").strip().lower() in _TRUTHY


class FeatureFlag(Enum):
    """Orthogonal toggles read from the deployment configuration."""

    SHARE_DATABASE = "SHARED_SQL"
    ENABLE_DESKTOP_GATEWAY = "ENABLE_DESKTOP"
    ENABLE_HTTPS = "ENABLE_HTTPS"


class HealthProbeKind(Enum):
    """How a service reports readiness."""

    DOCKER_HEALTHCHECK = "docker-healthcheck"
    HTTP_ENDPOINT = "http-endpoint"
    NONE = "none"


@dataclass(frozen=True)
class Standalone:
    """Single instance per host with ports published."""

    name = "standalone"

    @property
    def project_name(self) -> str | None:
        """Standalone deployments use the compose default project."""
        return None


@dataclass(frozen=True)
class Cloud:
    """One of several isolated instances on pre-provisioned external networks."""

    instance_id: str
    name = "cloud"

    @property
    def project_name(self) -> str | None:
        """Each cloud instance is its own compose project."""
        return self.instance_id


DeploymentMode = Standalone | Cloud


def mode_from_instance(instance_id: str | None) -> DeploymentMode:
    """Decide the deployment mode once from the instance identifier."""
    if instance_id and instance_id.strip():
        return Cloud(instance_id=instance_id.strip())
    return Standalone()


@dataclass(frozen=True)
class ServiceDescriptor:
    """An image the controller provisions, optionally backing a compose service."""

    name: str
    image: str
    tag: str
    health_probe: HealthProbeKind = HealthProbeKind.NONE

    @property
    def reference(self) -> str:
        """Return the full ``image:tag`` reference."""
        return f"{self.image}:{self.tag}"


@dataclass(frozen=True)
class DeploymentConfiguration:
    """Resolved view of the deployment ``.env`` file."""

    current_version: str
    previous_version: str | None
    mode: DeploymentMode
    flags: frozenset[FeatureFlag]
    values: Mapping[str, str] = field(repr=False)

    @property
    def registry(self) -> str:
        """Return the registry base reference (``host/namespace``)."""
        return self.values.get("DOCKER_REGISTRY", "").rstrip("/")

    @property
    def http_port(self) -> int:
        """Return the published HTTP port."""
        return _port(self.values.get("HTTP_PORT"), 80)

    @property
    def https_port(self) -> int:
        """Return the published HTTPS port."""
        return _port(self.values.get("HTTPS_PORT"), 443)

    @property
    def system_domain(self) -> str:
        """Return the primary domain used in certificates."""
        return self.values.get("SYSTEM_DOMAIN", "").strip() or "localhost"

    @property
    def extra_domains(self) -> list[str]:
        """Return additional SAN domains from ``SSL_EXTRA_DOMAINS``."""
        raw = self.values.get("SSL_EXTRA_DOMAINS", "")
        return [item.strip() for item in raw.split(",") if item.strip()]

    @property
    def company_id(self) -> str | None:
        """Return the tenant identifier used to tag worker containers."""
        value = self.values.get("COMPANY_ID", "").strip()
        return value or None

    def has(self, flag: FeatureFlag) -> bool:
        """Return True when *flag* is enabled."""
        return flag in self.flags

    def tag_for(self, image: str) -> str:
        """Return the tag for *image*, honouring ``<IMAGE>_TAG`` overrides."""
        override = self.values.get(f"{image.upper().replace('-', '_')}_TAG", "").strip()
        return override or self.current_version

    def with_version(self, version: str) -> DeploymentConfiguration:
        """Return a copy targeting *version* (per-image overrides still apply)."""
        values = dict(self.values)
        values["TAG"] = version
        return DeploymentConfiguration(
            current_version=version,
            previous_version=self.previous_version,
            mode=self.mode,
            flags=self.flags,
            values=values,
        )

    def versioned_images(self, config: AppConfig) -> list[ServiceDescriptor]:
        """Return descriptors for the images published per release."""
        services = config.services
        probes = {
            services.proxy: HealthProbeKind.HTTP_ENDPOINT,
            services.api: HealthProbeKind.DOCKER_HEALTHCHECK,
            services.worker_image: HealthProbeKind.NONE,
        }
        descriptors: list[ServiceDescriptor] = []
        for name in (services.proxy, services.api, services.worker_image):
            descriptors.append(
                ServiceDescriptor(
                    name=name,
                    image=f"{self.registry}/{name}" if self.registry else name,
                    tag=self.tag_for(name),
                    health_probe=probes[name],
                )
            )
        return descriptors

    def database_image(self, config: AppConfig) -> ServiceDescriptor | None:
        """Return the database image descriptor, or None in shared mode."""
        if self.has(FeatureFlag.SHARE_DATABASE):
            return None
        reference = self.values.get("DOCKER_SQL_IMAGE", "").strip()
        if not reference:
            return None
        image, _, tag = reference.rpartition(":")
        if not image or "/" in tag:
            image, tag = reference, "latest"
        return ServiceDescriptor(
            name=config.services.database,
            image=image,
            tag=tag,
            health_probe=HealthProbeKind.DOCKER_HEALTHCHECK,
        )


@dataclass
class SwitchOperation:
    """In-flight version change; discarded once the command finishes."""

    target_version: str
    previous_version: str
    rollback_enabled: bool
    recorded_previous: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _port(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


__all__ = [
    "Cloud",
    "DeploymentConfiguration",
    "DeploymentMode",
    "FeatureFlag",
    "HealthProbeKind",
    "ServiceDescriptor",
    "Standalone",
    "SwitchOperation",
    "mode_from_instance",
    "parse_bool",
]

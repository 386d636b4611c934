"""Compose-based control of the managed stack."""
from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..config import AppConfig, ComposeConfig
from ..models import Cloud, DeploymentConfiguration, DeploymentMode, FeatureFlag
from .docker import ContainerRuntime, ContainerRuntimeError, ContainerState

# Never forwarded to compose even if someone stored them in the env file.
_WITHHELD_KEYS = frozenset({"GITHUB_TOKEN", "DOCKER_REGISTRY_PASSWORD"})


class StackError(RuntimeError):
    """Raised when the compose stack cannot be controlled."""


def select_overlays(
    compose: ComposeConfig,
    mode: DeploymentMode,
    flags: frozenset[FeatureFlag],
) -> list[str]:
    """Return compose file names: base, exactly one mode overlay, then features."""
    files = [compose.base_file]
    files.append(compose.cloud_file if isinstance(mode, Cloud) else compose.standalone_file)
    if FeatureFlag.ENABLE_DESKTOP_GATEWAY in flags:
        files.append(compose.desktop_file)
    if FeatureFlag.ENABLE_HTTPS in flags:
        files.append(compose.https_file)
    return files


@dataclass(frozen=True)
class ServiceStatus:
    """One row of ``compose ps``."""

    service: str
    name: str
    state: str
    health: str
    status: str
    ports: str = ""


def parse_compose_ps(output: str) -> list[ServiceStatus]:
    """Parse ``compose ps --format json`` (a JSON array or one object per line)."""
    text = output.strip()
    if not text:
        return []
    entries: list[object]
    if text.startswith("["):
        parsed = json.loads(text)
        entries = parsed if isinstance(parsed, list) else []
    else:
        entries = [json.loads(line) for line in text.splitlines() if line.strip()]
    rows: list[ServiceStatus] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        rows.append(
            ServiceStatus(
                service=str(entry.get("Service", "")),
                name=str(entry.get("Name", "")),
                state=str(entry.get("State", "")),
                health=str(entry.get("Health", "") or "none"),
                status=str(entry.get("Status", "")),
                ports=str(entry.get("Ports", "") or ""),
            )
        )
    return rows


@dataclass
class StackController:
    """Start, stop and inspect the compose project for one deployment."""

    runtime: ContainerRuntime
    config: AppConfig
    deployment: DeploymentConfiguration
    secrets: Mapping[str, str] = field(default_factory=dict)
    on_event: Callable[[str, str], None] | None = None

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------
    @property
    def database_shared(self) -> bool:
        """Return True when the database lives outside this stack."""
        return self.deployment.has(FeatureFlag.SHARE_DATABASE)

    def compose_files(self) -> list[Path]:
        """Return the compose files for this deployment that exist on disk."""
        names = select_overlays(self.config.compose, self.deployment.mode, self.deployment.flags)
        base = self.config.project_dir / names[0]
        if not base.exists():
            raise StackError(f"Compose file not found: {base}")
        files = [base]
        for name in names[1:]:
            path = self.config.project_dir / name
            if path.exists():
                files.append(path)
            else:
                self._emit("compose.overlay.missing", str(path))
        return files

    def compose_args(self) -> list[str]:
        """Return the ``docker compose`` prefix for this deployment."""
        args = ["compose", "--project-directory", str(self.config.project_dir)]
        for path in self.compose_files():
            args.extend(["--file", str(path)])
        project = self.deployment.mode.project_name
        if project:
            args.extend(["--project-name", project])
        return args

    def container_name(self, service: str) -> str:
        """Return the container name for *service*."""
        mode = self.deployment.mode
        prefix = mode.instance_id if isinstance(mode, Cloud) else self.config.compose.container_prefix
        return f"{prefix}-{service}"

    def managed_services(self) -> list[str]:
        """Return the core services this deployment runs."""
        services = [self.config.services.proxy, self.config.services.api]
        if not self.database_shared:
            services.append(self.config.services.database)
        return services

    def start_set(self) -> list[str]:
        """Return explicit services to start, or [] to start everything.

        In shared-database mode the database is pruned from the start set and
        dependencies are not followed, so the container never exists.
        """
        if not self.database_shared:
            return []
        result = self._compose(["config", "--services"])
        database = self.config.services.database
        return [line.strip() for line in result.stdout.splitlines() if line.strip() and line.strip() != database]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def prepare(self, ensure_certificate: Callable[[], bool] | None = None) -> None:
        """Run pre-start side effects (database storage, TLS bundle)."""
        if not self.database_shared:
            self.ensure_database_storage()
        if self.deployment.has(FeatureFlag.ENABLE_HTTPS) and ensure_certificate is not None:
            if ensure_certificate():
                self._emit("tls.generate", str(self.config.certs_dir))

    def ensure_database_storage(self) -> bool:
        """Create the database data directory owned by the database UID."""
        path = self.config.database_storage
        if path.exists():
            return False
        path.mkdir(parents=True, exist_ok=True)
        uid = self.config.database.uid
        try:
            os.chown(path, uid, uid)
        except PermissionError:
            self._emit(
                "database.storage.chown",
                f"could not chown {path} to {uid}; run `sudo chown -R {uid}:{uid} {path}`",
            )
        else:
            self._emit("database.storage.create", str(path))
        return True

    def up(self, *, force_recreate: bool = False) -> subprocess.CompletedProcess[str]:
        """Start (or converge) the stack in the background."""
        args = ["up", "--detach", "--remove-orphans"]
        if force_recreate:
            args.append("--force-recreate")
        services = self.start_set()
        if services:
            args.append("--no-deps")
            args.extend(services)
        return self._compose(args)

    def down(self, *, volumes: bool = False) -> list[str]:
        """Tear down the stack, then remove leaked worker containers."""
        args = ["down", "--remove-orphans"]
        if volumes:
            args.append("--volumes")
        self._compose(args)
        return self.sweep_workers()

    def sweep_workers(self) -> list[str]:
        """Force-remove worker containers tagged with this tenant; return their ids."""
        company = self.deployment.company_id
        if company is None:
            self._emit("workers.sweep", "skipped: COMPANY_ID not set")
            return []
        ids = self.runtime.list_container_ids(label=f"{self.config.workers.label}={company}")
        self.runtime.remove_containers(ids)
        self._emit("workers.sweep", f"removed {len(ids)} container(s)")
        return ids

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Restart a single service."""
        return self._compose(["restart", service])

    def build(self) -> subprocess.CompletedProcess[str]:
        """Build images defined in the compose files."""
        return self._compose(["build"], capture_output=False)

    def exec(self, service: str, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Run *command* interactively inside *service*."""
        return self._compose(["exec", service, *command], check=False, capture_output=False)

    def logs(self, service: str, *, tail: int | None = None) -> str:
        """Return recent log output from *service*."""
        args = ["logs", "--no-color"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(service)
        result = self._compose(args, check=False)
        return "\n".join(part for part in (result.stdout, result.stderr) if part).strip()

    def status(self) -> list[ServiceStatus]:
        """Return the state of every container in the project."""
        result = self._compose(["ps", "--all", "--format", "json"])
        try:
            return parse_compose_ps(result.stdout)
        except json.JSONDecodeError as exc:
            raise StackError(f"Could not parse compose status output: {exc}") from exc

    def inspect(self, service: str) -> ContainerState:
        """Return runtime state for *service*'s container."""
        return self.runtime.inspect_container(self.container_name(service))

    def is_running(self, service: str) -> bool:
        """Return True when *service*'s container is running."""
        return self.inspect(service).running

    # ------------------------------------------------------------------
    def compose_env(self) -> dict[str, str]:
        """Return variables exported to compose (deployment values and secrets)."""
        env = {
            key: value
            for key, value in self.deployment.values.items()
            if key not in _WITHHELD_KEYS
        }
        env.update(self.secrets)
        return env

    def _compose(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return self.runtime.run(
                [*self.compose_args(), *args],
                check=check,
                capture_output=capture_output,
                env=self.compose_env(),
            )
        except ContainerRuntimeError as exc:
            raise StackError(f"compose {args[0]} failed: {exc}") from exc

    def _emit(self, step: str, detail: str) -> None:
        if self.on_event is not None:
            self.on_event(step, detail)


__all__ = [
    "ServiceStatus",
    "StackController",
    "StackError",
    "parse_compose_ps",
    "select_overlays",
]

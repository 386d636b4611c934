"""Version switch with automatic rollback.

One switch attempt walks a strictly linear sequence::

    validate -> record previous -> write config -> pull images
             -> pre-upgrade cleanup -> restart -> await health

A health timeout triggers one rollback attempt (unless disabled): the
previous version is written back, its images pulled, the stack restarted and
health awaited once more. A second failure is terminal.
"""
from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from enum import Enum

from .config import AppConfig
from .health import HealthMonitor, HealthTimeoutError
from .logging import SecretRedactor
from .models import DeploymentConfiguration, ServiceDescriptor, SwitchOperation
from .providers.compose import StackController, StackError
from .providers.docker import ContainerRuntimeError
from .providers.images import ImageProvisioner, PullError
from .providers.registry import RegistryError
from .store import ConfigurationStore
from .versions import is_ci_context, validate_version_tag

SQLCMD_PASSWORD_ENV = "SQLCMDPASSWORD"


class NoPreviousVersionError(RuntimeError):
    """Raised when a rollback is requested before any switch was recorded."""


class RollbackExhaustedError(RuntimeError):
    """Raised when the rollback attempt also failed to converge."""

    def __init__(self, message: str, *, logs: str = "") -> None:
        """Keep the failing service's log tail for diagnostics."""
        super().__init__(message)
        self.logs = logs


class SwitchOutcome(Enum):
    """How a switch or rollback finished."""

    SWITCHED = "switched"
    ROLLED_BACK = "rolled-back"


@dataclass(frozen=True)
class SwitchResult:
    """Result of :meth:`SwitchOrchestrator.switch` or :meth:`rollback`."""

    outcome: SwitchOutcome
    version: str
    previous_version: str | None
    elapsed: float
    failure: str | None = None
    failed_logs: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary (logs omitted)."""
        return {
            "outcome": self.outcome.value,
            "version": self.version,
            "previous_version": self.previous_version,
            "elapsed": self.elapsed,
            "failure": self.failure,
        }


StackFactory = Callable[[DeploymentConfiguration], StackController]
MonitorFactory = Callable[[StackController], HealthMonitor]


class SwitchOrchestrator:
    """Compose the configuration store, provisioner, stack and monitor."""

    def __init__(
        self,
        config: AppConfig,
        store: ConfigurationStore,
        provisioner: ImageProvisioner,
        *,
        stack_for: StackFactory,
        monitor_for: MonitorFactory,
        environ: Mapping[str, str] | None = None,
        redactor: SecretRedactor | None = None,
        on_event: Callable[[str, str], None] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.provisioner = provisioner
        self._stack_for = stack_for
        self._monitor_for = monitor_for
        self.environ = os.environ if environ is None else environ
        self.redactor = redactor if redactor is not None else SecretRedactor()
        self._on_event = on_event

    # ------------------------------------------------------------------
    def validate(self, version: str) -> str:
        """Reject malformed tags and ``latest`` outside CI; no I/O is performed."""
        return validate_version_tag(version, ci=is_ci_context(self.environ))

    def reference_descriptor(self, deployment: DeploymentConfiguration) -> ServiceDescriptor:
        """Return the image whose manifest gates a switch.

        The tag is always the deployment's own version; a pinned
        ``<IMAGE>_TAG`` must not stand in for the release being checked.
        """
        wanted = self.config.registry.reference_image
        for descriptor in deployment.versioned_images(self.config):
            if descriptor.name == wanted:
                return replace(descriptor, tag=deployment.current_version)
        return ServiceDescriptor(
            name=wanted,
            image=f"{deployment.registry}/{wanted}" if deployment.registry else wanted,
            tag=deployment.current_version,
        )

    def switch(self, version: str, *, rollback_enabled: bool = True) -> SwitchResult:
        """Move the deployment to *version*, rolling back if it never converges."""
        tag = self.validate(version)
        base = self.store.load()
        target = base.with_version(tag)

        reference = self.reference_descriptor(target)
        if not self.provisioner.verify_version_exists(reference):
            raise RegistryError(
                f"Version {tag} not found in registry ({reference.reference})."
            )
        self._emit("validate", f"{reference.reference} resolvable")

        operation = SwitchOperation(
            target_version=tag,
            previous_version=self.store.current_version(),
            rollback_enabled=rollback_enabled,
            recorded_previous=self.store.get_previous(),
        )
        if operation.previous_version != tag:
            self.store.save_previous(operation.previous_version)
            self._emit("record-previous", operation.previous_version)
        else:
            self._emit("record-previous", f"{tag} already current; pointer kept")
        self.store.set_version(tag)
        self._emit("write-config", tag)

        try:
            elapsed = self._deploy(target, cleanup=True)
        except HealthTimeoutError as exc:
            if not rollback_enabled:
                raise
            return self._recover(operation, base, exc)

        return SwitchResult(
            outcome=SwitchOutcome.SWITCHED,
            version=tag,
            previous_version=self.store.get_previous(),
            elapsed=elapsed,
        )

    def rollback(self) -> SwitchResult:
        """Swap the current and previous versions and converge on the previous one."""
        previous = self.store.get_previous()
        if previous is None:
            raise NoPreviousVersionError("No previous version recorded; nothing to roll back to.")
        tag = validate_version_tag(previous, ci=True)
        current = self.store.current_version()
        base = self.store.load()

        self.store.save_previous(current)
        self.store.set_version(tag)
        self._emit("write-config", f"{current} -> {tag}")
        try:
            elapsed = self._deploy(base.with_version(tag), cleanup=False)
        except HealthTimeoutError as exc:
            logs = self.failed_service_logs(base.with_version(tag))
            raise RollbackExhaustedError(
                f"Rollback to {tag} did not converge: {exc}", logs=logs
            ) from exc
        return SwitchResult(
            outcome=SwitchOutcome.ROLLED_BACK,
            version=tag,
            previous_version=current,
            elapsed=elapsed,
        )

    # ------------------------------------------------------------------
    def pre_upgrade_cleanup(self, stack: StackController) -> bool:
        """Settle in-flight database work; failures are logged and skipped."""
        if stack.database_shared:
            self._emit("pre-upgrade-cleanup", "skipped: shared database")
            return False
        service = self.config.services.database
        try:
            running = stack.is_running(service)
        except ContainerRuntimeError as exc:
            self._emit("pre-upgrade-cleanup", f"skipped: {exc}")
            return False
        if not running:
            self._emit("pre-upgrade-cleanup", "skipped: database not running")
            return False
        password = stack.secrets.get("MSSQL_SA_PASSWORD", "")
        if not password:
            self._emit("pre-upgrade-cleanup", "skipped: no database password")
            return False
        try:
            result = stack.runtime.exec(
                stack.container_name(service),
                list(self.config.database.pre_upgrade_command),
                pass_env=(SQLCMD_PASSWORD_ENV,),
                env={SQLCMD_PASSWORD_ENV: password},
                timeout=self.config.health.timeout,
            )
        except ContainerRuntimeError as exc:
            self._emit("pre-upgrade-cleanup", f"skipped: {exc}")
            return False
        if result.returncode != 0:
            self._emit("pre-upgrade-cleanup", f"skipped: exit {result.returncode}")
            return False
        self._emit("pre-upgrade-cleanup", "completed")
        return True

    def _deploy(self, deployment: DeploymentConfiguration, *, cleanup: bool) -> float:
        descriptors = list(deployment.versioned_images(self.config))
        database = deployment.database_image(self.config)
        if database is not None:
            descriptors.append(database)
        self.provisioner.ensure_images(descriptors)

        stack = self._stack_for(deployment)
        if cleanup:
            self.pre_upgrade_cleanup(stack)
        stack.up(force_recreate=True)
        self._emit("restart", deployment.current_version)
        elapsed = self._monitor_for(stack).wait()
        self._emit("await-health", f"healthy after {elapsed:g}s")
        return elapsed

    def _recover(
        self,
        operation: SwitchOperation,
        base: DeploymentConfiguration,
        failure: HealthTimeoutError,
    ) -> SwitchResult:
        failed = base.with_version(operation.target_version)
        logs = self.failed_service_logs(failed)
        self._emit("rollback", f"{operation.target_version} -> {operation.previous_version}")

        self.store.set_version(operation.previous_version)
        self.store.restore_previous(operation.recorded_previous)
        previous = base.with_version(operation.previous_version)
        try:
            elapsed = self._deploy(previous, cleanup=False)
        except (HealthTimeoutError, PullError, StackError) as exc:
            rollback_logs = ""
            if isinstance(exc, HealthTimeoutError):
                rollback_logs = self.failed_service_logs(previous)
            raise RollbackExhaustedError(
                f"Switch to {operation.target_version} failed ({failure}) and rollback to "
                f"{operation.previous_version} failed ({exc}). Manual intervention required.",
                logs="\n".join(part for part in (logs, rollback_logs) if part),
            ) from exc
        return SwitchResult(
            outcome=SwitchOutcome.ROLLED_BACK,
            version=operation.previous_version,
            previous_version=operation.recorded_previous,
            elapsed=elapsed,
            failure=str(failure),
            failed_logs=logs,
        )

    def failed_service_logs(self, deployment: DeploymentConfiguration) -> str:
        """Return the redacted log tail of the API service (never raises)."""
        try:
            stack = self._stack_for(deployment)
            text = stack.logs(self.config.services.api, tail=self.config.health.log_tail)
        except (StackError, ContainerRuntimeError) as exc:
            return f"(logs unavailable: {exc})"
        return self.redactor.redact(text)

    def _emit(self, step: str, detail: str) -> None:
        if self._on_event is not None:
            self._on_event(step, detail)


__all__ = [
    "NoPreviousVersionError",
    "RollbackExhaustedError",
    "SwitchOrchestrator",
    "SwitchOutcome",
    "SwitchResult",
]

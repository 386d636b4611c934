"""Typer-powered command line for ``elitectl``.

Each command runs inside a structured operation scope so the operations log
records its steps and result. Commands that mutate deployment state hold the
deployment lock for their whole duration.
"""
from __future__ import annotations

import os
import shutil
import textwrap
from collections.abc import Callable, MutableMapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .credentials import SecretsFile, announce_masks, secret_values
from .exit_codes import ExitCode
from .health import (
    HealthMonitor,
    HealthTick,
    HealthTimeoutError,
    ServiceHealth,
    build_probe,
    service_health,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, SecretRedactor, StructuredLogger
from .models import DeploymentConfiguration, FeatureFlag, ServiceDescriptor
from .orchestrator import (
    NoPreviousVersionError,
    RollbackExhaustedError,
    SwitchOrchestrator,
    SwitchOutcome,
)
from .providers import (
    ContainerRuntime,
    ContainerRuntimeError,
    ImageProvisioner,
    PullError,
    RegistryClient,
    RegistryCredentials,
    RegistryError,
    StackController,
    StackError,
)
from .store import ConfigMissingError, ConfigurationStore, StoreError
from .templates import TemplateEngine, TemplateError
from .tls import CertificateError, CertificateManager, CertificateSeverity
from .versions import VersionValidationError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to elitectl's YAML config file.",
)
PROJECT_DIR_OPTION = typer.Option(
    None,
    "--project-dir",
    file_okay=False,
    help="Directory holding the compose files and deployment configuration.",
)
LOCK_TIMEOUT_OPTION = typer.Option(
    None,
    "--lock-timeout",
    help="Override lock acquisition timeout in seconds.",
)
SERVICE_ARGUMENT = typer.Argument(..., help="Compose service name (e.g. web, api, sql).")

_CONTROLLER_ERRORS: tuple[type[Exception], ...] = (
    CertificateError,
    ConfigMissingError,
    ContainerRuntimeError,
    HealthTimeoutError,
    LockTimeoutError,
    NoPreviousVersionError,
    PullError,
    RegistryError,
    RollbackExhaustedError,
    StackError,
    StoreError,
    TemplateError,
    VersionValidationError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Deployment lifecycle controller for the Rediacc Elite compose stack.

        Starts and stops the web, api and sql services, switches versions with
        automatic rollback, and waits for the stack to report healthy.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    store: ConfigurationStore
    secrets: SecretsFile
    docker: ContainerRuntime
    certificates: CertificateManager
    redactor: SecretRedactor
    environ: MutableMapping[str, str]


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    project_dir: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if project_dir is not None:
        overrides["project_dir"] = str(project_dir)
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    environ = os.environ
    redactor = SecretRedactor(
        environ.get(key, "") for key in ("GITHUB_TOKEN", "DOCKER_REGISTRY_PASSWORD")
    )
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir, redactor=redactor),
        templates=templates,
        store=ConfigurationStore(
            env_file=config.env_file,
            template=config.env_template,
            previous_file=config.previous_version_file,
            environ=environ,
        ),
        secrets=SecretsFile(config.secrets_file, templates),
        docker=ContainerRuntime(docker_bin=config.docker_bin),
        certificates=CertificateManager(config.certs_dir),
        redactor=redactor,
        environ=environ,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the elitectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    project_dir: Path | None = PROJECT_DIR_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file, project_dir, lock_timeout)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"elitectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    safe = op.logger.redactor.redact(message)
    console.print(f"[red]{safe}[/red]", highlight=False)
    op.error(safe, errors=list(errors or [safe]), rc=rc)
    raise typer.Exit(code=rc)


def _step_recorder(op: OperationScope) -> Callable[[str, str], None]:
    def _record(step: str, detail: str) -> None:
        op.add_step(step, detail=detail)
        console.print(f"[dim]{step}: {op.logger.redactor.redact(detail)}[/dim]", highlight=False)

    return _record


def _load_deployment(runtime: RuntimeContext, op: OperationScope) -> DeploymentConfiguration:
    created = runtime.store.ensure()
    if created:
        op.add_step("config.create", detail=str(runtime.config.env_file))
        console.print(
            f"[yellow]Created {runtime.config.env_file} from "
            f"{runtime.config.env_template}.[/yellow]"
        )
    deployment = runtime.store.load()
    op.add_step(
        "config.load",
        detail=f"version={deployment.current_version} mode={deployment.mode.name}",
    )
    return deployment


def _load_secrets(runtime: RuntimeContext, op: OperationScope, *, create: bool) -> dict[str, str]:
    if create and runtime.secrets.ensure(database_host=runtime.config.services.database):
        op.add_step("secrets.generate", detail=str(runtime.config.secrets_file))
    values = runtime.secrets.load()
    hidden = secret_values(values)
    for value in hidden:
        runtime.redactor.add(value)
    announce_masks(hidden, runtime.environ, echo=typer.echo)
    return values


def _stack(
    runtime: RuntimeContext,
    deployment: DeploymentConfiguration,
    secrets: dict[str, str],
    op: OperationScope,
) -> StackController:
    return StackController(
        runtime=runtime.docker,
        config=runtime.config,
        deployment=deployment,
        secrets=secrets,
        on_event=_step_recorder(op),
    )


def _provisioner(runtime: RuntimeContext, op: OperationScope) -> ImageProvisioner:
    registry = runtime.config.registry
    return ImageProvisioner(
        runtime.docker,
        credentials=RegistryCredentials.from_environ(runtime.environ),
        environ=runtime.environ,
        pull_attempts=registry.pull_attempts,
        pull_backoff=registry.pull_backoff,
        on_event=_step_recorder(op),
    )


def _print_tick(tick: HealthTick) -> None:
    console.print(f"[dim]  health {tick.elapsed:g}s: {tick.reason}[/dim]", highlight=False)


def _monitor_factory(runtime: RuntimeContext) -> Callable[[StackController], HealthMonitor]:
    health = runtime.config.health
    services = runtime.config.services

    def _build(stack: StackController) -> HealthMonitor:
        probe = build_probe(
            health,
            stack.deployment,
            stack.runtime,
            stack.container_name(services.proxy),
        )
        return HealthMonitor(
            stack.runtime,
            stack.container_name(services.api),
            probe,
            interval=health.interval,
            timeout=health.timeout,
            on_tick=_print_tick,
        )

    return _build


def _orchestrator(
    runtime: RuntimeContext,
    secrets: dict[str, str],
    op: OperationScope,
) -> SwitchOrchestrator:
    return SwitchOrchestrator(
        runtime.config,
        runtime.store,
        _provisioner(runtime, op),
        stack_for=lambda deployment: _stack(runtime, deployment, secrets, op),
        monitor_for=_monitor_factory(runtime),
        environ=runtime.environ,
        redactor=runtime.redactor,
        on_event=_step_recorder(op),
    )


def _print_logs(title: str, logs: str) -> None:
    if not logs:
        return
    console.rule(f"[bold]{title}[/bold]")
    console.print(logs, markup=False, highlight=False)
    console.rule()


def _deployment_images(
    runtime: RuntimeContext, deployment: DeploymentConfiguration
) -> list[ServiceDescriptor]:
    descriptors = list(deployment.versioned_images(runtime.config))
    database = deployment.database_image(runtime.config)
    if database is not None:
        descriptors.append(database)
    return descriptors


# ----------------------------------------------------------------------
# Stack lifecycle
# ----------------------------------------------------------------------
@app.command()
def up(
    ctx: typer.Context,
    keep_bridges: bool = typer.Option(
        False,
        "--keep-bridges",
        help="Do not remove leftover worker containers before starting.",
    ),
) -> None:
    """Start the stack, generating secrets and certificates when missing."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "up",
        args={"keep_bridges": keep_bridges},
        target={"kind": "stack"},
    ) as op:
        try:
            with runtime.locks.deployment_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                deployment = _load_deployment(runtime, op)
                secrets = _load_secrets(runtime, op, create=True)
                stack = _stack(runtime, deployment, secrets, op)
                if not keep_bridges:
                    stack.sweep_workers()
                _provisioner(runtime, op).ensure_images(_deployment_images(runtime, deployment))
                stack.prepare(
                    lambda: runtime.certificates.ensure(
                        deployment.system_domain, deployment.extra_domains
                    )
                )
                stack.up()
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to start stack: {exc}")
        console.print(
            f"[green]Stack started at version {deployment.current_version} "
            f"({deployment.mode.name}).[/green] Run 'elitectl health' to check convergence."
        )
        op.success("Stack started.", changed=1, context={"version": deployment.current_version})


@app.command()
def down(ctx: typer.Context) -> None:
    """Stop the stack and remove worker containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("down", target={"kind": "stack"}) as op:
        try:
            with runtime.locks.deployment_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                deployment = _load_deployment(runtime, op)
                secrets = _load_secrets(runtime, op, create=False)
                removed = _stack(runtime, deployment, secrets, op).down()
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to stop stack: {exc}")
        console.print(f"[green]Stack stopped.[/green] Removed {len(removed)} worker container(s).")
        op.success("Stack stopped.", changed=1, context={"workers_removed": len(removed)})


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the containers of the compose project."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("status", target={"kind": "stack"}) as op:
        try:
            deployment = _load_deployment(runtime, op)
            rows = _stack(runtime, deployment, runtime.secrets.load(), op).status()
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to read stack status: {exc}")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("Container")
        table.add_column("State")
        table.add_column("Health")
        table.add_column("Ports")
        if not rows:
            table.add_row("(none)", "", "", "", "")
        for row in rows:
            table.add_row(row.service, row.name, row.state, row.health, row.ports)
        console.print(table)
        op.success("Reported stack status.", context={"containers": len(rows)})


@app.command()
def health(ctx: typer.Context) -> None:
    """Check each managed service and the health route once."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("health", target={"kind": "stack"}) as op:
        try:
            deployment = _load_deployment(runtime, op)
            stack = _stack(runtime, deployment, runtime.secrets.load(), op)
            checks: list[ServiceHealth] = [
                service_health(service, stack.inspect(service))
                for service in stack.managed_services()
            ]
            probe = build_probe(
                runtime.config.health,
                deployment,
                runtime.docker,
                stack.container_name(runtime.config.services.proxy),
            )
            verdict = probe.check()
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Health check failed: {exc}")
        checks.append(ServiceHealth(runtime.config.health.path, verdict.healthy, verdict.reason))

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Check", style="bold")
        table.add_column("Status")
        table.add_column("Details")
        for check in checks:
            label = "[green]OK[/green]" if check.ok else "[red]FAIL[/red]"
            table.add_row(check.name, label, check.detail)
        console.print(table)

        failed = [check.name for check in checks if not check.ok]
        if failed:
            _command_error(op, f"Unhealthy: {', '.join(failed)}", errors=failed)
        op.success("All checks passed.", context={"checks": len(checks)})


@app.command()
def build(ctx: typer.Context) -> None:
    """Build images defined in the compose files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("build", target={"kind": "stack"}) as op:
        try:
            deployment = _load_deployment(runtime, op)
            _stack(runtime, deployment, runtime.secrets.load(), op).build()
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Build failed: {exc}")
        op.success("Images built.", changed=1)


@app.command()
def restart(ctx: typer.Context, service: str = SERVICE_ARGUMENT) -> None:
    """Restart one service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart", args={"service": service}, target={"kind": "service", "name": service}
    ) as op:
        try:
            deployment = _load_deployment(runtime, op)
            _stack(runtime, deployment, runtime.secrets.load(), op).restart(service)
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to restart {service}: {exc}")
        console.print(f"[green]Restarted {service}.[/green]")
        op.success("Service restarted.", changed=1)


@app.command()
def logs(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    tail: int | None = typer.Option(None, "--tail", min=1, help="Only show the last N lines."),
) -> None:
    """Print the logs of one service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs", args={"service": service, "tail": tail}, target={"kind": "service", "name": service}
    ) as op:
        try:
            deployment = _load_deployment(runtime, op)
            secrets = _load_secrets(runtime, op, create=False)
            output = _stack(runtime, deployment, secrets, op).logs(service, tail=tail)
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to read logs for {service}: {exc}")
        console.print(runtime.redactor.redact(output), markup=False, highlight=False)
        op.success("Logs printed.")


@app.command(
    "exec",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def exec_command(
    ctx: typer.Context,
    service: str = SERVICE_ARGUMENT,
    command: list[str] = typer.Argument(..., help="Command and arguments to run."),
) -> None:
    """Run a command inside a running service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "exec", args={"service": service, "command": command}, target={"kind": "service"}
    ) as op:
        try:
            deployment = _load_deployment(runtime, op)
            result = _stack(runtime, deployment, runtime.secrets.load(), op).exec(service, command)
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to exec into {service}: {exc}")
        if result.returncode != 0:
            op.error(f"Command exited {result.returncode}.", rc=result.returncode)
            raise typer.Exit(code=result.returncode)
        op.success("Command completed.")


# ----------------------------------------------------------------------
# Versions
# ----------------------------------------------------------------------
@app.command()
def version(ctx: typer.Context) -> None:
    """Show the deployed version, rollback target and mode."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("version", target={"kind": "deployment"}) as op:
        try:
            deployment = _load_deployment(runtime, op)
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to read deployment configuration: {exc}")

        flags = ", ".join(sorted(flag.value for flag in deployment.flags)) or "(none)"
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Current version", deployment.current_version)
        table.add_row("Previous version", deployment.previous_version or "(none)")
        table.add_row("Mode", deployment.mode.name)
        if deployment.mode.project_name:
            table.add_row("Instance", deployment.mode.project_name)
        table.add_row("Registry", deployment.registry or "(unset)")
        table.add_row("Features", flags)
        for descriptor in deployment.versioned_images(runtime.config):
            table.add_row(f"Image {descriptor.name}", descriptor.reference)
        console.print(table)
        op.success(
            "Reported deployment version.",
            context={
                "current": deployment.current_version,
                "previous": deployment.previous_version,
            },
        )


@app.command()
def versions(
    ctx: typer.Context,
    limit: int | None = typer.Argument(None, min=1, help="Number of tags to show."),
) -> None:
    """List versions published in the registry, newest first."""
    runtime = _get_runtime(ctx)
    count = limit or runtime.config.registry.tags_limit
    with runtime.logger.operation(
        "versions", args={"limit": count}, target={"kind": "registry"}
    ) as op:
        try:
            deployment = _load_deployment(runtime, op)
            if not deployment.registry:
                raise RegistryError("DOCKER_REGISTRY is not configured.")
            image = f"{deployment.registry}/{runtime.config.registry.reference_image}"
            client = RegistryClient(
                credentials=RegistryCredentials.from_environ(runtime.environ),
                timeout=runtime.config.registry.request_timeout,
            )
            tags = client.list_tags(image, limit=count)
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Failed to list versions: {exc}")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Marker")
        if not tags:
            table.add_row("(none)", "")
        for tag in tags:
            marker = ""
            if tag == deployment.current_version:
                marker = "current"
            elif tag == deployment.previous_version:
                marker = "previous"
            table.add_row(tag, marker)
        console.print(table)
        op.success("Listed remote versions.", context={"count": len(tags)})


@app.command()
def switch(
    ctx: typer.Context,
    target: str = typer.Argument(..., metavar="VERSION", help="Version tag to deploy."),
    no_rollback: bool = typer.Option(
        False,
        "--no-rollback",
        help="Leave the failed version in place instead of rolling back.",
    ),
) -> None:
    """Switch to VERSION, rolling back automatically if it never becomes healthy."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "switch",
        args={"version": target, "rollback": not no_rollback},
        target={"kind": "deployment", "version": target},
    ) as op:
        try:
            with runtime.locks.deployment_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                secrets = _load_secrets(runtime, op, create=False)
                orchestrator = _orchestrator(runtime, secrets, op)
                try:
                    result = orchestrator.switch(target, rollback_enabled=not no_rollback)
                except HealthTimeoutError:
                    _print_logs(
                        f"{runtime.config.services.api} logs",
                        orchestrator.failed_service_logs(runtime.store.load()),
                    )
                    raise
        except RollbackExhaustedError as exc:
            _print_logs(f"{runtime.config.services.api} logs", exc.logs)
            _command_error(op, str(exc))
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Switch to {target} failed: {exc}")

        if result.outcome is SwitchOutcome.ROLLED_BACK:
            _print_logs(f"{runtime.config.services.api} logs", result.failed_logs)
            _command_error(
                op,
                f"Version {target} did not become healthy ({result.failure}); "
                f"rolled back to {result.version}.",
            )
        console.print(
            f"[green]Switched to {result.version}[/green] "
            f"(healthy after {result.elapsed:g}s, previous: {result.previous_version or 'none'})."
        )
        op.success("Version switched.", changed=1, context=result.to_dict())


@app.command()
def rollback(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Return to the version that ran before the last switch."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback", args={"yes": yes}, target={"kind": "deployment"}
    ) as op:
        try:
            with runtime.locks.deployment_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                previous = runtime.store.get_previous()
                if previous is None:
                    raise NoPreviousVersionError(
                        "No previous version recorded; nothing to roll back to."
                    )
                current = runtime.store.current_version()
                if not yes:
                    confirmed = typer.confirm(
                        f"Roll back from {current} to {previous}?",
                        default=False,
                    )
                    if not confirmed:
                        console.print("[yellow]Rollback cancelled.[/yellow]")
                        op.warning("Rollback cancelled by operator.", warnings=["user-cancelled"])
                        return
                secrets = _load_secrets(runtime, op, create=False)
                result = _orchestrator(runtime, secrets, op).rollback()
        except RollbackExhaustedError as exc:
            _print_logs(f"{runtime.config.services.api} logs", exc.logs)
            _command_error(op, str(exc))
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Rollback failed: {exc}")

        console.print(
            f"[green]Rolled back to {result.version}[/green] "
            f"(healthy after {result.elapsed:g}s; {result.previous_version} is now the "
            "rollback target)."
        )
        op.success("Rolled back.", changed=1, context=result.to_dict())


# ----------------------------------------------------------------------
# Certificates
# ----------------------------------------------------------------------
@app.command()
def cert(ctx: typer.Context) -> None:
    """Generate a fresh self-signed certificate bundle."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert", target={"kind": "tls"}) as op:
        try:
            deployment = _load_deployment(runtime, op)
            path = runtime.certificates.generate(
                deployment.system_domain, deployment.extra_domains
            )
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Certificate generation failed: {exc}")
        op.add_step("tls.generate", detail=str(path))
        console.print(f"[green]Certificate written to {runtime.config.certs_dir}.[/green]")
        if not deployment.has(FeatureFlag.ENABLE_HTTPS):
            console.print("[yellow]ENABLE_HTTPS is off; the certificate is not served.[/yellow]")
        else:
            console.print(f"Restart '{runtime.config.services.proxy}' to serve it.")
        op.success("Certificate generated.", changed=1, context={"path": str(path)})


@app.command("cert-info")
def cert_info(ctx: typer.Context) -> None:
    """Show subject, names and validity of the installed certificate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert-info", target={"kind": "tls"}) as op:
        try:
            report = runtime.certificates.inspect()
        except CertificateError as exc:
            _command_error(op, str(exc))

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Path", str(report.path))
        table.add_row("Subject", report.subject)
        table.add_row("Names", ", ".join(report.names) or "(none)")
        table.add_row("Valid from", report.not_valid_before.isoformat())
        table.add_row("Valid until", report.not_valid_after.isoformat())
        table.add_row("Days remaining", str((report.not_valid_after - datetime.now(UTC)).days))
        for finding in report.findings:
            label = {
                CertificateSeverity.OK: "[green]OK[/green]",
                CertificateSeverity.WARNING: "[yellow]WARN[/yellow]",
                CertificateSeverity.ERROR: "[red]ERROR[/red]",
            }[finding.severity]
            table.add_row(finding.check, f"{label} {finding.message}")
        console.print(table)

        if report.status is CertificateSeverity.ERROR:
            _command_error(op, "Certificate has errors.", errors=[
                f.message for f in report.findings if f.severity is CertificateSeverity.ERROR
            ])
        if report.status is CertificateSeverity.WARNING:
            op.warning("Certificate has warnings.", context=report.to_dict())
            return
        op.success("Certificate inspected.", context=report.to_dict())


# ----------------------------------------------------------------------
# Destructive reset
# ----------------------------------------------------------------------
@app.command()
def reset(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Skip the confirmation prompt."),
) -> None:
    """Destroy the stack, its volumes, secrets, certificates and configuration."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("reset", args={"force": force}, target={"kind": "stack"}) as op:
        if not force:
            confirmed = typer.confirm(
                "This deletes all containers, volumes, database files, secrets, "
                "certificates and the deployment configuration. Continue?",
                default=False,
            )
            if not confirmed:
                console.print("[yellow]Reset cancelled.[/yellow]")
                op.warning("Reset cancelled by operator.", warnings=["user-cancelled"])
                return

        warnings: list[str] = []
        removed: list[str] = []
        try:
            with runtime.locks.deployment_lock() as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                if runtime.store.exists():
                    deployment = runtime.store.load()
                    secrets = _load_secrets(runtime, op, create=False)
                    _stack(runtime, deployment, secrets, op).down(volumes=True)
                removed.extend(str(path) for path in runtime.store.destroy())
                if runtime.secrets.destroy():
                    removed.append(str(config.secrets_file))
                for directory in (config.certs_dir, config.database_storage):
                    if not directory.exists():
                        continue
                    try:
                        shutil.rmtree(directory)
                    except OSError as exc:
                        warnings.append(f"Could not remove {directory}: {exc}")
                    else:
                        removed.append(str(directory))
        except _CONTROLLER_ERRORS as exc:
            _command_error(op, f"Reset failed: {exc}")

        for path in removed:
            op.add_step("reset.remove", detail=path)
        for warning in warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        console.print(f"[green]Reset complete.[/green] Removed {len(removed)} item(s).")
        if warnings:
            op.warning("Reset completed with warnings.", warnings=warnings, changed=len(removed))
            return
        op.success("Reset complete.", changed=len(removed))


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show this help message."""
    root = ctx.find_root()
    console.print(root.get_help())


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()

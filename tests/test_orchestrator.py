"""Tests for version switching and rollback."""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from elitectl.config import AppConfig
from elitectl.health import HealthTimeoutError
from elitectl.logging import SecretRedactor
from elitectl.models import DeploymentConfiguration, FeatureFlag, ServiceDescriptor
from elitectl.orchestrator import (
    NoPreviousVersionError,
    RollbackExhaustedError,
    SwitchOrchestrator,
    SwitchOutcome,
)
from elitectl.providers.compose import StackController
from elitectl.providers.docker import ContainerRuntime
from elitectl.providers.registry import RegistryError
from elitectl.store import ConfigurationStore
from elitectl.versions import VersionValidationError

from conftest import FakeDocker

SA_PASSWORD = "SaPasswordAa1!"


@dataclass
class FakeProvisioner:
    published: set[str] = field(default_factory=lambda: {"0.2.0", "0.2.1", "0.2.2"})
    verified: list[str] = field(default_factory=list)
    ensured: list[list[str]] = field(default_factory=list)

    def verify_version_exists(self, descriptor: ServiceDescriptor) -> bool:
        self.verified.append(descriptor.reference)
        return descriptor.tag in self.published

    def ensure_images(self, descriptors: Sequence[ServiceDescriptor]) -> None:
        self.ensured.append([item.reference for item in descriptors])


@dataclass
class FakeStack:
    deployment: DeploymentConfiguration
    started: list[str]

    def up(self, *, force_recreate: bool = False) -> None:
        self.started.append(self.deployment.current_version)

    def logs(self, service: str, *, tail: int | None = None) -> str:
        return f"{service}@{self.deployment.current_version}: login failed for {SA_PASSWORD}"

    @property
    def database_shared(self) -> bool:
        return True


@dataclass
class FakeMonitor:
    stack: FakeStack
    healthy_versions: set[str]

    def wait(self) -> float:
        version = self.stack.deployment.current_version
        if version in self.healthy_versions:
            return 10.0
        raise HealthTimeoutError("rediacc-api", 120.0, "healthcheck unhealthy")


@dataclass
class Harness:
    store: ConfigurationStore
    provisioner: FakeProvisioner
    orchestrator: SwitchOrchestrator
    started: list[str]
    healthy: set[str]
    events: list[tuple[str, str]]
    project_dir: Path


@pytest.fixture
def harness(app_config: AppConfig, project_dir: Path) -> Harness:
    store = ConfigurationStore(
        env_file=app_config.env_file,
        template=app_config.env_template,
        previous_file=app_config.previous_version_file,
        environ={},
    )
    provisioner = FakeProvisioner()
    started: list[str] = []
    healthy = {"0.2.0", "0.2.1", "0.2.2"}
    events: list[tuple[str, str]] = []
    orchestrator = SwitchOrchestrator(
        app_config,
        store,
        provisioner,  # type: ignore[arg-type]
        stack_for=lambda deployment: FakeStack(deployment, started),  # type: ignore[arg-type,return-value]
        monitor_for=lambda stack: FakeMonitor(stack, healthy),  # type: ignore[arg-type,return-value]
        environ={},
        redactor=SecretRedactor([SA_PASSWORD]),
        on_event=lambda step, detail: events.append((step, detail)),
    )
    return Harness(store, provisioner, orchestrator, started, healthy, events, project_dir)


def test_switch_to_published_version(harness: Harness) -> None:
    """A healthy switch records the old version and converges on the new one."""
    result = harness.orchestrator.switch("0.2.2")

    assert result.outcome is SwitchOutcome.SWITCHED
    assert result.version == "0.2.2"
    assert result.previous_version == "0.2.1"
    assert harness.store.current_version() == "0.2.2"
    assert harness.store.get_previous() == "0.2.1"
    assert harness.started == ["0.2.2"]
    assert harness.provisioner.verified == ["ghcr.io/rediacc/elite/api:0.2.2"]
    assert harness.provisioner.ensured == [
        [
            "ghcr.io/rediacc/elite/web:0.2.2",
            "ghcr.io/rediacc/elite/api:0.2.2",
            "ghcr.io/rediacc/elite/bridge:0.2.2",
        ]
    ]
    assert [step for step, _ in harness.events] == [
        "validate",
        "record-previous",
        "write-config",
        "pre-upgrade-cleanup",
        "restart",
        "await-health",
    ]


def test_switch_to_unpublished_version_changes_nothing(harness: Harness) -> None:
    """A missing manifest aborts before any state is touched."""
    harness.store.ensure()
    before = harness.store.env_file.read_text(encoding="utf-8")

    with pytest.raises(RegistryError, match="Version 9.9.9 not found"):
        harness.orchestrator.switch("9.9.9")

    assert harness.store.env_file.read_text(encoding="utf-8") == before
    assert harness.store.get_previous() is None
    assert harness.started == []


def test_pinned_image_tag_does_not_mask_unpublished_version(harness: Harness) -> None:
    """The manifest check targets the requested release even when the API tag is pinned."""
    harness.store.ensure()
    harness.store.set_values({"API_TAG": "0.2.1"})
    before = harness.store.env_file.read_text(encoding="utf-8")

    with pytest.raises(RegistryError, match="Version 9.9.9 not found"):
        harness.orchestrator.switch("9.9.9")

    assert harness.provisioner.verified == ["ghcr.io/rediacc/elite/api:9.9.9"]
    assert harness.provisioner.ensured == []
    assert harness.store.env_file.read_text(encoding="utf-8") == before
    assert harness.store.get_previous() is None
    assert harness.started == []


def test_latest_rejected_outside_ci_without_side_effects(harness: Harness) -> None:
    """Validation happens before any registry or filesystem call."""
    with pytest.raises(VersionValidationError, match="only allowed in CI"):
        harness.orchestrator.switch("latest")

    assert harness.provisioner.verified == []
    assert not harness.store.env_file.exists()


def test_unhealthy_switch_rolls_back(harness: Harness) -> None:
    """A health timeout restores the pre-switch version and keeps the logs."""
    harness.healthy.discard("0.2.2")

    result = harness.orchestrator.switch("0.2.2")

    assert result.outcome is SwitchOutcome.ROLLED_BACK
    assert result.version == "0.2.1"
    assert result.failure is not None and "healthcheck unhealthy" in result.failure
    assert "api@0.2.2" in result.failed_logs
    assert SA_PASSWORD not in result.failed_logs
    assert "***" in result.failed_logs
    assert harness.store.current_version() == "0.2.1"
    assert harness.store.get_previous() is None
    assert harness.started == ["0.2.2", "0.2.1"]


def test_rolled_back_switch_restores_older_pointer(harness: Harness) -> None:
    """The rollback pointer returns to what it was before the failed switch."""
    harness.store.save_previous("0.2.0")
    harness.healthy.discard("0.2.2")

    result = harness.orchestrator.switch("0.2.2")

    assert result.previous_version == "0.2.0"
    assert harness.store.get_previous() == "0.2.0"


def test_no_rollback_leaves_failed_version_in_place(harness: Harness) -> None:
    """With rollback disabled the health failure propagates."""
    harness.healthy.discard("0.2.2")

    with pytest.raises(HealthTimeoutError):
        harness.orchestrator.switch("0.2.2", rollback_enabled=False)

    assert harness.store.current_version() == "0.2.2"
    assert harness.store.get_previous() == "0.2.1"
    assert harness.started == ["0.2.2"]


def test_double_failure_is_terminal(harness: Harness) -> None:
    """When the rollback also times out the operator must step in."""
    harness.healthy.clear()

    with pytest.raises(RollbackExhaustedError, match="Manual intervention required") as excinfo:
        harness.orchestrator.switch("0.2.2")

    assert "api@0.2.2" in excinfo.value.logs
    assert "api@0.2.1" in excinfo.value.logs
    assert SA_PASSWORD not in excinfo.value.logs
    assert harness.store.current_version() == "0.2.1"


def test_switch_then_rollback_round_trips(harness: Harness) -> None:
    """Rollback swaps the current and previous versions."""
    harness.orchestrator.switch("0.2.2")

    result = harness.orchestrator.rollback()

    assert result.outcome is SwitchOutcome.ROLLED_BACK
    assert result.version == "0.2.1"
    assert result.previous_version == "0.2.2"
    assert harness.store.current_version() == "0.2.1"
    assert harness.store.get_previous() == "0.2.2"


def test_same_version_switch_keeps_pointer(harness: Harness) -> None:
    """Re-deploying the current version does not lose the rollback target."""
    harness.store.save_previous("0.2.0")

    result = harness.orchestrator.switch("0.2.1")

    assert result.outcome is SwitchOutcome.SWITCHED
    assert harness.store.get_previous() == "0.2.0"
    assert harness.started == ["0.2.1"]


def test_rollback_without_previous_version(harness: Harness) -> None:
    """Nothing to roll back to before the first switch."""
    with pytest.raises(NoPreviousVersionError):
        harness.orchestrator.rollback()

    assert harness.started == []


def test_rollback_that_never_converges(harness: Harness) -> None:
    """A failed operator rollback surfaces the logs."""
    harness.store.save_previous("0.2.0")
    harness.healthy.discard("0.2.0")

    with pytest.raises(RollbackExhaustedError, match="Rollback to 0.2.0") as excinfo:
        harness.orchestrator.rollback()

    assert "api@0.2.0" in excinfo.value.logs


def test_ci_may_switch_to_latest(harness: Harness) -> None:
    """Under CI the floating tag is accepted."""
    harness.orchestrator.environ = {"CI": "true"}
    harness.provisioner.published.add("latest")
    harness.healthy.add("latest")

    result = harness.orchestrator.switch("latest")

    assert result.version == "latest"


def _inspect(running: bool) -> str:
    return json.dumps([{"State": {"Running": running, "Status": "running" if running else "exited"}}])


def _real_stack(app_config: AppConfig, deployment: DeploymentConfiguration) -> StackController:
    return StackController(
        runtime=ContainerRuntime(),
        config=app_config,
        deployment=deployment,
        secrets={"MSSQL_SA_PASSWORD": SA_PASSWORD},
    )


def _standalone(store: ConfigurationStore) -> DeploymentConfiguration:
    deployment = store.load()
    assert not deployment.has(FeatureFlag.SHARE_DATABASE)
    return deployment


def test_pre_upgrade_cleanup_skipped_when_database_stopped(
    harness: Harness, app_config: AppConfig, fake_docker: FakeDocker
) -> None:
    """A stopped database is not touched."""
    fake_docker.respond(["inspect"], stdout=_inspect(False))
    stack = _real_stack(app_config, _standalone(harness.store))

    assert harness.orchestrator.pre_upgrade_cleanup(stack) is False
    assert [cmd[0] for cmd in fake_docker.commands()] == ["inspect"]
    assert harness.events[-1] == ("pre-upgrade-cleanup", "skipped: database not running")


def test_pre_upgrade_cleanup_passes_password_through_environment(
    harness: Harness, app_config: AppConfig, fake_docker: FakeDocker
) -> None:
    """The maintenance command never carries the password on its command line."""
    fake_docker.respond(["inspect"], stdout=_inspect(True))
    stack = _real_stack(app_config, _standalone(harness.store))

    assert harness.orchestrator.pre_upgrade_cleanup(stack) is True

    exec_call = fake_docker.calls[-1]
    assert exec_call.args[:4] == ["exec", "--env", "SQLCMDPASSWORD", "rediacc-sql"]
    assert SA_PASSWORD not in " ".join(exec_call.args)
    assert exec_call.env is not None
    assert exec_call.env["SQLCMDPASSWORD"] == SA_PASSWORD


def test_pre_upgrade_cleanup_failure_is_skipped(
    harness: Harness, app_config: AppConfig, fake_docker: FakeDocker
) -> None:
    """A failing maintenance command does not abort the switch."""
    fake_docker.respond(["inspect"], stdout=_inspect(True))
    fake_docker.respond(["exec"], rc=1, stderr="Login failed")
    stack = _real_stack(app_config, _standalone(harness.store))

    assert harness.orchestrator.pre_upgrade_cleanup(stack) is False
    assert harness.events[-1] == ("pre-upgrade-cleanup", "skipped: exit 1")

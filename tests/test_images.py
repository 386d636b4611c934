"""Tests for image provisioning."""
from __future__ import annotations

import pytest

from elitectl.models import ServiceDescriptor
from elitectl.providers.docker import ContainerRuntime
from elitectl.providers.images import ImageProvisioner, PullError
from elitectl.providers.registry import RegistryCredentials, RegistryError

from conftest import FakeDocker

API = ServiceDescriptor(name="api", image="ghcr.io/rediacc/elite/api", tag="0.2.2")
WEB = ServiceDescriptor(name="web", image="ghcr.io/rediacc/elite/web", tag="0.2.2")
LOCAL = ServiceDescriptor(name="bridge", image="localhost:5000/bridge", tag="0.2.2")


def _provisioner(
    environ: dict[str, str] | None = None,
    credentials: RegistryCredentials | None = None,
    sleeps: list[float] | None = None,
    events: list[tuple[str, str]] | None = None,
) -> ImageProvisioner:
    return ImageProvisioner(
        ContainerRuntime(),
        credentials=credentials,
        environ=environ if environ is not None else {},
        pull_attempts=3,
        pull_backoff=2.0,
        sleep=(sleeps.append if sleeps is not None else lambda _s: None),
        on_event=(lambda step, detail: events.append((step, detail))) if events is not None else None,
    )


def test_present_images_are_not_pulled(fake_docker: FakeDocker) -> None:
    """Nothing is pulled when every image is local."""
    events: list[tuple[str, str]] = []
    provisioner = _provisioner(events=events)

    result = provisioner.ensure_images([API, WEB])

    assert result.present == [API.reference, WEB.reference]
    assert result.pulled == []
    assert all(call.args[0] == "image" for call in fake_docker.calls)
    assert events == [("images.present", "2 image(s) already local")]


def test_missing_images_are_pulled_after_login(fake_docker: FakeDocker) -> None:
    """Missing images trigger one login per remote registry, then pulls."""
    fake_docker.respond(["image", "inspect", API.reference], rc=1)
    credentials = RegistryCredentials(username="octocat", password="ghp_token")
    environ = {"GITHUB_TOKEN": "ghp_token", "KEEP": "1"}
    provisioner = _provisioner(environ=environ, credentials=credentials)

    result = provisioner.ensure_images([API, WEB])

    assert result.pulled == [API.reference]
    assert result.present == [WEB.reference]
    commands = fake_docker.commands()
    assert ["login", "ghcr.io", "--username", "octocat", "--password-stdin"] in commands
    assert ["pull", "--quiet", API.reference] in commands
    assert commands[-1] == ["logout", "ghcr.io"]
    login_call = next(call for call in fake_docker.calls if call.args[0] == "login")
    assert login_call.env is not None
    assert login_call.env["DOCKER_CONFIG"].startswith("/")
    assert environ == {"KEEP": "1"}


def test_local_registry_skips_login(fake_docker: FakeDocker) -> None:
    """Loopback registries are pulled from without authentication."""
    fake_docker.respond(["image", "inspect"], rc=1)
    credentials = RegistryCredentials(username="octocat", password="ghp_token")
    provisioner = _provisioner(credentials=credentials)

    provisioner.ensure_images([LOCAL])

    assert [cmd[0] for cmd in fake_docker.commands()] == ["image", "pull"]


def test_pull_retries_with_doubling_backoff(fake_docker: FakeDocker) -> None:
    """Transient pull failures are retried with growing delays."""
    attempts = {"count": 0}

    def handler(args: list[str]) -> tuple[int, str, str] | None:
        if args[0] == "image":
            return (1, "", "")
        if args[0] == "pull":
            attempts["count"] += 1
            if attempts["count"] < 3:
                return (1, "", "TLS handshake timeout")
        return None

    fake_docker.handler = handler
    sleeps: list[float] = []
    provisioner = _provisioner(sleeps=sleeps)

    result = provisioner.ensure_images([LOCAL])

    assert result.pulled == [LOCAL.reference]
    assert sleeps == [2.0, 4.0]


def test_pull_gives_up_after_attempts(fake_docker: FakeDocker) -> None:
    """The last failure surfaces as PullError naming the image."""
    fake_docker.respond(["image", "inspect"], rc=1)
    fake_docker.respond(["pull"], rc=1, stderr="manifest unknown")
    sleeps: list[float] = []
    provisioner = _provisioner(sleeps=sleeps)

    with pytest.raises(PullError, match="manifest unknown") as excinfo:
        provisioner.ensure_images([LOCAL, API])

    assert excinfo.value.image == LOCAL.reference
    assert sleeps == [2.0, 4.0]
    assert ["pull", "--quiet", API.reference] not in fake_docker.commands()


def test_verify_version_exists_uses_manifest(fake_docker: FakeDocker) -> None:
    """Version checks never pull the image."""
    fake_docker.respond(["manifest", "inspect"], rc=1)
    provisioner = _provisioner()

    assert provisioner.verify_version_exists(API) is False
    assert fake_docker.commands() == [["manifest", "inspect", API.reference]]


def test_failed_login_is_a_registry_error(fake_docker: FakeDocker) -> None:
    """Bad credentials are reported without leaking the password."""
    fake_docker.respond(["login"], rc=1, stderr="unauthorized")
    environ = {"DOCKER_REGISTRY_PASSWORD": "pass"}
    provisioner = _provisioner(
        environ=environ,
        credentials=RegistryCredentials(username="user", password="pass"),
    )

    with pytest.raises(RegistryError, match="Authentication to ghcr.io failed") as excinfo:
        provisioner.verify_version_exists(API)

    assert "pass" not in str(excinfo.value)
    assert environ == {}

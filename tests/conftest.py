"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from elitectl.config import AppConfig, load_config

ENV_TEMPLATE = (
    "# Deployment configuration\n"
    "TAG=0.2.1\n"
    "DOCKER_REGISTRY=ghcr.io/rediacc/elite\n"
    "SYSTEM_DOMAIN=localhost\n"
    "COMPANY_ID=acme\n"
)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project directory with a base compose file and an env template."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    (root / ".env.template").write_text(ENV_TEMPLATE, encoding="utf-8")
    return root


@pytest.fixture
def app_config(project_dir: Path) -> AppConfig:
    """Controller settings rooted at ``project_dir`` and isolated from the host."""
    return load_config(
        config_file=project_dir / "missing.yml",
        env={},
        overrides={"project_dir": str(project_dir)},
    )


@dataclass
class DockerCall:
    """One recorded docker invocation."""

    args: list[str]
    env: dict[str, str] | None
    input_text: str | None
    timeout: float | None = None


@dataclass
class FakeDocker:
    """Scripted replacement for ``ContainerRuntime.run``.

    ``responses`` maps a tuple prefix of the argument list to a result. The
    longest matching prefix wins; unmatched calls succeed with empty output.
    """

    responses: dict[tuple[str, ...], tuple[int, str, str]] = field(default_factory=dict)
    calls: list[DockerCall] = field(default_factory=list)
    handler: Callable[[list[str]], tuple[int, str, str] | None] | None = None

    def respond(self, prefix: Sequence[str], rc: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[tuple(prefix)] = (rc, stdout, stderr)

    def __call__(self, args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        env = kwargs.get("env")
        input_text = kwargs.get("input")
        timeout = kwargs.get("timeout")
        self.calls.append(
            DockerCall(
                args=list(args[1:]),
                env=dict(env) if isinstance(env, dict) else None,
                input_text=input_text if isinstance(input_text, str) else None,
                timeout=float(timeout) if isinstance(timeout, (int, float)) else None,
            )
        )
        outcome: tuple[int, str, str] | None = None
        if self.handler is not None:
            outcome = self.handler(list(args[1:]))
        if outcome is None:
            best: tuple[str, ...] = ()
            for prefix, result in self.responses.items():
                if tuple(args[1 : 1 + len(prefix)]) == prefix and len(prefix) >= len(best):
                    best = prefix
                    outcome = result
        rc, stdout, stderr = outcome or (0, "", "")
        return subprocess.CompletedProcess(args, rc, stdout=stdout, stderr=stderr)

    def commands(self) -> list[list[str]]:
        return [call.args for call in self.calls]


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch) -> FakeDocker:
    """Intercept every ``subprocess.run`` made by the docker provider."""
    fake = FakeDocker()
    monkeypatch.setattr("elitectl.providers.docker.subprocess.run", fake)
    return fake

"""Thin wrapper around the ``docker`` CLI.

Success and failure are decided from exit codes and, where Docker offers it,
JSON output; human-readable output is never pattern-matched.
"""
from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

HEALTH_NONE = "none"


class ContainerRuntimeError(RuntimeError):
    """Raised when a container runtime invocation fails."""


@dataclass(frozen=True)
class ContainerState:
    """Snapshot of a container's runtime state."""

    name: str
    exists: bool
    running: bool
    status: str
    health: str

    @classmethod
    def missing(cls, name: str) -> ContainerState:
        """Return the state of a container that does not exist."""
        return cls(name=name, exists=False, running=False, status="missing", health=HEALTH_NONE)


@dataclass(slots=True)
class ContainerRuntime:
    """Execute docker commands with a controlled environment."""

    docker_bin: str = "docker"
    env_overrides: dict[str, str] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Images and registries
    # ------------------------------------------------------------------
    def image_exists(self, reference: str) -> bool:
        """Return True when *reference* is present in the local image store."""
        result = self.run(["image", "inspect", reference], check=False)
        return result.returncode == 0

    def pull(self, reference: str) -> subprocess.CompletedProcess[str]:
        """Pull *reference* from its registry."""
        return self.run(["pull", "--quiet", reference])

    def manifest_exists(self, reference: str) -> bool:
        """Return True when the registry serves a manifest for *reference*."""
        result = self.run(["manifest", "inspect", reference], check=False)
        return result.returncode == 0

    def login(self, registry: str, username: str, password: str) -> None:
        """Authenticate against *registry*; the password travels over stdin."""
        self.run(
            ["login", registry, "--username", username, "--password-stdin"],
            input_text=password,
        )

    def logout(self, registry: str) -> None:
        """Drop credentials for *registry* (failures are ignored)."""
        self.run(["logout", registry], check=False)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def inspect_container(self, name: str) -> ContainerState:
        """Return the runtime state for container *name*."""
        result = self.run(["inspect", "--type", "container", name], check=False)
        if result.returncode != 0:
            return ContainerState.missing(name)
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ContainerRuntimeError(
                f"{self.docker_bin} inspect {name} returned invalid JSON: {exc}"
            ) from exc
        if not isinstance(payload, list) or not payload:
            return ContainerState.missing(name)
        state = payload[0].get("State") if isinstance(payload[0], Mapping) else None
        if not isinstance(state, Mapping):
            return ContainerState.missing(name)
        health_block = state.get("Health")
        health = HEALTH_NONE
        if isinstance(health_block, Mapping):
            health = str(health_block.get("Status") or HEALTH_NONE).lower()
        return ContainerState(
            name=name,
            exists=True,
            running=bool(state.get("Running")),
            status=str(state.get("Status") or "unknown"),
            health=health,
        )

    def list_container_ids(self, *, label: str) -> list[str]:
        """Return ids of all containers (running or not) carrying *label*."""
        result = self.run(["ps", "--all", "--quiet", "--filter", f"label={label}"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def remove_containers(self, ids: Sequence[str]) -> None:
        """Forcibly remove the containers in *ids*."""
        if ids:
            self.run(["rm", "--force", *ids])

    def exec(
        self,
        container: str,
        command: Sequence[str],
        *,
        pass_env: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        check: bool = False,
        timeout: float | None = None,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *container*.

        Variables named in *pass_env* are forwarded by name only, so their
        values come from *env* and never appear on the command line.
        """
        args = ["exec"]
        for name in pass_env:
            args.extend(["--env", name])
        args.append(container)
        args.extend(command)
        return self.run(
            args,
            check=check,
            env=env,
            timeout=timeout,
            capture_output=capture_output,
        )

    def logs(self, container: str, *, tail: int | None = None) -> str:
        """Return recent log output (stdout and stderr) of *container*."""
        args = ["logs"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(container)
        result = self.run(args, check=False)
        return "\n".join(part for part in (result.stdout, result.stderr) if part).strip()

    # ------------------------------------------------------------------
    @contextmanager
    def scoped_env(self, **values: str) -> Iterator[None]:
        """Temporarily add environment variables for every docker invocation."""
        previous = {key: self.env_overrides.get(key) for key in values}
        self.env_overrides.update(values)
        try:
            yield
        finally:
            for key, value in previous.items():
                if value is None:
                    self.env_overrides.pop(key, None)
                else:
                    self.env_overrides[key] = value

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker <args>`` and return the completed process."""
        command = [self.docker_bin, *args]
        process_env = os.environ.copy()
        process_env.update(self.env_overrides)
        if env:
            process_env.update(env)
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=capture_output,
                text=True,
                check=False,
                input=input_text,
                env=process_env,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(f"{self.docker_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ContainerRuntimeError(
                f"{self.docker_bin} {args[0]} timed out after {timeout}s"
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ContainerRuntimeError(
                f"{self.docker_bin} {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["ContainerRuntime", "ContainerRuntimeError", "ContainerState", "HEALTH_NONE"]

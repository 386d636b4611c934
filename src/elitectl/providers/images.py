"""Image provisioning: presence checks, scoped registry login and pulls."""
from __future__ import annotations

import os
import shutil
import tempfile
import time
from collections.abc import Callable, Iterable, Iterator, MutableMapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

from ..models import ServiceDescriptor
from .docker import ContainerRuntime, ContainerRuntimeError
from .registry import (
    RegistryCredentials,
    RegistryError,
    is_local_registry,
    registry_host,
)

# Removed from the process environment once a registry session closes.
CREDENTIAL_ENV_KEYS = ("GITHUB_TOKEN", "DOCKER_REGISTRY_PASSWORD")


class PullError(RuntimeError):
    """Raised when an image cannot be pulled."""

    def __init__(self, image: str, message: str) -> None:
        """Remember which *image* failed."""
        super().__init__(f"Failed to pull {image}: {message}")
        self.image = image


@dataclass
class EnsureResult:
    """Outcome of :meth:`ImageProvisioner.ensure_images`."""

    present: list[str] = field(default_factory=list)
    pulled: list[str] = field(default_factory=list)


class ImageProvisioner:
    """Make sure the images a deployment needs exist locally."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        credentials: RegistryCredentials | None = None,
        environ: MutableMapping[str, str] | None = None,
        pull_attempts: int = 3,
        pull_backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        on_event: Callable[[str, str], None] | None = None,
    ) -> None:
        """Configure the provisioner; *environ* defaults to ``os.environ``."""
        self.runtime = runtime
        self.credentials = credentials
        self.environ = os.environ if environ is None else environ
        self.pull_attempts = max(1, pull_attempts)
        self.pull_backoff = pull_backoff
        self._sleep = sleep
        self._on_event = on_event

    def missing(self, descriptors: Sequence[ServiceDescriptor]) -> list[ServiceDescriptor]:
        """Return the descriptors whose image is absent locally."""
        return [item for item in descriptors if not self.runtime.image_exists(item.reference)]

    def ensure_images(self, descriptors: Sequence[ServiceDescriptor]) -> EnsureResult:
        """Pull every missing image, stopping at the first failure."""
        result = EnsureResult()
        missing = self.missing(descriptors)
        missing_refs = {item.reference for item in missing}
        result.present = [item.reference for item in descriptors if item.reference not in missing_refs]
        if not missing:
            self._emit("images.present", f"{len(descriptors)} image(s) already local")
            return result

        with self.registry_session(registry_host(item.image) for item in missing):
            for item in missing:
                self._pull(item.reference)
                result.pulled.append(item.reference)
        return result

    def verify_version_exists(self, descriptor: ServiceDescriptor) -> bool:
        """Return True when the registry has a manifest for *descriptor* (no pull)."""
        try:
            with self.registry_session([registry_host(descriptor.image)]):
                exists = self.runtime.manifest_exists(descriptor.reference)
        except ContainerRuntimeError as exc:
            raise RegistryError(f"Could not query registry for {descriptor.reference}: {exc}") from exc
        self._emit("registry.verify", f"{descriptor.reference} {'found' if exists else 'missing'}")
        return exists

    @contextmanager
    def registry_session(self, hosts: Iterable[str]) -> Iterator[None]:
        """Log in to remote *hosts* for the duration of the block only.

        Credentials land in a throwaway ``DOCKER_CONFIG`` directory that is
        deleted on exit, and credential variables are scrubbed from the
        process environment so later child processes never inherit them.
        """
        remote = sorted({host for host in hosts if not is_local_registry(host)})
        if not remote or self.credentials is None:
            try:
                yield
            finally:
                self._erase_environment()
            return

        config_dir = tempfile.mkdtemp(prefix="elitectl-docker-")
        try:
            with self.runtime.scoped_env(DOCKER_CONFIG=config_dir):
                logged_in: list[str] = []
                try:
                    for host in remote:
                        try:
                            self.runtime.login(
                                host,
                                self.credentials.username,
                                self.credentials.password,
                            )
                        except ContainerRuntimeError as exc:
                            raise RegistryError(f"Authentication to {host} failed: {exc}") from exc
                        logged_in.append(host)
                        self._emit("registry.login", host)
                    yield
                finally:
                    for host in logged_in:
                        self.runtime.logout(host)
        finally:
            shutil.rmtree(config_dir, ignore_errors=True)
            self._erase_environment()

    def _pull(self, reference: str) -> None:
        delay = self.pull_backoff
        for attempt in range(1, self.pull_attempts + 1):
            try:
                self.runtime.pull(reference)
            except ContainerRuntimeError as exc:
                if attempt >= self.pull_attempts:
                    raise PullError(reference, str(exc)) from exc
                self._emit("images.retry", f"{reference} attempt {attempt} failed: {exc}")
                self._sleep(delay)
                delay *= 2
                continue
            self._emit("images.pull", reference)
            return

    def _erase_environment(self) -> None:
        for key in CREDENTIAL_ENV_KEYS:
            self.environ.pop(key, None)

    def _emit(self, step: str, detail: str) -> None:
        if self._on_event is not None:
            self._on_event(step, detail)


__all__ = ["CREDENTIAL_ENV_KEYS", "EnsureResult", "ImageProvisioner", "PullError"]

"""Health convergence monitoring for the managed stack.

The monitor polls the API container on a fixed interval. A container whose
runtime healthcheck reports ``healthy`` converges immediately; one without a
healthcheck falls back to an HTTP probe of the health route. Elapsed time
advances by the interval on every tick, so the timeout is a coarse bound
rather than a wall-clock deadline.
"""
from __future__ import annotations

import json
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import requests
from requests.exceptions import RequestException

from .config import HealthConfig
from .models import Cloud, DeploymentConfiguration
from .providers.docker import HEALTH_NONE, ContainerRuntime, ContainerRuntimeError, ContainerState


class HealthState(Enum):
    """States of one convergence attempt."""

    POLLING = "polling"
    HEALTHY = "healthy"
    TIMED_OUT = "timed-out"


class HealthTimeoutError(RuntimeError):
    """Raised when a service does not converge within the timeout."""

    def __init__(self, service: str, elapsed: float, reason: str) -> None:
        """Record the service, elapsed seconds and the last polling reason."""
        super().__init__(
            f"{service} did not become healthy within {elapsed:g}s (last status: {reason})"
        )
        self.service = service
        self.elapsed = elapsed
        self.reason = reason


@dataclass(frozen=True)
class ProbeResult:
    """Verdict of a single probe."""

    healthy: bool
    reason: str


class HealthProbe(Protocol):
    """Anything that can answer whether the health route reports healthy."""

    def check(self) -> ProbeResult:
        """Return the probe verdict."""


def evaluate_body(body: str, healthy_statuses: Sequence[str]) -> ProbeResult:
    """Return a verdict from a health route's JSON body."""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return ProbeResult(False, "health route returned non-JSON body")
    status = payload.get("status") if isinstance(payload, dict) else None
    if status is None:
        return ProbeResult(False, "health route body has no status field")
    normalised = str(status).strip().lower()
    if normalised in {item.lower() for item in healthy_statuses}:
        return ProbeResult(True, f"status {normalised}")
    return ProbeResult(False, f"status {normalised}")


class HttpHealthProbe:
    """Query the health route from the host through the published port."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float,
        healthy_statuses: Sequence[str],
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.healthy_statuses = tuple(healthy_statuses)
        self._session = session

    def check(self) -> ProbeResult:
        getter = self._session.get if self._session is not None else requests.get
        try:
            response = getter(self.url, timeout=self.timeout)
        except RequestException as exc:
            return ProbeResult(False, f"HTTP probe failed: {exc.__class__.__name__}")
        if not 200 <= response.status_code < 300:
            return ProbeResult(False, f"HTTP {response.status_code}")
        return evaluate_body(response.text, self.healthy_statuses)


class ExecHealthProbe:
    """Query the health route from inside the proxy container.

    Cloud instances publish no host ports, so the request has to originate
    on the instance's own network.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        container: str,
        url: str,
        *,
        timeout: float,
        healthy_statuses: Sequence[str],
    ) -> None:
        self.runtime = runtime
        self.container = container
        self.url = url
        self.timeout = timeout
        self.healthy_statuses = tuple(healthy_statuses)

    def check(self) -> ProbeResult:
        # wget only takes whole seconds; the exec itself is bounded by the probe timeout.
        seconds = max(1, math.ceil(self.timeout))
        command = ["wget", "-q", "-O", "-", "-T", str(seconds), self.url]
        try:
            result = self.runtime.exec(self.container, command, timeout=self.timeout)
        except ContainerRuntimeError as exc:
            return ProbeResult(False, f"probe via {self.container} failed: {exc}")
        if result.returncode != 0:
            return ProbeResult(False, f"probe via {self.container} exited {result.returncode}")
        return evaluate_body(result.stdout or "", self.healthy_statuses)


def build_probe(
    config: HealthConfig,
    deployment: DeploymentConfiguration,
    runtime: ContainerRuntime,
    proxy_container: str,
) -> HealthProbe:
    """Return the probe suited to the deployment mode."""
    if isinstance(deployment.mode, Cloud):
        return ExecHealthProbe(
            runtime,
            proxy_container,
            f"http://127.0.0.1{config.path}",
            timeout=config.http_timeout,
            healthy_statuses=config.healthy_statuses,
        )
    return HttpHealthProbe(
        f"http://localhost:{deployment.http_port}{config.path}",
        timeout=config.http_timeout,
        healthy_statuses=config.healthy_statuses,
    )


@dataclass(frozen=True)
class HealthTick:
    """What the monitor saw on one tick."""

    elapsed: float
    state: HealthState
    reason: str


class HealthMonitor:
    """Poll one service until it reports healthy or the timeout elapses."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        container: str,
        probe: HealthProbe,
        *,
        interval: float = 5.0,
        timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        on_tick: Callable[[HealthTick], None] | None = None,
    ) -> None:
        self.runtime = runtime
        self.container = container
        self.probe = probe
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._on_tick = on_tick
        self.state = HealthState.POLLING

    def evaluate(self) -> ProbeResult:
        """Run one tick's checks without sleeping."""
        try:
            state = self.runtime.inspect_container(self.container)
        except ContainerRuntimeError as exc:
            return ProbeResult(False, f"inspect failed: {exc}")
        return self._verdict(state)

    def _verdict(self, state: ContainerState) -> ProbeResult:
        if not state.running:
            return ProbeResult(False, "not running yet")
        if state.health == "healthy":
            return ProbeResult(True, "healthcheck healthy")
        if state.health == HEALTH_NONE:
            return self.probe.check()
        return ProbeResult(False, f"healthcheck {state.health}")

    def wait(self) -> float:
        """Block until healthy; return elapsed seconds or raise HealthTimeoutError."""
        self.state = HealthState.POLLING
        elapsed = 0.0
        while True:
            result = self.evaluate()
            if result.healthy:
                self.state = HealthState.HEALTHY
                self._notify(elapsed, result.reason)
                return elapsed
            if elapsed >= self.timeout:
                self.state = HealthState.TIMED_OUT
                self._notify(elapsed, result.reason)
                raise HealthTimeoutError(self.container, elapsed, result.reason)
            self._notify(elapsed, result.reason)
            self._sleep(self.interval)
            elapsed += self.interval

    def _notify(self, elapsed: float, reason: str) -> None:
        if self._on_tick is not None:
            self._on_tick(HealthTick(elapsed=elapsed, state=self.state, reason=reason))


@dataclass(frozen=True)
class ServiceHealth:
    """One row of the ``health`` report."""

    name: str
    ok: bool
    detail: str


def service_health(name: str, state: ContainerState) -> ServiceHealth:
    """Judge a container for the one-shot health report."""
    if not state.exists:
        return ServiceHealth(name, False, "container missing")
    if not state.running:
        return ServiceHealth(name, False, f"not running ({state.status})")
    if state.health in {"healthy", HEALTH_NONE}:
        detail = "running" if state.health == HEALTH_NONE else "running (healthy)"
        return ServiceHealth(name, True, detail)
    return ServiceHealth(name, False, f"running ({state.health})")


__all__ = [
    "ExecHealthProbe",
    "HealthMonitor",
    "HealthProbe",
    "HealthState",
    "HealthTick",
    "HealthTimeoutError",
    "HttpHealthProbe",
    "ProbeResult",
    "ServiceHealth",
    "build_probe",
    "evaluate_body",
    "service_health",
]

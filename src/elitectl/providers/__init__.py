"""Providers wrapping the container runtime, registries and compose."""
from __future__ import annotations

from .compose import ServiceStatus, StackController, StackError, select_overlays
from .docker import ContainerRuntime, ContainerRuntimeError, ContainerState
from .images import EnsureResult, ImageProvisioner, PullError
from .registry import RegistryClient, RegistryCredentials, RegistryError

__all__ = [
    "ContainerRuntime",
    "ContainerRuntimeError",
    "ContainerState",
    "EnsureResult",
    "ImageProvisioner",
    "PullError",
    "RegistryClient",
    "RegistryCredentials",
    "RegistryError",
    "ServiceStatus",
    "StackController",
    "StackError",
    "select_overlays",
]

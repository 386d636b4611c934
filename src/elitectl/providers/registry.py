"""Registry helpers: reference parsing, credentials and the v2 tag listing API."""
from __future__ import annotations

import ipaddress
import re
from collections.abc import Mapping
from dataclasses import dataclass

import requests
from requests.exceptions import RequestException

from ..versions import sort_tags

DOCKER_HUB = "docker.io"
_DOCKER_HUB_API = "registry-1.docker.io"
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(RuntimeError):
    """Raised when the registry rejects a request or a tag cannot be resolved."""


@dataclass(frozen=True)
class RegistryCredentials:
    """Username/password (or token) pair for a registry."""

    username: str
    password: str = ""

    def __repr__(self) -> str:
        return f"RegistryCredentials(username={self.username!r}, password='***')"

    @classmethod
    def from_environ(cls, env: Mapping[str, str]) -> RegistryCredentials | None:
        """Return credentials from the CI token or explicit registry variables."""
        token = env.get("GITHUB_TOKEN", "").strip()
        if token:
            return cls(username=env.get("GITHUB_ACTOR", "").strip() or "github-actions", password=token)
        username = env.get("DOCKER_REGISTRY_USERNAME", "").strip()
        password = env.get("DOCKER_REGISTRY_PASSWORD", "").strip()
        if username and password:
            return cls(username=username, password=password)
        return None


def split_reference(image: str) -> tuple[str, str]:
    """Split an image name (without tag) into ``(registry host, repository)``."""
    first, _, rest = image.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    repository = image if "/" in image else f"library/{image}"
    return DOCKER_HUB, repository


def registry_host(image: str) -> str:
    """Return the registry host serving *image*."""
    return split_reference(image)[0]


def is_local_registry(host: str) -> bool:
    """Return True for loopback and private-range registries (no login needed)."""
    name = host
    if name.startswith("["):
        name = name[1:].split("]", 1)[0]
    elif name.count(":") == 1:
        name = name.split(":", 1)[0]
    if name == "localhost":
        return True
    try:
        address = ipaddress.ip_address(name)
    except ValueError:
        return False
    return address.is_loopback or address.is_private


@dataclass
class RegistryClient:
    """Minimal Docker Registry HTTP API v2 client."""

    credentials: RegistryCredentials | None = None
    timeout: float = 10.0
    session: requests.Session | None = None

    def list_tags(self, image: str, *, limit: int | None = None) -> list[str]:
        """Return the tags published for *image*, newest first."""
        host, repository = split_reference(image)
        api_host = _DOCKER_HUB_API if host == DOCKER_HUB else host
        scheme = "http" if is_local_registry(host) else "https"
        url = f"{scheme}://{api_host}/v2/{repository}/tags/list"

        session = self.session or requests.Session()
        auth = (
            (self.credentials.username, self.credentials.password)
            if self.credentials is not None
            else None
        )
        try:
            response = session.get(url, auth=auth, timeout=self.timeout)
            if response.status_code == 401:
                token = self._bearer_token(session, response.headers.get("WWW-Authenticate", ""))
                response = session.get(
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout,
                )
        except RequestException as exc:
            raise RegistryError(f"Registry request to {api_host} failed: {exc}") from exc

        if response.status_code != 200:
            raise RegistryError(
                f"Registry returned HTTP {response.status_code} listing tags for {image}."
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistryError(f"Registry returned invalid JSON for {image}.") from exc
        tags = payload.get("tags") if isinstance(payload, Mapping) else None
        ordered = sort_tags(str(tag) for tag in tags or [])
        return ordered[:limit] if limit is not None else ordered

    def _bearer_token(self, session: requests.Session, challenge: str) -> str:
        scheme, _, params_text = challenge.partition(" ")
        if scheme.lower() != "bearer":
            raise RegistryError("Registry requires authentication that is not supported.")
        params = dict(_CHALLENGE_PARAM.findall(params_text))
        realm = params.pop("realm", "")
        if not realm:
            raise RegistryError("Registry authentication challenge has no realm.")
        auth = (
            (self.credentials.username, self.credentials.password)
            if self.credentials is not None
            else None
        )
        response = session.get(realm, params=params, auth=auth, timeout=self.timeout)
        if response.status_code != 200:
            raise RegistryError(
                f"Registry token request failed with HTTP {response.status_code}."
            )
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RegistryError("Registry token response did not include a token.")
        return str(token)


__all__ = [
    "RegistryClient",
    "RegistryCredentials",
    "RegistryError",
    "is_local_registry",
    "registry_host",
    "split_reference",
]

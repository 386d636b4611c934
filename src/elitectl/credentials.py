"""Generated credentials kept in the restricted secrets file."""
from __future__ import annotations

import secrets
import string
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .store import parse_env_text
from .templates import TemplateEngine

SECRETS_TEMPLATE = "secrets.env.j2"
SECRETS_MODE = 0o600
PASSWORD_LENGTH = 20
# SQL Server rejects passwords lacking upper, lower, digit and symbol classes.
COMPLEXITY_SUFFIX = "Aa1!"
_SECRET_KEY_MARKERS = ("PASSWORD", "TOKEN", "SECRET", "CONNECTION_STRING")


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random password that satisfies SQL Server complexity rules."""
    alphabet = string.ascii_letters + string.digits
    body = "".join(secrets.choice(alphabet) for _ in range(length))
    return f"{body}{COMPLEXITY_SUFFIX}"


def secret_values(values: Mapping[str, str]) -> list[str]:
    """Return the values in *values* whose keys mark them as secrets."""
    return [
        value
        for key, value in values.items()
        if value and any(marker in key.upper() for marker in _SECRET_KEY_MARKERS)
    ]


def announce_masks(
    values: Iterable[str],
    env: Mapping[str, str],
    echo: Callable[[str], None] = print,
) -> int:
    """Ask GitHub Actions to mask *values* in captured logs; return the count."""
    if env.get("GITHUB_ACTIONS", "").strip().lower() != "true":
        return 0
    count = 0
    for value in values:
        if value:
            echo(f"::add-mask::{value}")
            count += 1
    return count


@dataclass
class SecretsFile:
    """Generate and read the secrets file next to the deployment configuration."""

    path: Path
    templates: TemplateEngine

    def exists(self) -> bool:
        """Return True when the secrets file is present."""
        return self.path.exists()

    def ensure(
        self,
        *,
        database_host: str,
        database_name: str = "RediaccMiddleware",
        sql_username: str = "rediacc",
    ) -> bool:
        """Create the secrets file when missing; return True when it was generated."""
        if self.path.exists():
            return False
        context = {
            "generated_at": datetime.now(UTC).isoformat(timespec="seconds"),
            "sa_password": generate_password(),
            "ra_password": generate_password(),
            "database_name": database_name,
            "sql_username": sql_username,
            "database_host": database_host,
        }
        self.templates.render_to_path(SECRETS_TEMPLATE, self.path, context, mode=SECRETS_MODE)
        return True

    def load(self) -> dict[str, str]:
        """Return the secrets as a mapping (empty when the file is absent)."""
        if not self.path.exists():
            return {}
        return parse_env_text(self.path.read_text(encoding="utf-8"))

    def destroy(self) -> bool:
        """Remove the secrets file; return True when something was deleted."""
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


__all__ = [
    "SecretsFile",
    "announce_masks",
    "generate_password",
    "secret_values",
]
